# limen/modules/parsers.py
"""
Parsers for the administrative tools the providers shell out to.

Socket listing (lsof -i -n -P):
    COMMAND  PID USER  FD TYPE DEVICE SIZE/OFF NODE NAME
    sshd     412 root  3u IPv4 0x1234      0t0  TCP *:22 (LISTEN)
    curl    9001 me    5u IPv6 0x5678      0t0  TCP [::1]:50000->[::1]:443 (ESTABLISHED)

Interface counters (netstat -ib), index-positional:
    Name Mtu Network Address Ipkts Ierrs Ibytes Opkts Oerrs Obytes Coll

Parsing is best-effort: a line that does not match is skipped, never fatal.
"""
import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from limen.core.schemas import (
    ConnectionModel,
    ConnectionState,
    NetProtocol,
    PortModel,
    PortState,
    common_service_name,
)
from limen.utils.logger import Logger

logger = Logger()

_STATE_RE = re.compile(r"\(([A-Z_0-9]+)\)")

_STATE_ALIASES = {
    "ESTABLISHED": ConnectionState.ESTABLISHED,
    "LISTEN": ConnectionState.LISTEN,
    "TIME_WAIT": ConnectionState.TIME_WAIT,
    "CLOSE_WAIT": ConnectionState.CLOSE_WAIT,
    "FIN_WAIT_1": ConnectionState.FIN_WAIT_1,
    "FIN_WAIT1": ConnectionState.FIN_WAIT_1,
    "FIN_WAIT_2": ConnectionState.FIN_WAIT_2,
    "FIN_WAIT2": ConnectionState.FIN_WAIT_2,
    "SYN_SENT": ConnectionState.SYN_SENT,
    "SYN_RECV": ConnectionState.SYN_RECEIVED,
    "SYN_RECEIVED": ConnectionState.SYN_RECEIVED,
    "LAST_ACK": ConnectionState.LAST_ACK,
    "CLOSING": ConnectionState.CLOSING,
    "CLOSED": ConnectionState.CLOSED,
}


class InterfaceCounters(NamedTuple):
    bytes_in: int
    bytes_out: int
    packets_in: int
    packets_out: int


def parse_protocol(node: str) -> Optional[NetProtocol]:
    if "TCP" in node:
        return NetProtocol.TCP6 if "6" in node else NetProtocol.TCP
    if "UDP" in node:
        return NetProtocol.UDP6 if "6" in node else NetProtocol.UDP
    return None


def parse_connection_state(text: str) -> ConnectionState:
    return _STATE_ALIASES.get(text.upper(), ConnectionState.UNKNOWN)


def split_endpoint(text: str) -> Tuple[str, int]:
    """Split 'addr:port', '*:port' or '[v6addr]:port' into (address, port).

    An empty endpoint yields ('*', 0); an unparsable port yields 0.
    """
    text = text.strip()
    if not text:
        return "*", 0

    if text.startswith("["):
        close = text.rfind("]")
        if close != -1:
            address = text[1:close]
            rest = text[close + 1:]
            if rest.startswith(":"):
                return address, _to_port(rest[1:])
            return address, 0

    if ":" in text:
        address, _, port = text.rpartition(":")
        return address or "*", _to_port(port.strip(" ()"))

    return text, 0


def _to_port(text: str) -> int:
    try:
        port = int(text)
    except ValueError:
        return 0
    return port if 0 <= port <= 65535 else 0


def _split_lsof_line(line: str) -> Optional[Tuple[str, int, NetProtocol, str]]:
    parts = line.split()
    if len(parts) < 9:
        return None
    try:
        pid = int(parts[1])
    except ValueError:
        return None
    proto = parse_protocol(parts[7])
    if proto is None:
        return None
    return parts[0], pid, proto, " ".join(parts[8:])


def _parse_name_column(name: str, proto: NetProtocol) -> ConnectionModel:
    """Break a NAME column into endpoints and state. Caller fills pid/process."""
    match = _STATE_RE.search(name)
    if match:
        state = parse_connection_state(match.group(1))
        endpoints = name[:match.start()].strip()
    elif "LISTEN" in name:
        state = ConnectionState.LISTEN
        endpoints = name.replace("(LISTEN)", "").strip()
    else:
        state = ConnectionState.UNKNOWN if proto.is_tcp else ConnectionState.NONE
        endpoints = name.strip()

    local, _, remote = endpoints.partition("->")
    local_address, local_port = split_endpoint(local)
    remote_address, remote_port = split_endpoint(remote)
    return ConnectionModel(
        protocol=proto,
        local_address=local_address,
        local_port=local_port,
        remote_address=remote_address,
        remote_port=remote_port,
        state=state,
    )


def parse_lsof_connections(output: str) -> List[ConnectionModel]:
    connections: List[ConnectionModel] = []
    skipped = 0
    for line in output.splitlines()[1:]:
        if not line.strip():
            continue
        fields = _split_lsof_line(line)
        if fields is None:
            skipped += 1
            continue
        command, pid, proto, name = fields
        conn = _parse_name_column(name, proto)
        connections.append(conn.model_copy(update={"pid": pid, "process_name": command}))

    if skipped:
        logger.debug(f"Socket listing: skipped {skipped} unparsable line(s)")
    return connections


def _local_port(name: str) -> Optional[Tuple[int, str]]:
    """Local (port, address) of a NAME column, or None when it has no port."""
    clean = name.split("(", 1)[0].strip()
    clean = clean.split("->", 1)[0].strip()

    if clean.startswith("["):
        close = clean.rfind("]")
        if close != -1 and clean[close + 1:close + 2] == ":":
            port = clean[close + 2:]
            if port.isdigit():
                return int(port), clean[1:close]

    if ":" in clean:
        address, _, port = clean.rpartition(":")
        if port.isdigit():
            return int(port), address or "*"
    return None


def parse_lsof_ports(output: str) -> List[PortModel]:
    """Collapse socket listing lines into one record per (port, protocol).

    The first line seen for a key supplies owner, state and bind address;
    every further line for that key only bumps the connection count.
    """
    first_seen: Dict[Tuple[int, NetProtocol], PortModel] = {}
    counts: Dict[Tuple[int, NetProtocol], int] = {}
    skipped = 0

    for line in output.splitlines()[1:]:
        if not line.strip():
            continue
        fields = _split_lsof_line(line)
        if fields is None:
            skipped += 1
            continue
        command, pid, proto, name = fields
        local = _local_port(name)
        if local is None:
            skipped += 1
            continue
        number, address = local

        key = (number, proto)
        if key in first_seen:
            counts[key] += 1
            continue

        if "LISTEN" in name:
            state = PortState.LISTENING
        elif "ESTABLISHED" in name or "->" in name:
            state = PortState.ESTABLISHED
        else:
            state = PortState.BOUND

        first_seen[key] = PortModel(
            number=number,
            protocol=proto,
            state=state,
            address=address,
            pid=pid,
            process_name=command,
            service_name=common_service_name(number),
        )
        counts[key] = 1

    if skipped:
        logger.debug(f"Port listing: skipped {skipped} unparsable line(s)")

    ports = [p.model_copy(update={"connection_count": counts[k]}) for k, p in first_seen.items()]
    return sorted(ports, key=lambda p: p.number)


def parse_netstat_ib(output: str) -> Dict[str, InterfaceCounters]:
    stats: Dict[str, InterfaceCounters] = {}
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 11:
            continue
        try:
            counters = InterfaceCounters(
                packets_in=int(parts[4]),
                bytes_in=int(parts[6]),
                packets_out=int(parts[7]),
                bytes_out=int(parts[9]),
            )
        except ValueError:
            continue
        # netstat repeats an interface once per address; the counters agree
        stats[parts[0]] = counters
    return stats
