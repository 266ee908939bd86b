# limen/modules/network_monitor.py
"""
Limen - Network Monitor

Socket and interface provider. Sockets come from the socket-listing utility
(lsof), interface counters from netstat -ib with psutil's per-NIC counters as
a fallback where netstat prints a different layout (e.g. Linux net-tools).
"""
import socket
import subprocess
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import psutil

from limen.core.errors import SystemCallError
from limen.core.schemas import ConnectionModel, ConnectionState, InterfaceModel, NetworkStatsModel
from limen.modules.parsers import InterfaceCounters, parse_lsof_connections, parse_netstat_ib
from limen.utils.logger import Logger

CommandRunner = Callable[[Sequence[str]], str]

INTERFACE_DISPLAY_NAMES = {
    "lo0": "Loopback",
    "lo": "Loopback",
    "en0": "Wi-Fi",
    "en1": "Ethernet",
    "bridge0": "Bridge",
    "awdl0": "AirDrop",
    "llw0": "Low Latency WLAN",
    "utun0": "VPN Tunnel",
    "utun1": "VPN Tunnel",
    "utun2": "VPN Tunnel",
    "utun3": "VPN Tunnel",
}


def interface_display_name(name: str) -> str:
    if name in INTERFACE_DISPLAY_NAMES:
        return INTERFACE_DISPLAY_NAMES[name]
    if name.startswith("en") or name.startswith("eth"):
        return f"Ethernet {name}"
    if name.startswith("utun") or name.startswith("tun"):
        return f"Tunnel {name}"
    return name


def run_command(args: Sequence[str], timeout: float = 10.0) -> str:
    """Run a short-lived introspection command and return its stdout.

    A non-zero exit status is not an error: lsof exits 1 when nothing matches.

    Raises:
        SystemCallError: the binary is missing, could not start, or timed out
    """
    try:
        completed = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise SystemCallError(f"{args[0]} not found") from e
    except subprocess.TimeoutExpired as e:
        raise SystemCallError(f"{args[0]} timed out after {timeout}s") from e
    except OSError as e:
        raise SystemCallError(f"{args[0]} failed: {e}") from e
    return completed.stdout or ""


class NetworkMonitor:
    """Network provider. Holds two small caches, each under its own lock:
    the previous counter totals for throughput, and reverse-DNS results."""

    def __init__(self, lsof_path: str = "lsof", netstat_path: str = "netstat",
                 command_timeout: float = 10.0,
                 runner: Optional[CommandRunner] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.logger = Logger()
        self.lsof_path = lsof_path
        self.netstat_path = netstat_path
        self.command_timeout = command_timeout
        self._runner = runner or (lambda args: run_command(args, timeout=self.command_timeout))
        self._clock = clock

        self.stats_lock = threading.Lock()
        self._previous: Optional[Tuple[float, int, int]] = None

        self.hostname_lock = threading.Lock()
        self._hostname_cache: Dict[str, str] = {}

    def run(self, args: Sequence[str]) -> str:
        return self._runner(args)

    # --- Connections ---

    def list_connections(self, state: Optional[ConnectionState] = None) -> List[ConnectionModel]:
        output = self.run([self.lsof_path, "-i", "-n", "-P"])
        connections = parse_lsof_connections(output)
        if state is not None:
            connections = [c for c in connections if c.state == state]
        return connections

    def get_connections(self, pid: int) -> List[ConnectionModel]:
        return [c for c in self.list_connections() if c.pid == pid]

    # --- Interfaces ---

    def _interface_counters(self) -> Dict[str, InterfaceCounters]:
        try:
            counters = parse_netstat_ib(self.run([self.netstat_path, "-ib"]))
        except SystemCallError as e:
            self.logger.debug(f"netstat unavailable, using psutil counters: {e}")
            counters = {}
        if counters:
            return counters

        try:
            per_nic = psutil.net_io_counters(pernic=True)
        except (psutil.Error, OSError) as e:
            self.logger.warning(f"Interface counters unavailable: {e}")
            return {}
        return {
            name: InterfaceCounters(
                bytes_in=c.bytes_recv,
                bytes_out=c.bytes_sent,
                packets_in=c.packets_recv,
                packets_out=c.packets_sent,
            )
            for name, c in per_nic.items()
        }

    def list_interfaces(self) -> List[InterfaceModel]:
        try:
            addresses = psutil.net_if_addrs()
            if_stats = psutil.net_if_stats()
        except (psutil.Error, OSError) as e:
            raise SystemCallError(f"interface enumeration failed: {e}") from e

        counters = self._interface_counters()
        interfaces = []
        for name, entries in addresses.items():
            ipv4 = [a.address for a in entries if a.family == socket.AF_INET]
            ipv6 = [a.address.split("%")[0] for a in entries if a.family == socket.AF_INET6]
            mac = next((a.address for a in entries if a.family == psutil.AF_LINK and a.address), None)

            st = if_stats.get(name)
            flags = getattr(st, "flags", "") if st else ""
            is_loopback = "loopback" in flags or any(ip.startswith("127.") for ip in ipv4) or "::1" in ipv6
            c = counters.get(name)

            interfaces.append(InterfaceModel(
                name=name,
                display_name=interface_display_name(name),
                mac_address=mac,
                ipv4_addresses=ipv4,
                ipv6_addresses=ipv6,
                is_up=bool(st and st.isup),
                is_loopback=is_loopback,
                mtu=st.mtu if st else 0,
                bytes_in=c.bytes_in if c else 0,
                bytes_out=c.bytes_out if c else 0,
                packets_in=c.packets_in if c else 0,
                packets_out=c.packets_out if c else 0,
            ))

        return sorted(interfaces, key=lambda i: i.name)

    # --- Stats ---

    def get_stats(self) -> NetworkStatsModel:
        """Aggregate interface counters and derive throughput.

        Throughput is (current_total - previous_total) / elapsed, clamped at
        zero so counter resets never produce negative rates. The first call
        reports zero throughput.
        """
        interfaces = self.list_interfaces()
        connections = self.list_connections()

        total_in = sum(i.bytes_in for i in interfaces)
        total_out = sum(i.bytes_out for i in interfaces)
        now = self._clock()

        in_rate = out_rate = 0.0
        with self.stats_lock:
            if self._previous is not None:
                prev_ts, prev_in, prev_out = self._previous
                elapsed = now - prev_ts
                if elapsed > 0:
                    in_rate = (total_in - prev_in) / elapsed
                    out_rate = (total_out - prev_out) / elapsed
            self._previous = (now, total_in, total_out)

        return NetworkStatsModel(
            timestamp=datetime.now(),
            total_bytes_in=total_in,
            total_bytes_out=total_out,
            total_packets_in=sum(i.packets_in for i in interfaces),
            total_packets_out=sum(i.packets_out for i in interfaces),
            active_connections=len(connections),
            bytes_in_per_second=max(0.0, in_rate),
            bytes_out_per_second=max(0.0, out_rate),
        )

    # --- DNS ---

    def resolve_hostname(self, address: str) -> Optional[str]:
        """Best-effort reverse lookup. Only real names are cached."""
        with self.hostname_lock:
            cached = self._hostname_cache.get(address)
        if cached is not None:
            return cached

        try:
            name = socket.gethostbyaddr(address)[0]
        except (socket.herror, socket.gaierror, OSError, UnicodeError):
            return None

        if not name or name == address:
            return None
        with self.hostname_lock:
            self._hostname_cache[address] = name
        return name
