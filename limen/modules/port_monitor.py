# limen/modules/port_monitor.py
from typing import Dict, List, Optional, Tuple

from limen.core import port_safety
from limen.core.active_response import SIGKILL, SIGTERM
from limen.core.errors import AccessDeniedError, LimenError
from limen.core.port_safety import (
    BulkCloseItem,
    BulkCloseResult,
    PortCloseResult,
    PortCloseStatus,
    PortSafetyLevel,
)
from limen.core.process_safety import KillStatus
from limen.core.schemas import NetProtocol, PortModel, PortState, PortSummaryModel
from limen.modules.network_monitor import NetworkMonitor
from limen.modules.parsers import parse_lsof_ports
from limen.modules.process_monitor import ProcessMonitor
from limen.utils.logger import Logger


class PortMonitor:
    """
    Port provider built on the socket-listing utility.
    Ports are deduplicated per (number, protocol); the number of sockets
    sharing a key is reported as its connection count. Closing a port means
    terminating its owner, so every close is routed through the process
    kill path after a port-specific safety check.
    """
    def __init__(self, network_monitor: Optional[NetworkMonitor] = None,
                 process_monitor: Optional[ProcessMonitor] = None):
        self.network = network_monitor or NetworkMonitor()
        self.processes = process_monitor or ProcessMonitor()
        self.logger = Logger()

    def _lsof(self, *args: str) -> List[PortModel]:
        return parse_lsof_ports(self.network.run([self.network.lsof_path, *args]))

    def list_ports(self) -> List[PortModel]:
        return self._lsof("-i", "-n", "-P")

    def list_listening_ports(self) -> List[PortModel]:
        """TCP sockets in LISTEN plus every bound UDP socket.

        UDP has no handshake state, so bound UDP ports are reported as
        LISTENING.
        """
        ports = self._lsof("-iTCP", "-sTCP:LISTEN", "-n", "-P")
        udp = self._lsof("-iUDP", "-n", "-P")
        ports.extend(p.model_copy(update={"state": PortState.LISTENING}) for p in udp)

        unique: Dict[Tuple[int, NetProtocol], PortModel] = {}
        for port in ports:
            unique.setdefault((port.number, port.protocol), port)
        return sorted(unique.values(), key=lambda p: p.number)

    def get_ports(self, pid: int) -> List[PortModel]:
        return [p for p in self.list_ports() if p.pid == pid]

    def get_port_info(self, port: int, protocol: NetProtocol) -> Optional[PortModel]:
        return next((p for p in self.list_ports() if p.number == port and p.protocol == protocol), None)

    def is_port_in_use(self, port: int, protocol: NetProtocol) -> bool:
        return self.get_port_info(port, protocol) is not None

    def find_process(self, port: int, protocol: NetProtocol) -> Optional[Tuple[int, str]]:
        info = self.get_port_info(port, protocol)
        if info is None or info.pid is None or info.process_name is None:
            return None
        return info.pid, info.process_name

    def get_summary(self) -> PortSummaryModel:
        ports = self.list_ports()
        return PortSummaryModel(
            total_listening=sum(1 for p in ports if p.state == PortState.LISTENING),
            total_established=sum(1 for p in ports if p.state == PortState.ESTABLISHED),
            tcp_ports=sum(1 for p in ports if p.protocol.is_tcp),
            udp_ports=sum(1 for p in ports if not p.protocol.is_tcp),
            ports_under_1024=sum(1 for p in ports if p.number < 1024),
            ports_over_1024=sum(1 for p in ports if p.number >= 1024),
        )

    def _owner_uid(self, pid: Optional[int]) -> Optional[int]:
        if pid is None:
            return None
        try:
            proc = self.processes.get_process(pid)
        except AccessDeniedError:
            return None
        if proc is None or proc.uid < 0:
            return None
        return proc.uid

    def safety_level(self, port: PortModel) -> PortSafetyLevel:
        return port_safety.classify_port(port.number, port.process_name, port.pid,
                                         self._owner_uid(port.pid))

    def get_closable_ports(self) -> List[PortModel]:
        """Listening ports outside the critical and system tiers."""
        blocked = (PortSafetyLevel.CRITICAL, PortSafetyLevel.SYSTEM)
        return [p for p in self.list_listening_ports() if self.safety_level(p) not in blocked]

    # --- Close protocol ---

    def validate_close_port(self, port: int, protocol: NetProtocol, force: bool = False) -> PortCloseResult:
        try:
            info = self.get_port_info(port, protocol)
        except LimenError as e:
            self.logger.error(f"Port lookup failed for {port}/{protocol.value}: {e}")
            return PortCloseResult.failed(str(e))
        if info is None:
            return PortCloseResult.port_not_in_use()
        if info.pid is None:
            return PortCloseResult.failed("Could not determine which process is using this port")

        result = port_safety.validate_close(
            port,
            process_name=info.process_name,
            process_pid=info.pid,
            process_uid=self._owner_uid(info.pid),
            force=force,
        )
        self.logger.info(f"Close validation for port {port}/{protocol.value}: {result.status.value}")
        return result

    def close_port(self, port: int, protocol: NetProtocol, force: bool = False) -> PortCloseResult:
        """Validate and execute in one call when validation allows it.

        Port validation always asks for confirmation, so in practice this
        returns the validation result and the caller follows up with
        execute_confirmed_close.
        """
        validation = self.validate_close_port(port, protocol, force)
        if validation.status != PortCloseStatus.SUCCESS:
            return validation
        return self.execute_confirmed_close(port, protocol, force_quit=force)

    def execute_confirmed_close(self, port: int, protocol: NetProtocol,
                                force_quit: bool = False) -> PortCloseResult:
        try:
            info = self.get_port_info(port, protocol)
        except LimenError as e:
            return PortCloseResult.failed(str(e))
        if info is None or info.pid is None:
            return PortCloseResult.port_not_in_use()

        level = port_safety.classify_port(port, info.process_name, info.pid, None)
        if level == PortSafetyLevel.CRITICAL:
            self.logger.warning(f"Blocked close of critical port {port} ({info.process_name}).")
            return PortCloseResult.blocked("Critical system port - close blocked for safety")

        kill = self.processes.execute_confirmed_kill(info.pid, SIGKILL if force_quit else SIGTERM)

        if kill.status == KillStatus.SUCCESS:
            self.logger.success(f"Port {port}/{protocol.value} closed ({info.process_name}, PID {info.pid}).")
            return PortCloseResult.succeeded()
        if kill.status == KillStatus.BLOCKED:
            return PortCloseResult.blocked(kill.reason or "Blocked")
        if kill.status == KillStatus.REQUIRES_CONFIRMATION:
            return PortCloseResult.requires_confirmation(
                PortSafetyLevel(int(kill.level)) if kill.level is not None else PortSafetyLevel.NORMAL,
                kill.message or "",
                info.process_name,
            )
        if kill.status == KillStatus.ACCESS_DENIED:
            return PortCloseResult.access_denied()
        if kill.status == KillStatus.NOT_FOUND:
            return PortCloseResult.port_not_in_use()
        return PortCloseResult.failed(kill.error or "Unknown error")

    def close_all_non_critical(self, force_quit: bool = False) -> BulkCloseResult:
        """Close every listening port below the system tier.

        Critical and system ports are skipped and counted. A port that is
        already gone by the time its turn comes (its owner held an earlier
        port) counts as closed.
        """
        result = BulkCloseResult()
        try:
            ports = self.list_listening_ports()
        except LimenError as e:
            self.logger.error(f"Bulk close aborted, port listing failed: {e}")
            return result

        for port in ports:
            level = self.safety_level(port)
            if level == PortSafetyLevel.CRITICAL:
                outcome = PortCloseResult.blocked("Critical system port - skipped")
                result.skipped_critical += 1
            elif level == PortSafetyLevel.SYSTEM:
                outcome = PortCloseResult.blocked("System service port - skipped")
                result.skipped_system += 1
            else:
                outcome = self.execute_confirmed_close(port.number, port.protocol, force_quit)
                if outcome.status in (PortCloseStatus.SUCCESS, PortCloseStatus.PORT_NOT_IN_USE):
                    result.succeeded += 1
                else:
                    result.failed += 1

            result.items.append(BulkCloseItem(
                port=port.number,
                protocol=port.protocol,
                process_name=port.process_name,
                result=outcome,
            ))

        self.logger.info(
            f"Bulk close: {result.succeeded} closed, {result.failed} failed, "
            f"{result.skipped_critical} critical and {result.skipped_system} system skipped"
        )
        return result
