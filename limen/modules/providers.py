# limen/modules/providers.py
"""
Provider capabilities the orchestrator depends on.

Each capability has one OS-backed implementation (process_monitor,
network_monitor, port_monitor); tests substitute fakes that satisfy the same
Protocol. Acquisition methods raise limen.core.errors.LimenError subclasses;
kill/close methods never raise and return a result variant instead.
"""
from typing import List, Optional, Protocol, Tuple, runtime_checkable

from limen.core.active_response import SIGTERM
from limen.core.port_safety import BulkCloseResult, PortCloseResult
from limen.core.process_safety import KillResult
from limen.core.schemas import (
    ConnectionModel,
    ConnectionState,
    InterfaceModel,
    NetProtocol,
    NetworkStatsModel,
    PortModel,
    PortSummaryModel,
    ProcessModel,
    ProcessTreeNode,
)


@runtime_checkable
class ProcessProvider(Protocol):
    def list_processes(self) -> List[ProcessModel]: ...

    def get_process(self, pid: int) -> Optional[ProcessModel]: ...

    def get_children(self, pid: int) -> List[ProcessModel]: ...

    def search_processes(self, query: str) -> List[ProcessModel]: ...

    def get_process_tree(self) -> List[ProcessTreeNode]: ...

    def validate_kill(self, pid: int, force: bool = False) -> KillResult: ...

    def terminate_process(self, pid: int, force: bool = False) -> KillResult: ...

    def force_quit_process(self, pid: int) -> KillResult: ...

    def execute_confirmed_kill(self, pid: int, sig: int = SIGTERM) -> KillResult: ...


@runtime_checkable
class NetworkProvider(Protocol):
    def list_connections(self, state: Optional[ConnectionState] = None) -> List[ConnectionModel]: ...

    def get_connections(self, pid: int) -> List[ConnectionModel]: ...

    def list_interfaces(self) -> List[InterfaceModel]: ...

    def get_stats(self) -> NetworkStatsModel: ...

    def resolve_hostname(self, address: str) -> Optional[str]: ...


@runtime_checkable
class PortProvider(Protocol):
    def list_ports(self) -> List[PortModel]: ...

    def list_listening_ports(self) -> List[PortModel]: ...

    def get_ports(self, pid: int) -> List[PortModel]: ...

    def is_port_in_use(self, port: int, protocol: NetProtocol) -> bool: ...

    def get_port_info(self, port: int, protocol: NetProtocol) -> Optional[PortModel]: ...

    def get_summary(self) -> PortSummaryModel: ...

    def find_process(self, port: int, protocol: NetProtocol) -> Optional[Tuple[int, str]]: ...

    def get_closable_ports(self) -> List[PortModel]: ...

    def validate_close_port(self, port: int, protocol: NetProtocol, force: bool = False) -> PortCloseResult: ...

    def close_port(self, port: int, protocol: NetProtocol, force: bool = False) -> PortCloseResult: ...

    def execute_confirmed_close(self, port: int, protocol: NetProtocol,
                                force_quit: bool = False) -> PortCloseResult: ...

    def close_all_non_critical(self, force_quit: bool = False) -> BulkCloseResult: ...
