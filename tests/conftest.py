# tests/conftest.py
"""Shared fixtures: record builders and in-memory providers."""
import os
import sys
from typing import List, Optional

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from limen.core.anomaly import AnomalyDetectionConfig
from limen.core.port_safety import BulkCloseResult, PortCloseResult
from limen.core.process_safety import KillResult
from limen.core.schemas import (
    ConnectionModel,
    ConnectionState,
    NetProtocol,
    NetworkStatsModel,
    PortModel,
    PortState,
    PortSummaryModel,
    ProcessModel,
)
from limen.modules.process_monitor import build_process_tree


def make_process(pid: int, name: str = "worker", cpu: float = 1.0, memory: float = 1.0,
                 uid: int = 501, path: Optional[str] = "/usr/bin/worker", **kwargs) -> ProcessModel:
    return ProcessModel(pid=pid, name=name, cpu_percent=cpu, memory_percent=memory,
                        uid=uid, path=path, user="root" if uid == 0 else "me", **kwargs)


def make_connection(pid: int = 100, name: str = "curl", remote_port: int = 443,
                    state: ConnectionState = ConnectionState.ESTABLISHED,
                    local_port: int = 50000) -> ConnectionModel:
    return ConnectionModel(protocol=NetProtocol.TCP, local_address="192.168.1.5", local_port=local_port,
                           remote_address="93.184.216.34", remote_port=remote_port, state=state,
                           pid=pid, process_name=name)


def make_port(number: int, name: Optional[str] = "server", pid: Optional[int] = 200,
              protocol: NetProtocol = NetProtocol.TCP,
              state: PortState = PortState.LISTENING) -> PortModel:
    return PortModel(number=number, protocol=protocol, state=state, pid=pid, process_name=name)


def make_stats(bytes_in: float = 1000.0, bytes_out: float = 1000.0) -> NetworkStatsModel:
    return NetworkStatsModel(bytes_in_per_second=bytes_in, bytes_out_per_second=bytes_out)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcessProvider:
    def __init__(self, processes: Optional[List[ProcessModel]] = None):
        self.processes = list(processes or [])
        self.killed: List[tuple] = []
        self.kill_result = KillResult.succeeded()
        self.error: Optional[Exception] = None

    def list_processes(self):
        if self.error:
            raise self.error
        return list(self.processes)

    def get_process(self, pid):
        return next((p for p in self.processes if p.pid == pid), None)

    def get_children(self, pid):
        return [p for p in self.processes if p.ppid == pid]

    def search_processes(self, query):
        return [p for p in self.processes if query.lower() in p.name.lower()]

    def get_process_tree(self):
        return build_process_tree(self.processes)

    def validate_kill(self, pid, force=False):
        return KillResult.requires_confirmation(3, "Quit?")

    def terminate_process(self, pid, force=False):
        return self.validate_kill(pid, force)

    def force_quit_process(self, pid):
        return self.terminate_process(pid, force=True)

    def execute_confirmed_kill(self, pid, sig=15):
        self.killed.append((pid, sig))
        return self.kill_result


class FakeNetworkProvider:
    def __init__(self, connections: Optional[List[ConnectionModel]] = None,
                 stats: Optional[NetworkStatsModel] = None):
        self.connections = list(connections or [])
        self.stats = stats or make_stats()

    def list_connections(self, state=None):
        if state is None:
            return list(self.connections)
        return [c for c in self.connections if c.state == state]

    def get_connections(self, pid):
        return [c for c in self.connections if c.pid == pid]

    def list_interfaces(self):
        return []

    def get_stats(self):
        return self.stats

    def resolve_hostname(self, address):
        return None


class FakePortProvider:
    def __init__(self, ports: Optional[List[PortModel]] = None):
        self.ports = list(ports or [])
        self.closed: List[tuple] = []
        self.close_result = PortCloseResult.succeeded()
        self.bulk_result = BulkCloseResult()

    def list_ports(self):
        return list(self.ports)

    def list_listening_ports(self):
        return [p for p in self.ports if p.state == PortState.LISTENING]

    def get_ports(self, pid):
        return [p for p in self.ports if p.pid == pid]

    def is_port_in_use(self, port, protocol):
        return self.get_port_info(port, protocol) is not None

    def get_port_info(self, port, protocol):
        return next((p for p in self.ports if p.number == port and p.protocol == protocol), None)

    def get_summary(self):
        return PortSummaryModel(total_listening=len(self.list_listening_ports()))

    def find_process(self, port, protocol):
        info = self.get_port_info(port, protocol)
        if info is None or info.pid is None or info.process_name is None:
            return None
        return info.pid, info.process_name

    def get_closable_ports(self):
        return [p for p in self.ports if p.number >= 1024]

    def validate_close_port(self, port, protocol, force=False):
        return PortCloseResult.requires_confirmation(3, "Close?", None)

    def close_port(self, port, protocol, force=False):
        return self.validate_close_port(port, protocol, force)

    def execute_confirmed_close(self, port, protocol, force_quit=False):
        self.closed.append((port, protocol, force_quit))
        return self.close_result

    def close_all_non_critical(self, force_quit=False):
        return self.bulk_result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_config() -> AnomalyDetectionConfig:
    """Defaults, but rules are evaluated from the third cycle."""
    return AnomalyDetectionConfig(min_samples_for_baseline=3)
