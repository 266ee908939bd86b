# tests/test_engine.py
import threading
import time

import pytest

from limen.agent.engine import LimenCore, LimenMonitor
from limen.core.active_response import SIGKILL, SIGTERM
from limen.core.anomaly import AnomalyCategory, AnomalyDetectionConfig, AnomalySeverity, AnomalyType
from limen.core.errors import SystemCallError
from limen.core.port_safety import BulkCloseResult, PortCloseResult, PortSafetyLevel
from limen.core.process_safety import KillResult, ProcessSafetyLevel
from limen.core.schemas import ConnectionState, NetProtocol, PortState, ProcessStatus
from limen.modules.anomaly_detector import AnomalyDetector
from limen.modules.network_monitor import NetworkMonitor
from limen.modules.port_monitor import PortMonitor
from limen.modules.process_monitor import ProcessMonitor
from limen.modules.providers import NetworkProvider, PortProvider, ProcessProvider

from conftest import (
    FakeNetworkProvider,
    FakePortProvider,
    FakeProcessProvider,
    make_connection,
    make_port,
    make_process,
)


@pytest.fixture
def providers():
    processes = FakeProcessProvider([
        make_process(100, name="worker", cpu=5.0, memory_bytes=300),
        make_process(120, name="httpd", cpu=1.0, uid=0, memory_bytes=900),
        make_process(130, name="Dock", cpu=50.0, memory_bytes=100),
        make_process(140, name="stuck", status=ProcessStatus.ZOMBIE),
    ])
    network = FakeNetworkProvider([
        make_connection(pid=100, name="curl"),
        make_connection(pid=101, name="curl2", state=ConnectionState.TIME_WAIT),
        make_connection(pid=102, name="Curl", state=ConnectionState.CLOSE_WAIT),
    ])
    ports = FakePortProvider([
        make_port(80, name="httpd", pid=120),
        make_port(8080, name="server", pid=200),
        make_port(5353, name="mdns", pid=300, protocol=NetProtocol.UDP),
        make_port(50000, name="curl", pid=100, state=PortState.ESTABLISHED),
    ])
    return processes, network, ports


@pytest.fixture
def core(providers, clock):
    processes, network, ports = providers
    detector = AnomalyDetector(AnomalyDetectionConfig(min_samples_for_baseline=1), clock=clock)
    core = LimenCore(processes, network, ports, detector=detector)
    yield core
    core.shutdown()


@pytest.fixture
def monitor(core):
    monitor = LimenMonitor(core)
    yield monitor
    monitor.stop_monitoring(timeout=2)


# --- LimenCore ---

def test_fetch_cycle_joins_all_sources(core):
    processes, connections, ports, stats = core.fetch_cycle()
    assert len(processes) == 4
    assert len(connections) == 3
    assert [p.number for p in ports] == [80, 8080, 5353]
    assert stats.bytes_in_per_second == 1000.0


def test_fetch_cycle_propagates_provider_error(core, providers):
    providers[0].error = SystemCallError("ps failed")
    with pytest.raises(SystemCallError):
        core.fetch_cycle()


def test_system_snapshot(core):
    snapshot = core.get_system_snapshot()
    assert (snapshot.process_count, snapshot.connection_count, snapshot.listening_port_count) == (4, 3, 3)
    assert snapshot.port_summary.total_listening == 3
    assert set(snapshot.processes_by_user) == {"me", "root"}


def test_top_processes(core):
    assert [p.pid for p in core.get_top_processes_by_cpu(2)] == [130, 100]
    assert [p.pid for p in core.get_top_processes_by_memory(1)] == [120]


def test_connection_queries(core):
    assert sorted(c.pid for c in core.get_connections_for_process("CURL")) == [100, 102]
    assert [c.pid for c in core.get_active_connections()] == [100]


def test_which_process_uses_port_falls_back_to_udp(core):
    assert core.which_process_uses_port(80) == (120, "httpd")
    assert core.which_process_uses_port(5353) == (300, "mdns")
    assert core.which_process_uses_port(9) is None


def test_confirmed_kill_signal_choice(core, providers):
    core.execute_confirmed_kill(100)
    core.execute_confirmed_kill(100, force_quit=True)
    assert providers[0].killed == [(100, SIGTERM), (100, SIGKILL)]


def test_process_safety_level(core):
    assert core.get_process_safety_level(130) == ProcessSafetyLevel.SYSTEM
    assert core.get_process_safety_level(100) == ProcessSafetyLevel.NORMAL
    assert core.get_process_safety_level(999) is None


def test_port_safety_level_uses_owner_uid(core):
    assert core.get_port_safety_level(80, NetProtocol.TCP) == PortSafetyLevel.SYSTEM
    # owner pid 200 is not in the process list, so the uid is unknown
    assert core.get_port_safety_level(8080, NetProtocol.TCP) == PortSafetyLevel.IMPORTANT
    assert core.get_port_safety_level(81, NetProtocol.TCP) is None


def test_anomaly_passthroughs(core):
    processes, connections, ports, stats = core.fetch_cycle()
    detected = core.analyze(processes, connections, ports, stats)
    assert AnomalyType.ZOMBIE_PROCESS in {a.type for a in detected}
    assert core.get_anomaly_summary().total == len(detected)
    assert len(core.get_anomaly_history()) == len(detected)

    core.clear_anomaly_history()
    assert core.get_anomaly_history() == []

    core.update_anomaly_config(AnomalyDetectionConfig(process_spawn_rate=50))
    assert core.get_anomaly_config().process_spawn_rate == 50

    core.reset_baselines()
    assert core.get_active_anomalies() == []


# --- LimenMonitor ---

def test_refresh_stores_snapshot_and_anomalies(monitor):
    monitor.refresh()

    assert len(monitor.processes) == 4
    assert len(monitor.ports) == 3
    assert monitor.last_updated is not None
    assert monitor.last_error is None
    assert monitor.has_anomalies_for_pid(140)
    assert monitor.anomaly_summary.total == len(monitor.anomalies)


def test_failed_refresh_keeps_previous_snapshot(monitor, providers):
    monitor.refresh()
    before = monitor.processes
    providers[0].error = SystemCallError("ps failed")

    monitor.refresh()

    assert monitor.processes is before
    assert isinstance(monitor.last_error, SystemCallError)

    providers[0].error = None
    monitor.refresh()
    assert monitor.last_error is None


def test_analysis_error_keeps_previous_snapshot(monitor, core, monkeypatch):
    monitor.refresh()
    before = monitor.processes

    def broken(*args):
        raise RuntimeError("detector failed")

    monkeypatch.setattr(core, "analyze", broken)
    monitor.refresh()

    assert monitor.processes is before
    assert isinstance(monitor.last_error, RuntimeError)


class SlowFirstListing(FakeProcessProvider):
    """First listing blocks until released and returns an older process list."""

    def __init__(self, stale, current):
        super().__init__(current)
        self.stale = stale
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def list_processes(self):
        self.calls += 1
        if self.calls == 1:
            self.entered.set()
            self.release.wait(5)
            return list(self.stale)
        return super().list_processes()


def test_refresh_after_kill_waits_for_inflight_cycle(providers, clock):
    _, network, ports = providers
    listing = SlowFirstListing(
        stale=[make_process(pid) for pid in range(100, 105)],
        current=[make_process(pid) for pid in range(100, 130)],
    )
    detector = AnomalyDetector(AnomalyDetectionConfig(min_samples_for_baseline=1), clock=clock)
    core = LimenCore(listing, network, ports, detector=detector)
    monitor = LimenMonitor(core)
    try:
        polling = threading.Thread(target=monitor.refresh)
        polling.start()
        assert listing.entered.wait(2)

        killer = threading.Thread(target=monitor.execute_kill, args=(100,))
        killer.start()
        killer.join(0.2)
        assert killer.is_alive()

        listing.release.set()
        polling.join(2)
        killer.join(2)

        assert len(monitor.processes) == 30
        assert len(detector.previous_pids) == 30
    finally:
        listing.release.set()
        core.shutdown()


def test_disabling_detection_clears_and_skips(monitor, core):
    monitor.refresh()
    assert monitor.anomalies

    monitor.set_anomaly_detection(False)
    assert monitor.anomalies == []
    assert monitor.anomaly_summary.total == 0

    monitor.refresh()
    assert monitor.anomalies == []
    assert core.detector.sample_count == 1


def test_monitor_anomaly_filters(monitor):
    monitor.refresh()
    process_only = monitor.get_anomalies(category=AnomalyCategory.PROCESS)
    assert process_only and all(a.category == AnomalyCategory.PROCESS for a in process_only)
    assert all(a.severity >= AnomalySeverity.HIGH
               for a in monitor.get_anomalies(minimum_severity=AnomalySeverity.HIGH))
    assert monitor.has_anomalies_for_port(8080)
    assert monitor.get_anomalies_for_port(8080)


def test_reset_baselines_clears_monitor_state(monitor):
    monitor.refresh()
    monitor.reset_anomaly_baselines()
    assert monitor.anomalies == []
    assert not monitor.has_anomalies_for_pid(140)


def test_successful_kill_refreshes(monitor):
    assert monitor.last_updated is None
    assert monitor.execute_kill(100).is_success
    assert monitor.last_updated is not None


def test_failed_kill_does_not_refresh(monitor, providers):
    providers[0].kill_result = KillResult.access_denied()
    monitor.execute_kill(100, force_quit=True)
    assert monitor.last_updated is None
    assert providers[0].killed == [(100, SIGKILL)]


def test_close_port_refreshes_on_success(monitor, providers):
    result = monitor.execute_close_port(8080, NetProtocol.TCP, force_quit=True)
    assert result.is_success
    assert providers[2].closed == [(8080, NetProtocol.TCP, True)]
    assert monitor.last_updated is not None

    monitor.last_updated = None
    providers[2].close_result = PortCloseResult.access_denied()
    monitor.execute_close_port(8080, NetProtocol.TCP)
    assert monitor.last_updated is None


def test_bulk_close_refreshes_only_when_something_closed(monitor, providers):
    monitor.close_all_non_critical_ports()
    assert monitor.last_updated is None

    providers[2].bulk_result = BulkCloseResult(succeeded=2)
    monitor.close_all_non_critical_ports()
    assert monitor.last_updated is not None


def test_closable_ports_swallow_listing_failure(monitor, providers, monkeypatch):
    assert [p.number for p in monitor.get_closable_ports()] == [8080, 5353, 50000]

    def broken():
        raise SystemCallError("lsof not found")

    monkeypatch.setattr(providers[2], "get_closable_ports", broken)
    assert monitor.get_closable_ports() == []


def test_polling_loop_starts_and_stops(monitor):
    monitor.start_monitoring(interval=0.01)
    deadline = time.time() + 2
    while monitor.last_updated is None and time.time() < deadline:
        time.sleep(0.01)

    assert monitor.is_monitoring
    assert monitor.last_updated is not None

    monitor.stop_monitoring(timeout=2)
    assert not monitor.is_monitoring


def test_monitors_and_fakes_satisfy_provider_protocols(providers):
    processes, network, ports = providers
    assert isinstance(processes, ProcessProvider) and isinstance(ProcessMonitor(), ProcessProvider)
    assert isinstance(network, NetworkProvider) and isinstance(NetworkMonitor(), NetworkProvider)
    assert isinstance(ports, PortProvider) and isinstance(PortMonitor(), PortProvider)
