# limen/agent/engine.py
"""
Limen Agent - Orchestration engine

Composes the three snapshot providers, the safety classifier and the anomaly
detector behind a single object that callers (CLI loop, local API) receive
explicitly. Two layers:

1. LimenCore: stateless facade. Concurrent snapshot acquisition, kill/close
   control and pass-through anomaly queries.
2. LimenMonitor: polling loop on top of a LimenCore. Keeps the latest
   snapshot, runs detection after every refresh and refreshes again after
   a successful kill or close.

Threading Model:
- Acquisition: a small ThreadPoolExecutor runs processes, connections,
  listening ports and stats in parallel; results are joined before analysis
- Monitor: one daemon thread sleeping on a threading.Event between cycles,
  so stop_monitoring() wakes it immediately while an in-flight cycle finishes
- Cycles: refresh() holds a cycle lock across fetch, analyze and publish, so
  a refresh after a kill or close waits for an in-flight polling cycle
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional, Tuple

from limen.core import port_safety
from limen.core.active_response import SIGKILL, SIGTERM
from limen.core.anomaly import (
    Anomaly,
    AnomalyCategory,
    AnomalyDetectionConfig,
    AnomalySeverity,
    AnomalySummary,
)
from limen.core.config import Config
from limen.core.errors import AccessDeniedError, LimenError
from limen.core.port_safety import BulkCloseResult, PortCloseResult, PortSafetyLevel
from limen.core.process_safety import KillResult, ProcessSafetyLevel, classify_process
from limen.core.schemas import (
    ConnectionModel,
    ConnectionState,
    NetProtocol,
    NetworkStatsModel,
    PortModel,
    ProcessModel,
    SystemSnapshot,
)
from limen.modules.anomaly_detector import AnomalyDetector
from limen.modules.network_monitor import NetworkMonitor
from limen.modules.port_monitor import PortMonitor
from limen.modules.process_monitor import ProcessMonitor
from limen.modules.providers import NetworkProvider, PortProvider, ProcessProvider
from limen.utils.logger import Logger

logger = Logger()


class LimenCore:
    """Facade over providers, safety rules and the anomaly detector.

    Every collaborator is injectable; the defaults are the OS-backed
    monitors. Acquisition methods raise LimenError subclasses, control
    methods return result variants.
    """

    def __init__(self, process_provider: Optional[ProcessProvider] = None,
                 network_provider: Optional[NetworkProvider] = None,
                 port_provider: Optional[PortProvider] = None,
                 detector: Optional[AnomalyDetector] = None,
                 anomaly_config: Optional[AnomalyDetectionConfig] = None,
                 max_workers: int = 5):
        self.processes = process_provider or ProcessMonitor()
        self.network = network_provider or NetworkMonitor()
        self.ports = port_provider or PortMonitor(
            network_monitor=self.network if isinstance(self.network, NetworkMonitor) else None,
            process_monitor=self.processes if isinstance(self.processes, ProcessMonitor) else None,
        )
        self.detector = detector or AnomalyDetector(anomaly_config)
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="LimenFetch")

    @classmethod
    def from_config(cls, config: Config) -> "LimenCore":
        """Build the OS-backed stack with tool paths and thresholds from config."""
        network = NetworkMonitor(
            lsof_path=config.lsof_path,
            netstat_path=config.netstat_path,
            command_timeout=config.command_timeout,
        )
        processes = ProcessMonitor()
        return cls(
            process_provider=processes,
            network_provider=network,
            port_provider=PortMonitor(network_monitor=network, process_monitor=processes),
            anomaly_config=config.anomaly_config,
        )

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)

    # --- Snapshot ---

    def fetch_cycle(self) -> Tuple[List[ProcessModel], List[ConnectionModel], List[PortModel], NetworkStatsModel]:
        """Run the four acquisition calls concurrently and join them.

        Raises:
            LimenError: first failure among the four; the others are discarded
        """
        procs = self.executor.submit(self.processes.list_processes)
        conns = self.executor.submit(self.network.list_connections)
        ports = self.executor.submit(self.ports.list_listening_ports)
        stats = self.executor.submit(self.network.get_stats)
        return procs.result(), conns.result(), ports.result(), stats.result()

    def get_system_snapshot(self) -> SystemSnapshot:
        summary = self.executor.submit(self.ports.get_summary)
        processes, connections, listening, stats = self.fetch_cycle()
        return SystemSnapshot(
            timestamp=datetime.now(),
            processes=processes,
            connections=connections,
            listening_ports=listening,
            network_stats=stats,
            port_summary=summary.result(),
        )

    def get_top_processes_by_cpu(self, limit: int = 10) -> List[ProcessModel]:
        processes = sorted(self.processes.list_processes(), key=lambda p: p.cpu_percent, reverse=True)
        return processes[:limit]

    def get_top_processes_by_memory(self, limit: int = 10) -> List[ProcessModel]:
        processes = sorted(self.processes.list_processes(), key=lambda p: p.memory_bytes, reverse=True)
        return processes[:limit]

    def get_connections_for_process(self, name: str) -> List[ConnectionModel]:
        target = name.lower()
        return [
            c for c in self.network.list_connections()
            if c.process_name is not None and c.process_name.lower() == target
        ]

    def get_active_connections(self) -> List[ConnectionModel]:
        return self.network.list_connections(state=ConnectionState.ESTABLISHED)

    def which_process_uses_port(self, port: int) -> Optional[Tuple[int, str]]:
        """Owner of a port, looking at TCP first and UDP second."""
        return (self.ports.find_process(port, NetProtocol.TCP)
                or self.ports.find_process(port, NetProtocol.UDP))

    # --- Process control ---

    def validate_kill(self, pid: int, force: bool = False) -> KillResult:
        return self.processes.validate_kill(pid, force=force)

    def terminate_process(self, pid: int) -> KillResult:
        return self.processes.terminate_process(pid)

    def force_quit_process(self, pid: int) -> KillResult:
        return self.processes.force_quit_process(pid)

    def execute_confirmed_kill(self, pid: int, force_quit: bool = False) -> KillResult:
        return self.processes.execute_confirmed_kill(pid, SIGKILL if force_quit else SIGTERM)

    def get_process_safety_level(self, pid: int) -> Optional[ProcessSafetyLevel]:
        try:
            proc = self.processes.get_process(pid)
        except LimenError:
            return None
        if proc is None:
            return None
        return classify_process(proc.name, proc.pid, proc.uid)

    # --- Port control ---

    def validate_close_port(self, port: int, protocol: NetProtocol, force: bool = False) -> PortCloseResult:
        return self.ports.validate_close_port(port, protocol, force=force)

    def close_port(self, port: int, protocol: NetProtocol, force: bool = False) -> PortCloseResult:
        return self.ports.close_port(port, protocol, force=force)

    def execute_confirmed_close_port(self, port: int, protocol: NetProtocol,
                                     force_quit: bool = False) -> PortCloseResult:
        return self.ports.execute_confirmed_close(port, protocol, force_quit=force_quit)

    def get_port_safety_level(self, port: int, protocol: NetProtocol) -> Optional[PortSafetyLevel]:
        try:
            info = self.ports.get_port_info(port, protocol)
        except LimenError:
            return None
        if info is None:
            return None

        uid = None
        if info.pid is not None:
            try:
                owner = self.processes.get_process(info.pid)
            except AccessDeniedError:
                owner = None
            if owner is not None and owner.uid >= 0:
                uid = owner.uid
        return port_safety.classify_port(info.number, info.process_name, info.pid, uid)

    def get_closable_ports(self) -> List[PortModel]:
        return self.ports.get_closable_ports()

    def close_all_non_critical_ports(self, force_quit: bool = False) -> BulkCloseResult:
        return self.ports.close_all_non_critical(force_quit=force_quit)

    # --- Anomaly detection ---

    def analyze(self, processes: List[ProcessModel], connections: List[ConnectionModel],
                ports: List[PortModel], network_stats: Optional[NetworkStatsModel] = None) -> List[Anomaly]:
        return self.detector.analyze(processes, connections, ports, network_stats)

    def get_active_anomalies(self) -> List[Anomaly]:
        return self.detector.get_active_anomalies()

    def get_anomaly_summary(self) -> AnomalySummary:
        return self.detector.get_summary()

    def get_anomaly_history(self) -> List[Anomaly]:
        return self.detector.get_anomaly_history()

    def clear_anomaly_history(self) -> None:
        self.detector.clear_history()

    def reset_baselines(self) -> None:
        self.detector.reset_baselines()

    def update_anomaly_config(self, config: AnomalyDetectionConfig) -> None:
        self.detector.update_config(config)

    def get_anomaly_config(self) -> AnomalyDetectionConfig:
        return self.detector.get_config()


class LimenMonitor:
    """Polling loop over a LimenCore.

    The latest snapshot fields (processes, connections, ports, network_stats,
    anomalies) are replaced together under a lock after each successful
    cycle. A failed cycle keeps the previous values and records last_error.
    """

    def __init__(self, core: LimenCore, detection_enabled: bool = True):
        self.core = core
        self.lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.processes: List[ProcessModel] = []
        self.connections: List[ConnectionModel] = []
        self.ports: List[PortModel] = []
        self.network_stats: Optional[NetworkStatsModel] = None
        self.anomalies: List[Anomaly] = []
        self.anomaly_summary = AnomalySummary()
        self.anomaly_detection_enabled = detection_enabled
        self.last_error: Optional[Exception] = None
        self.last_updated: Optional[datetime] = None

    @property
    def is_monitoring(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start_monitoring(self, interval: float = 2.0) -> None:
        """Spawn the polling thread. A second call while running is a no-op.

        Args:
            interval: Seconds to wait between the end of one cycle and the next
        """
        if self.is_monitoring:
            return
        self._stop.clear()
        self.last_error = None

        def loop() -> None:
            while not self._stop.is_set():
                self.refresh()
                self._stop.wait(interval)

        self._thread = threading.Thread(target=loop, name="T-Limen", daemon=True)
        self._thread.start()
        logger.info(f"🛰️ Monitoring started (interval {interval}s).")

    def stop_monitoring(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to stop. An in-progress cycle is allowed to finish."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        logger.info("Monitoring stopped.")

    def refresh(self) -> None:
        # One cycle at a time: polling and post-action refreshes share the detector state
        with self._cycle_lock:
            self._run_cycle()

    def _run_cycle(self) -> None:
        started = time.monotonic()
        try:
            processes, connections, ports, stats = self.core.fetch_cycle()
            detected = None
            if self.anomaly_detection_enabled:
                detected = self.core.analyze(processes, connections, ports, stats)
        except Exception as e:
            with self.lock:
                self.last_error = e
            logger.error(f"Refresh failed, keeping previous snapshot: {e}")
            return

        with self.lock:
            self.processes = processes
            self.connections = connections
            self.ports = ports
            self.network_stats = stats
            self.last_updated = datetime.now()
            self.last_error = None
            if detected is not None:
                self.anomalies = detected
                self.anomaly_summary = AnomalySummary.from_anomalies(detected)

        logger.debug(f"Cycle done in {time.monotonic() - started:.2f}s: "
                     f"{len(processes)} processes, {len(connections)} sockets, {len(ports)} ports")

    # --- Anomaly detection controls ---

    def set_anomaly_detection(self, enabled: bool) -> None:
        self.anomaly_detection_enabled = enabled
        if not enabled:
            self._clear_anomalies()

    def _clear_anomalies(self) -> None:
        with self.lock:
            self.anomalies = []
            self.anomaly_summary = AnomalySummary()

    def update_anomaly_config(self, config: AnomalyDetectionConfig) -> None:
        self.core.update_anomaly_config(config)

    def get_anomaly_config(self) -> AnomalyDetectionConfig:
        return self.core.get_anomaly_config()

    def reset_anomaly_baselines(self) -> None:
        self.core.reset_baselines()
        self._clear_anomalies()

    def get_anomaly_history(self) -> List[Anomaly]:
        return self.core.get_anomaly_history()

    def clear_anomaly_history(self) -> None:
        self.core.clear_anomaly_history()

    def has_anomalies_for_pid(self, pid: int) -> bool:
        return self.core.detector.is_process_anomalous(pid)

    def get_anomalies_for_pid(self, pid: int) -> List[Anomaly]:
        return self.core.detector.get_anomalies_for_process(pid)

    def has_anomalies_for_port(self, port: int) -> bool:
        return self.core.detector.is_port_anomalous(port)

    def get_anomalies_for_port(self, port: int) -> List[Anomaly]:
        return self.core.detector.get_anomalies_for_port(port)

    def get_anomalies(self, category: Optional[AnomalyCategory] = None,
                      minimum_severity: Optional[AnomalySeverity] = None) -> List[Anomaly]:
        with self.lock:
            result = list(self.anomalies)
        if category is not None:
            result = [a for a in result if a.category == category]
        if minimum_severity is not None:
            result = [a for a in result if a.severity >= minimum_severity]
        return result

    # --- Process control ---

    def validate_kill(self, pid: int, force: bool = False) -> KillResult:
        return self.core.validate_kill(pid, force=force)

    def execute_kill(self, pid: int, force_quit: bool = False) -> KillResult:
        result = self.core.execute_confirmed_kill(pid, force_quit=force_quit)
        if result.is_success:
            self.refresh()
        return result

    # --- Port control ---

    def validate_close_port(self, port: int, protocol: NetProtocol, force: bool = False) -> PortCloseResult:
        return self.core.validate_close_port(port, protocol, force=force)

    def execute_close_port(self, port: int, protocol: NetProtocol, force_quit: bool = False) -> PortCloseResult:
        result = self.core.execute_confirmed_close_port(port, protocol, force_quit=force_quit)
        if result.is_success:
            self.refresh()
        return result

    def get_closable_ports(self) -> List[PortModel]:
        try:
            return self.core.get_closable_ports()
        except LimenError as e:
            logger.warning(f"Could not list closable ports: {e}")
            return []

    def close_all_non_critical_ports(self, force_quit: bool = False) -> BulkCloseResult:
        result = self.core.close_all_non_critical_ports(force_quit=force_quit)
        if result.succeeded > 0:
            self.refresh()
        return result
