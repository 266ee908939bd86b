# limen/modules/anomaly_detector.py
"""
Limen - Anomaly Detector
Rolling-baseline detection over processes, network throughput and ports.

Every sampling cycle updates the baselines first and only evaluates rules
once enough cycles have been seen. Spike rules compare the current value
with the baseline as it stood before this cycle's sample was added, so a
single outlier cannot raise its own threshold.
"""
import threading
import time
from collections import Counter
from typing import Callable, Dict, List, Optional, Set, Tuple

from limen.core.anomaly import (
    Anomaly,
    AnomalyCategory,
    AnomalyDetectionConfig,
    AnomalySeverity,
    AnomalySummary,
    AnomalyType,
    NetworkAnomalyDetails,
    PortAnomalyDetails,
    ProcessAnomalyDetails,
)
from limen.core.baselines import BaselineStats, NetworkBaseline, PortBaseline, ProcessBaseline
from limen.core.schemas import (
    ConnectionModel,
    NetworkStatsModel,
    PortModel,
    PortState,
    ProcessModel,
    ProcessStatus,
)
from limen.utils.formatting import format_bytes_per_second
from limen.utils.logger import Logger

MAX_HISTORY_SIZE = 100
UNUSUAL_PROCESS_WINDOW_SECONDS = 60.0
CONNECTION_FLOOD_MIN_INCREASE = 20

# Lowercased names never reported as unusual
KNOWN_PROCESS_NAMES = frozenset({
    # macOS
    "kernel_task", "launchd", "loginwindow", "windowserver", "finder",
    "dock", "systemuiserver", "notificationcenterui", "cfprefsd",
    "distnoted", "coreaudiod", "coreservicesd", "mdworker", "mds",
    "spotlight", "usermanagerd", "diskarbitrationd", "securityd",
    "powerd", "trustd", "opendirectoryd", "networkd", "nsurlsessiond",
    "usernotificationcenter", "sharedfilelistd", "quicklook",
    "syncdefaultsd", "imagent", "callservicesd", "identityservicesd",
    "apsd", "locationd", "cloudd", "bird", "assistantd",
    "mediaremoted", "mediaanalysisd", "photoanalysisd", "photolibraryd",
    "softwareupdated", "appstoreagent", "storedownloadd",
    "sandboxd", "symptomsd", "analyticsd", "diagnosticd",
    "ctkd", "containermanagerd", "biomesyncd", "duetexpertd",
    "airplayuiagent", "controlcenter", "syspolicyd", "thermald",
    "amfid", "logd", "syslogd", "iconservicesagent", "lsd",
    "revisiond", "secinitd", "contextstored", "bluetoothd",
    "audioaccessoryd", "airportd", "wifi-network-cm", "wifip2pd",
    "xpc_service", "com.apple", "safari", "chrome", "firefox",
    "code", "terminal", "iterm", "xcode", "simulator",
    # Linux
    "systemd", "kthreadd", "init", "sshd", "systemd-journald",
    "systemd-udevd", "systemd-logind", "dbus-daemon", "networkmanager",
    "cron", "rsyslogd",
})

SUSPICIOUS_EXEC_DIRS = ("/tmp/", "/var/tmp/", "/Users/", "/private/tmp/")

SUSPICIOUS_NAME_PATTERNS = (
    "nc", "ncat", "netcat", "socat", "reverse", "shell", "backdoor", "exploit", "payload",
)

# Owners allowed on privileged ports (case-insensitive substring match)
PRIVILEGED_PORT_OWNERS = ("launchd", "kernel_task", "mdnsresponder", "httpd", "nginx", "apache")

KNOWN_SERVICE_PORTS = frozenset({22, 80, 443, 53, 67, 68, 123, 5353})


class AnomalyDetector:
    """
    Owns the baseline store, the active anomaly set and the bounded history.
    A single lock guards all of it; analyze() is the only writer.
    """
    def __init__(self, config: Optional[AnomalyDetectionConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.logger = Logger()
        self.lock = threading.Lock()
        self._clock = clock

        self.config = config or AnomalyDetectionConfig()

        self.process_baselines: Dict[int, ProcessBaseline] = {}
        self.network_baseline = NetworkBaseline()
        self.port_baseline = PortBaseline()
        self.process_first_seen: Dict[str, float] = {}

        self.previous_pids: Set[int] = set()
        self.previous_connections_by_process: Dict[str, int] = {}

        self.active_anomalies: List[Anomaly] = []
        self.anomaly_history: List[Anomaly] = []
        self.sample_count = 0

    # --- Configuration ---

    def update_config(self, config: AnomalyDetectionConfig) -> None:
        """Swap thresholds atomically. Baselines are kept."""
        with self.lock:
            self.config = config

    def get_config(self) -> AnomalyDetectionConfig:
        with self.lock:
            return self.config

    # --- Main cycle ---

    def analyze(self, processes: List[ProcessModel], connections: List[ConnectionModel],
                ports: List[PortModel], network_stats: Optional[NetworkStatsModel] = None) -> List[Anomaly]:
        with self.lock:
            now = self._clock()
            self.sample_count += 1

            prior_process = self._update_process_baselines(processes, now)
            prior_network = self.network_baseline.throughput_stats()
            if network_stats is not None:
                self.network_baseline.add_sample(
                    network_stats.bytes_in_per_second,
                    network_stats.bytes_out_per_second,
                    len(connections),
                    max_samples=self.config.baseline_window_size,
                    now=now,
                )
            self.port_baseline.update(ports, now=now)

            if self.sample_count < self.config.min_samples_for_baseline:
                self._record_previous(processes, connections)
                return []

            detected: List[Anomaly] = []
            detected.extend(self._detect_process_anomalies(processes, prior_process, now))
            detected.extend(self._detect_network_anomalies(connections, network_stats, prior_network))
            detected.extend(self._detect_port_anomalies(ports, now))

            self._record_previous(processes, connections)

            self.active_anomalies = detected
            self.anomaly_history = (list(reversed(detected)) + self.anomaly_history)[:MAX_HISTORY_SIZE]

        for anomaly in detected:
            if anomaly.severity >= AnomalySeverity.HIGH:
                self.logger.warning(f"[{anomaly.severity.label.upper()}] {anomaly.title}: {anomaly.description}")
        return list(detected)

    def _record_previous(self, processes: List[ProcessModel], connections: List[ConnectionModel]) -> None:
        self.previous_pids = {p.pid for p in processes}
        self.previous_connections_by_process = dict(
            Counter(c.process_name for c in connections if c.process_name is not None)
        )

    def _update_process_baselines(self, processes: List[ProcessModel],
                                  now: float) -> Dict[int, Tuple[BaselineStats, BaselineStats]]:
        """Append this cycle's samples and drop baselines of exited pids.

        Returns, per pid, the (cpu, memory) stats as they were before the append.
        """
        prior: Dict[int, Tuple[BaselineStats, BaselineStats]] = {}
        for proc in processes:
            baseline = self.process_baselines.get(proc.pid)
            if baseline is None or baseline.name != proc.name:
                # New pid, or a reused pid now running something else
                baseline = ProcessBaseline(proc.pid, proc.name)
                self.process_baselines[proc.pid] = baseline
            else:
                prior[proc.pid] = (baseline.cpu_stats(), baseline.memory_stats())
            baseline.add_sample(proc.cpu_percent, proc.memory_percent,
                                max_samples=self.config.baseline_window_size, now=now)

        current = {p.pid for p in processes}
        for pid in [pid for pid in self.process_baselines if pid not in current]:
            del self.process_baselines[pid]
        return prior

    # --- Process rules ---

    def _detect_process_anomalies(self, processes: List[ProcessModel],
                                  prior: Dict[int, Tuple[BaselineStats, BaselineStats]],
                                  now: float) -> List[Anomaly]:
        anomalies: List[Anomaly] = []

        for proc in processes:
            if proc.pid in prior:
                cpu_stats, memory_stats = prior[proc.pid]
                cpu = self._detect_cpu_spike(proc, cpu_stats)
                if cpu:
                    anomalies.append(cpu)
                memory = self._detect_memory_spike(proc, memory_stats)
                if memory:
                    anomalies.append(memory)

            unusual = self._detect_unusual_process(proc, now)
            if unusual:
                anomalies.append(unusual)

            if proc.status == ProcessStatus.ZOMBIE:
                anomalies.append(Anomaly(
                    type=AnomalyType.ZOMBIE_PROCESS,
                    title=f"Zombie Process: {proc.name}",
                    description=f"Process {proc.name} (PID {proc.pid}) is in zombie state",
                    details=ProcessAnomalyDetails(process_name=proc.name, pid=proc.pid, user_id=proc.uid),
                    related_pid=proc.pid,
                ))

        self._prune_first_seen(processes, now)

        new_pids = {p.pid for p in processes} - self.previous_pids
        if len(new_pids) > self.config.process_spawn_rate:
            anomalies.append(Anomaly(
                type=AnomalyType.PROCESS_SPAWN,
                severity=AnomalySeverity.MEDIUM,
                title="Rapid Process Spawning",
                description=f"{len(new_pids)} new processes spawned since last check",
            ))

        return anomalies

    def _prune_first_seen(self, processes: List[ProcessModel], now: float) -> None:
        """Forget names that left the process list after their unusual window closed."""
        running = {p.name.lower() for p in processes}
        expired = [name for name, first_seen in self.process_first_seen.items()
                   if name not in running and now - first_seen >= UNUSUAL_PROCESS_WINDOW_SECONDS]
        for name in expired:
            del self.process_first_seen[name]

    def _spike(self, proc: ProcessModel, value: float, stats: BaselineStats, multiplier: float,
               floor: float, critical_above: float, high_above: float,
               kind: AnomalyType, label: str, metric: str) -> Optional[Anomaly]:
        if stats.sample_count < self.config.min_samples_for_baseline:
            return None

        threshold = max(stats.mean + stats.stddev * multiplier, floor)
        if value <= threshold:
            return None

        if value > critical_above:
            severity = AnomalySeverity.CRITICAL
        elif value > high_above:
            severity = AnomalySeverity.HIGH
        else:
            severity = AnomalySeverity.MEDIUM

        return Anomaly(
            type=kind,
            severity=severity,
            title=f"{label} Spike: {proc.name}",
            description=f"Process {proc.name} {metric} at "
                        f"{value:.1f}% (baseline: {stats.mean:.1f}%)",
            details=ProcessAnomalyDetails(
                process_name=proc.name,
                pid=proc.pid,
                current_value=value,
                baseline_value=stats.mean,
                threshold=threshold,
                user_id=proc.uid,
            ),
            related_pid=proc.pid,
        )

    def _detect_cpu_spike(self, proc: ProcessModel, stats: BaselineStats) -> Optional[Anomaly]:
        return self._spike(proc, proc.cpu_percent, stats, self.config.cpu_spike_multiplier,
                           self.config.cpu_spike_threshold, 95.0, 90.0, AnomalyType.CPU_SPIKE, "CPU", "CPU")

    def _detect_memory_spike(self, proc: ProcessModel, stats: BaselineStats) -> Optional[Anomaly]:
        return self._spike(proc, proc.memory_percent, stats, self.config.memory_spike_multiplier,
                           self.config.memory_spike_threshold, 90.0, 80.0, AnomalyType.MEMORY_SPIKE, "Memory", "memory")

    def _detect_unusual_process(self, proc: ProcessModel, now: float) -> Optional[Anomaly]:
        name = proc.name.lower()
        if name in KNOWN_PROCESS_NAMES:
            return None

        first_seen = self.process_first_seen.get(name)
        if first_seen is None:
            self.process_first_seen[name] = now
        elif now - first_seen >= UNUSUAL_PROCESS_WINDOW_SECONDS:
            return None

        reasons = []
        if proc.path is None:
            reasons.append("no executable path")
        if proc.uid == 0 and proc.path is not None:
            prefix = next((d for d in SUSPICIOUS_EXEC_DIRS if proc.path.startswith(d)), None)
            if prefix:
                reasons.append(f"root process in {prefix}")
        pattern = next((p for p in SUSPICIOUS_NAME_PATTERNS if p in name), None)
        if pattern:
            reasons.append(f"suspicious name pattern '{pattern}'")

        if not reasons:
            return None

        return Anomaly(
            type=AnomalyType.UNUSUAL_PROCESS,
            severity=AnomalySeverity.CRITICAL if proc.uid == 0 else AnomalySeverity.HIGH,
            title=f"Unusual Process: {proc.name}",
            description=f"Detected unusual process: {', '.join(reasons)}",
            details=ProcessAnomalyDetails(process_name=proc.name, pid=proc.pid, user_id=proc.uid),
            related_pid=proc.pid,
        )

    # --- Network rules ---

    def _detect_network_anomalies(self, connections: List[ConnectionModel],
                                  stats: Optional[NetworkStatsModel],
                                  prior: BaselineStats) -> List[Anomaly]:
        anomalies: List[Anomaly] = []

        if stats is not None:
            spike = self._detect_traffic_spike(stats, prior)
            if spike:
                anomalies.append(spike)

        by_process: Dict[str, List[ConnectionModel]] = {}
        for conn in connections:
            if conn.process_name is not None:
                by_process.setdefault(conn.process_name, []).append(conn)

        for name, conns in by_process.items():
            count = len(conns)
            if count <= self.config.connection_flood_threshold:
                continue
            previous = self.previous_connections_by_process.get(name, 0)
            if count > previous + CONNECTION_FLOOD_MIN_INCREASE:
                anomalies.append(Anomaly(
                    type=AnomalyType.CONNECTION_FLOOD,
                    severity=AnomalySeverity.HIGH,
                    title=f"Connection Flood: {name}",
                    description=f"{name} has {count} active connections",
                    details=NetworkAnomalyDetails(connection_count=count, process_name=name),
                    related_pid=conns[0].pid,
                ))

        for conn in connections:
            if conn.remote_port > 0 and conn.remote_port in self.config.suspicious_ports:
                anomalies.append(Anomaly(
                    type=AnomalyType.SUSPICIOUS_PORT,
                    severity=AnomalySeverity.HIGH,
                    title="Suspicious Port Connection",
                    description=f"Connection to suspicious port {conn.remote_port} "
                                f"from {conn.process_name or 'unknown'}",
                    details=NetworkAnomalyDetails(
                        remote_address=conn.remote_address,
                        remote_port=conn.remote_port,
                        process_name=conn.process_name,
                    ),
                    related_pid=conn.pid,
                    related_port=conn.remote_port,
                    related_address=conn.remote_address,
                ))

        return anomalies

    def _detect_traffic_spike(self, stats: NetworkStatsModel, prior: BaselineStats) -> Optional[Anomaly]:
        if prior.sample_count < self.config.min_samples_for_baseline:
            return None

        total = stats.bytes_in_per_second + stats.bytes_out_per_second
        average = prior.mean
        threshold = max(average * self.config.traffic_spike_multiplier, self.config.min_bytes_for_spike)
        if total <= threshold:
            return None

        ratio = total / max(average, 1.0)
        if ratio > 10:
            severity = AnomalySeverity.CRITICAL
        elif ratio > 7:
            severity = AnomalySeverity.HIGH
        else:
            severity = AnomalySeverity.MEDIUM

        return Anomaly(
            type=AnomalyType.TRAFFIC_SPIKE,
            severity=severity,
            title="Network Traffic Spike",
            description=f"Traffic at {format_bytes_per_second(total)} "
                        f"(baseline: {format_bytes_per_second(average)})",
            details=NetworkAnomalyDetails(
                bytes_per_second=total,
                baseline_bytes_per_second=average,
                connection_count=stats.active_connections,
            ),
        )

    # --- Port rules ---

    def _detect_port_anomalies(self, ports: List[PortModel], now: float) -> List[Anomaly]:
        anomalies: List[Anomaly] = []
        privileged_limit = self.config.privileged_port_threshold

        for port in ports:
            if port.state != PortState.LISTENING:
                continue
            protocol = port.protocol.value
            privileged = port.number < privileged_limit
            details = PortAnomalyDetails(port=port.number, protocol=protocol, process_name=port.process_name,
                                         pid=port.pid, is_privileged=privileged)

            if self.config.alert_on_new_listening_ports and self.port_baseline.is_new_port(port.number, protocol, now):
                anomalies.append(Anomaly(
                    type=AnomalyType.NEW_LISTENING_PORT,
                    severity=AnomalySeverity.HIGH if privileged else AnomalySeverity.MEDIUM,
                    title=f"New Listening Port: {port.number}",
                    description=f"New {protocol} port {port.number} opened by {port.process_name or 'unknown'}",
                    details=details,
                    related_pid=port.pid,
                    related_port=port.number,
                ))

            if privileged and port.process_name and port.number not in KNOWN_SERVICE_PORTS:
                owner = port.process_name.lower()
                if not any(allowed in owner for allowed in PRIVILEGED_PORT_OWNERS):
                    anomalies.append(Anomaly(
                        type=AnomalyType.PRIVILEGED_PORT,
                        severity=AnomalySeverity.CRITICAL,
                        title=f"Privileged Port: {port.number}",
                        description=f"Non-system process {port.process_name} listening on privileged port {port.number}",
                        details=details,
                        related_pid=port.pid,
                        related_port=port.number,
                    ))

            if port.number in self.config.suspicious_ports:
                anomalies.append(Anomaly(
                    type=AnomalyType.UNUSUAL_PORT_ACTIVITY,
                    severity=AnomalySeverity.HIGH,
                    title=f"Suspicious Port Listening: {port.number}",
                    description=f"Process {port.process_name or 'unknown'} listening on suspicious port {port.number}",
                    details=details,
                    related_pid=port.pid,
                    related_port=port.number,
                ))

        return anomalies

    # --- Queries ---

    def get_active_anomalies(self) -> List[Anomaly]:
        with self.lock:
            return list(self.active_anomalies)

    def get_anomaly_history(self) -> List[Anomaly]:
        """All anomalies of recent cycles, newest first."""
        with self.lock:
            return list(self.anomaly_history)

    def get_summary(self) -> AnomalySummary:
        with self.lock:
            return AnomalySummary.from_anomalies(self.active_anomalies)

    def clear_history(self) -> None:
        with self.lock:
            self.anomaly_history = []

    def reset_baselines(self) -> None:
        """Forget all learned behaviour; detection warms up again from zero."""
        with self.lock:
            self.process_baselines = {}
            self.network_baseline = NetworkBaseline()
            self.port_baseline = PortBaseline()
            self.process_first_seen = {}
            self.previous_pids = set()
            self.previous_connections_by_process = {}
            self.active_anomalies = []
            self.sample_count = 0
        self.logger.info("Anomaly baselines reset.")

    def is_process_anomalous(self, pid: int) -> bool:
        with self.lock:
            return any(a.related_pid == pid for a in self.active_anomalies)

    def get_anomalies_for_process(self, pid: int) -> List[Anomaly]:
        with self.lock:
            return [a for a in self.active_anomalies if a.related_pid == pid]

    def is_port_anomalous(self, port: int) -> bool:
        with self.lock:
            return any(a.related_port == port for a in self.active_anomalies)

    def get_anomalies_for_port(self, port: int) -> List[Anomaly]:
        with self.lock:
            return [a for a in self.active_anomalies if a.related_port == port]

    def get_anomalies(self, category: Optional[AnomalyCategory] = None,
                      minimum_severity: Optional[AnomalySeverity] = None) -> List[Anomaly]:
        with self.lock:
            result = list(self.active_anomalies)
        if category is not None:
            result = [a for a in result if a.category == category]
        if minimum_severity is not None:
            result = [a for a in result if a.severity >= minimum_severity]
        return result
