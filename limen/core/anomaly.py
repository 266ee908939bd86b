"""
Limen Anomaly Contracts
Anomaly kinds, severities, the tagged details payload, detection thresholds
and the per-severity/per-category summary.
"""
from collections import Counter
from datetime import datetime
from enum import Enum, IntEnum
from typing import Annotated, Any, Dict, FrozenSet, Iterable, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class AnomalySeverity(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


class AnomalyCategory(str, Enum):
    PROCESS = "Process"
    NETWORK = "Network"
    PORT = "Port"


class AnomalyType(str, Enum):
    # Process
    CPU_SPIKE = "cpu_spike"
    MEMORY_SPIKE = "memory_spike"
    UNUSUAL_PROCESS = "unusual_process"
    PROCESS_SPAWN = "process_spawn"
    ZOMBIE_PROCESS = "zombie_process"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    # Network
    TRAFFIC_SPIKE = "traffic_spike"
    UNUSUAL_CONNECTION = "unusual_connection"
    SUSPICIOUS_PORT = "suspicious_port"
    CONNECTION_FLOOD = "connection_flood"
    DATA_EXFILTRATION = "data_exfiltration"
    UNUSUAL_PROTOCOL = "unusual_protocol"
    # Port
    NEW_LISTENING_PORT = "new_listening_port"
    PORT_SCAN = "port_scan"
    UNUSUAL_PORT_ACTIVITY = "unusual_port_activity"
    PRIVILEGED_PORT = "privileged_port"

    @property
    def display_name(self) -> str:
        return _TYPE_INFO[self][0]

    @property
    def category(self) -> AnomalyCategory:
        return _TYPE_INFO[self][1]

    @property
    def default_severity(self) -> AnomalySeverity:
        return _TYPE_INFO[self][2]


_P, _N, _T = AnomalyCategory.PROCESS, AnomalyCategory.NETWORK, AnomalyCategory.PORT
_LOW, _MED, _HIGH, _CRIT = (AnomalySeverity.LOW, AnomalySeverity.MEDIUM,
                            AnomalySeverity.HIGH, AnomalySeverity.CRITICAL)

_TYPE_INFO = {
    AnomalyType.CPU_SPIKE: ("CPU Spike", _P, _MED),
    AnomalyType.MEMORY_SPIKE: ("Memory Spike", _P, _MED),
    AnomalyType.UNUSUAL_PROCESS: ("Unusual Process", _P, _HIGH),
    AnomalyType.PROCESS_SPAWN: ("Rapid Process Spawn", _P, _MED),
    AnomalyType.ZOMBIE_PROCESS: ("Zombie Process", _P, _LOW),
    AnomalyType.PRIVILEGE_ESCALATION: ("Privilege Escalation", _P, _CRIT),
    AnomalyType.TRAFFIC_SPIKE: ("Traffic Spike", _N, _MED),
    AnomalyType.UNUSUAL_CONNECTION: ("Unusual Connection", _N, _HIGH),
    AnomalyType.SUSPICIOUS_PORT: ("Suspicious Port", _N, _HIGH),
    AnomalyType.CONNECTION_FLOOD: ("Connection Flood", _N, _HIGH),
    AnomalyType.DATA_EXFILTRATION: ("Potential Data Exfiltration", _N, _CRIT),
    AnomalyType.UNUSUAL_PROTOCOL: ("Unusual Protocol", _N, _CRIT),
    AnomalyType.NEW_LISTENING_PORT: ("New Listening Port", _T, _MED),
    AnomalyType.PORT_SCAN: ("Potential Port Scan", _T, _HIGH),
    AnomalyType.UNUSUAL_PORT_ACTIVITY: ("Unusual Port Activity", _T, _LOW),
    AnomalyType.PRIVILEGED_PORT: ("Privileged Port Opened", _T, _CRIT),
}


class ProcessAnomalyDetails(BaseModel):
    kind: Literal["process"] = "process"
    process_name: str
    pid: int
    current_value: float = 0.0
    baseline_value: float = 0.0
    threshold: float = 0.0
    user_id: int = 0


class NetworkAnomalyDetails(BaseModel):
    kind: Literal["network"] = "network"
    bytes_per_second: Optional[float] = None
    baseline_bytes_per_second: Optional[float] = None
    connection_count: Optional[int] = None
    remote_address: Optional[str] = None
    remote_port: Optional[int] = None
    process_name: Optional[str] = None


class PortAnomalyDetails(BaseModel):
    kind: Literal["port"] = "port"
    port: int
    protocol: str
    process_name: Optional[str] = None
    pid: Optional[int] = None
    is_privileged: bool = False


AnomalyDetails = Annotated[
    Union[ProcessAnomalyDetails, NetworkAnomalyDetails, PortAnomalyDetails],
    Field(discriminator="kind"),
]


class Anomaly(BaseModel):
    """One detected deviation. Severity falls back to the type's default."""
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    type: AnomalyType
    severity: AnomalySeverity
    timestamp: datetime = Field(default_factory=datetime.now)
    title: str
    description: str
    details: Optional[AnomalyDetails] = None
    related_pid: Optional[int] = None
    related_port: Optional[int] = None
    related_address: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_severity(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("severity") is None and "type" in data:
            data = dict(data)
            data["severity"] = AnomalyType(data["type"]).default_severity
        return data

    @computed_field
    @property
    def category(self) -> AnomalyCategory:
        return self.type.category


class AnomalyDetectionConfig(BaseModel):
    """Detection thresholds. Replaced wholesale at runtime; never reset baselines."""
    model_config = ConfigDict(frozen=True)

    # Process
    cpu_spike_threshold: float = 80.0
    cpu_spike_multiplier: float = 3.0
    memory_spike_threshold: float = 70.0
    memory_spike_multiplier: float = 2.5
    process_spawn_rate: int = 10

    # Network
    traffic_spike_multiplier: float = 5.0
    min_bytes_for_spike: float = 1_000_000
    connection_flood_threshold: int = 100
    suspicious_ports: FrozenSet[int] = frozenset({4444, 5555, 6666, 31337, 1337, 12345, 54321})

    # Port
    privileged_port_threshold: int = 1024
    alert_on_new_listening_ports: bool = True

    # Baseline
    baseline_window_size: int = Field(default=60, ge=1)
    min_samples_for_baseline: int = Field(default=5, ge=1)


class AnomalySummary(BaseModel):
    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    by_category: Dict[AnomalyCategory, int] = Field(default_factory=dict)

    @classmethod
    def from_anomalies(cls, anomalies: Iterable[Anomaly]) -> "AnomalySummary":
        items = list(anomalies)
        severities = Counter(a.severity for a in items)
        return cls(
            total=len(items),
            critical=severities[AnomalySeverity.CRITICAL],
            high=severities[AnomalySeverity.HIGH],
            medium=severities[AnomalySeverity.MEDIUM],
            low=severities[AnomalySeverity.LOW],
            by_category=dict(Counter(a.category for a in items)),
        )

    @property
    def has_anomalies(self) -> bool:
        return self.total > 0

    @property
    def has_critical(self) -> bool:
        return self.critical > 0

    @property
    def has_high_or_above(self) -> bool:
        return self.critical > 0 or self.high > 0
