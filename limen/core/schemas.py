"""
Limen Data Contracts
Defines the strict structure of the snapshot records produced by the providers.
Every record is immutable; providers build fresh values on each call.
"""
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessStatus(str, Enum):
    RUNNING = "Running"
    SLEEPING = "Sleeping"
    IDLE = "Idle"
    STOPPED = "Stopped"
    ZOMBIE = "Zombie"
    UNKNOWN = "Unknown"


class NetProtocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    TCP6 = "TCP6"
    UDP6 = "UDP6"

    @property
    def is_tcp(self) -> bool:
        return self in (NetProtocol.TCP, NetProtocol.TCP6)


class ConnectionState(str, Enum):
    ESTABLISHED = "ESTABLISHED"
    LISTEN = "LISTEN"
    TIME_WAIT = "TIME_WAIT"
    CLOSE_WAIT = "CLOSE_WAIT"
    FIN_WAIT_1 = "FIN_WAIT_1"
    FIN_WAIT_2 = "FIN_WAIT_2"
    SYN_SENT = "SYN_SENT"
    SYN_RECEIVED = "SYN_RECV"
    LAST_ACK = "LAST_ACK"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    NONE = "NONE"  # UDP
    UNKNOWN = "UNKNOWN"


class PortState(str, Enum):
    LISTENING = "LISTENING"
    ESTABLISHED = "ESTABLISHED"
    BOUND = "BOUND"
    CLOSED = "CLOSED"


class ProcessModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    pid: int
    ppid: int = 0
    name: str
    path: Optional[str] = None
    user: str = ""
    uid: int = -1  # -1 when the owner could not be read
    gid: int = -1
    status: ProcessStatus = ProcessStatus.UNKNOWN
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    memory_percent: float = 0.0
    thread_count: int = 0
    start_time: Optional[datetime] = None
    command: Optional[str] = None


class ProcessTreeNode(BaseModel):
    """Node of the parent/child process hierarchy."""
    process: ProcessModel
    children: List["ProcessTreeNode"] = Field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid


class ConnectionModel(BaseModel):
    """Snapshot of one socket. Byte counters are reserved and always zero."""
    model_config = ConfigDict(frozen=True)

    protocol: NetProtocol
    local_address: str
    local_port: int
    remote_address: str = "*"
    remote_port: int = 0
    state: ConnectionState = ConnectionState.UNKNOWN
    pid: Optional[int] = None
    process_name: Optional[str] = None
    bytes_in: int = 0
    bytes_out: int = 0
    created_at: Optional[datetime] = None

    @property
    def local_endpoint(self) -> str:
        return f"{self.local_address}:{self.local_port}"

    @property
    def remote_endpoint(self) -> str:
        return f"{self.remote_address}:{self.remote_port}"


class InterfaceModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str = ""
    mac_address: Optional[str] = None
    ipv4_addresses: List[str] = Field(default_factory=list)
    ipv6_addresses: List[str] = Field(default_factory=list)
    is_up: bool = False
    is_loopback: bool = False
    mtu: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    packets_in: int = 0
    packets_out: int = 0


class NetworkStatsModel(BaseModel):
    """Interface-level totals plus throughput derived from the previous sample."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    total_bytes_in: int = 0
    total_bytes_out: int = 0
    total_packets_in: int = 0
    total_packets_out: int = 0
    active_connections: int = 0
    bytes_in_per_second: float = 0.0
    bytes_out_per_second: float = 0.0


# Well-known service names shown next to port numbers
SERVICE_NAMES: Dict[int, str] = {
    20: "FTP Data", 21: "FTP Control", 22: "SSH", 23: "Telnet", 25: "SMTP",
    53: "DNS", 67: "DHCP", 68: "DHCP", 80: "HTTP", 110: "POP3", 119: "NNTP",
    123: "NTP", 143: "IMAP", 161: "SNMP", 162: "SNMP", 194: "IRC", 443: "HTTPS",
    445: "SMB", 465: "SMTPS", 514: "Syslog", 587: "SMTP Submission",
    631: "IPP (CUPS)", 993: "IMAPS", 995: "POP3S", 1080: "SOCKS", 1433: "MS SQL",
    1521: "Oracle", 3306: "MySQL", 3389: "RDP", 5432: "PostgreSQL", 5672: "AMQP",
    6379: "Redis", 8080: "HTTP Proxy", 8443: "HTTPS Alt", 9200: "Elasticsearch",
    27017: "MongoDB",
}


def common_service_name(port: int) -> Optional[str]:
    if 5900 <= port <= 5999:
        return "VNC"
    return SERVICE_NAMES.get(port)


class PortModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    protocol: NetProtocol
    state: PortState
    address: str = "*"
    pid: Optional[int] = None
    process_name: Optional[str] = None
    service_name: Optional[str] = None
    connection_count: int = 0


class PortSummaryModel(BaseModel):
    total_listening: int = 0
    total_established: int = 0
    tcp_ports: int = 0
    udp_ports: int = 0
    ports_under_1024: int = 0
    ports_over_1024: int = 0


class SystemSnapshot(BaseModel):
    """One mutually consistent read of processes, sockets, ports and stats."""
    timestamp: datetime = Field(default_factory=datetime.now)
    processes: List[ProcessModel] = Field(default_factory=list)
    connections: List[ConnectionModel] = Field(default_factory=list)
    listening_ports: List[PortModel] = Field(default_factory=list)
    network_stats: NetworkStatsModel = Field(default_factory=NetworkStatsModel)
    port_summary: PortSummaryModel = Field(default_factory=PortSummaryModel)

    @property
    def process_count(self) -> int:
        return len(self.processes)

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    @property
    def listening_port_count(self) -> int:
        return len(self.listening_ports)

    @property
    def processes_by_user(self) -> Dict[str, List[ProcessModel]]:
        grouped: Dict[str, List[ProcessModel]] = defaultdict(list)
        for proc in self.processes:
            grouped[proc.user].append(proc)
        return dict(grouped)

    @property
    def connections_by_process(self) -> Dict[str, List[ConnectionModel]]:
        grouped: Dict[str, List[ConnectionModel]] = defaultdict(list)
        for conn in self.connections:
            if conn.process_name is not None:
                grouped[conn.process_name].append(conn)
        return dict(grouped)
