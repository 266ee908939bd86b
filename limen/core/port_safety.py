# limen/core/port_safety.py
"""
Port Safety Classification

Combines port importance with the owning process' identity to decide how
destructive closing a port is. Closing a port means terminating its owner,
so the validation messages always name the process.
"""
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from limen.core.process_safety import (
    CRITICAL_PIDS,
    CRITICAL_PROCESS_NAMES,
    SYSTEM_PROCESS_NAMES,
)
from limen.core.schemas import NetProtocol, common_service_name


class PortSafetyLevel(IntEnum):
    CRITICAL = 0
    SYSTEM = 1
    IMPORTANT = 2
    NORMAL = 3
    EPHEMERAL = 4

    @property
    def description(self) -> str:
        return {
            PortSafetyLevel.CRITICAL: "Critical System Port",
            PortSafetyLevel.SYSTEM: "System Service Port",
            PortSafetyLevel.IMPORTANT: "Important Service",
            PortSafetyLevel.NORMAL: "Application Port",
            PortSafetyLevel.EPHEMERAL: "Ephemeral Port",
        }[self]


class PortCloseStatus(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    FAILED = "failed"
    ACCESS_DENIED = "access_denied"
    PORT_NOT_IN_USE = "port_not_in_use"


class PortCloseResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: PortCloseStatus
    reason: Optional[str] = None
    level: Optional[PortSafetyLevel] = None
    message: Optional[str] = None
    process_name: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls) -> "PortCloseResult":
        return cls(status=PortCloseStatus.SUCCESS)

    @classmethod
    def blocked(cls, reason: str) -> "PortCloseResult":
        return cls(status=PortCloseStatus.BLOCKED, reason=reason)

    @classmethod
    def requires_confirmation(cls, level: PortSafetyLevel, message: str,
                              process_name: Optional[str]) -> "PortCloseResult":
        return cls(status=PortCloseStatus.REQUIRES_CONFIRMATION, level=level,
                   message=message, process_name=process_name)

    @classmethod
    def failed(cls, error: str) -> "PortCloseResult":
        return cls(status=PortCloseStatus.FAILED, error=error)

    @classmethod
    def access_denied(cls) -> "PortCloseResult":
        return cls(status=PortCloseStatus.ACCESS_DENIED)

    @classmethod
    def port_not_in_use(cls) -> "PortCloseResult":
        return cls(status=PortCloseStatus.PORT_NOT_IN_USE)

    @property
    def is_success(self) -> bool:
        return self.status == PortCloseStatus.SUCCESS


class BulkCloseItem(BaseModel):
    port: int
    protocol: NetProtocol
    process_name: Optional[str] = None
    result: PortCloseResult


class BulkCloseResult(BaseModel):
    """Outcome of closing every non-critical port in one pass."""
    items: List[BulkCloseItem] = Field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    skipped_critical: int = 0
    skipped_system: int = 0

    @property
    def total(self) -> int:
        return len(self.items)


# Closing these breaks remote access, name resolution, auth, time or printing
CRITICAL_PORTS = frozenset({22, 53, 88, 123, 631})

SYSTEM_PORTS = frozenset({
    80, 443, 25, 110, 143, 389, 636, 445, 548, 3283, 5900, 5988, 5989,
})

# Owners of critical ports that must never be killed through a port close
CRITICAL_PORT_PROCESSES = frozenset({
    "launchd", "mDNSResponder", "configd", "discoveryd", "netbiosd",
    "smbd", "cupsd", "sshd", "coreaudiod",
})

# Databases, caches, brokers and common dev-server ports
IMPORTANT_SERVICE_PORTS = frozenset({
    1433, 1521, 3306, 5432, 6379, 27017, 9200, 5672, 2181,
    8080, 8443, 9000, 9090, 3000, 4000, 5000, 8000,
})

EPHEMERAL_PORT_START = 49152
PRIVILEGED_PORT_LIMIT = 1024


def classify_port(port: int, process_name: Optional[str] = None,
                  process_pid: Optional[int] = None,
                  process_uid: Optional[int] = None) -> PortSafetyLevel:
    if process_name is not None:
        if process_name in CRITICAL_PROCESS_NAMES or process_name in CRITICAL_PORT_PROCESSES:
            return PortSafetyLevel.CRITICAL
        if process_name in SYSTEM_PROCESS_NAMES:
            return PortSafetyLevel.SYSTEM

    if process_pid is not None and process_pid in CRITICAL_PIDS:
        return PortSafetyLevel.CRITICAL

    if process_uid == 0 and port < PRIVILEGED_PORT_LIMIT:
        return PortSafetyLevel.CRITICAL if port in CRITICAL_PORTS else PortSafetyLevel.SYSTEM

    if port in CRITICAL_PORTS:
        return PortSafetyLevel.CRITICAL
    if port in SYSTEM_PORTS:
        return PortSafetyLevel.SYSTEM
    if port < PRIVILEGED_PORT_LIMIT:
        return PortSafetyLevel.IMPORTANT
    if port < EPHEMERAL_PORT_START:
        return PortSafetyLevel.IMPORTANT if port in IMPORTANT_SERVICE_PORTS else PortSafetyLevel.NORMAL
    return PortSafetyLevel.EPHEMERAL


def can_be_closed(port: int, process_name: Optional[str] = None,
                  process_pid: Optional[int] = None) -> bool:
    return classify_port(port, process_name, process_pid) != PortSafetyLevel.CRITICAL


def validate_close(port: int, process_name: Optional[str] = None,
                   process_pid: Optional[int] = None,
                   process_uid: Optional[int] = None,
                   force: bool = False) -> PortCloseResult:
    """Validate closing a port. Never returns SUCCESS: every tier that is not
    blocked needs an explicit confirmation from the caller."""
    level = classify_port(port, process_name, process_pid, process_uid)

    service = common_service_name(port)
    display_name = process_name or "Unknown process"
    service_info = f" ({service})" if service else ""

    if level == PortSafetyLevel.CRITICAL:
        return PortCloseResult.blocked(
            f"Cannot close port {port}{service_info}.\n\n"
            f"This port is used by '{display_name}', which is a critical system service. "
            "Closing it could crash your system or cause serious instability.\n\n"
            "If you're having issues with this service, try restarting your computer instead."
        )

    if level == PortSafetyLevel.SYSTEM:
        if force:
            message = (
                "⚠️ DANGER: You are about to kill a system service.\n\n"
                f"Port: {port}{service_info}\n"
                f"Process: {display_name}\n\n"
                "This may cause:\n"
                "• Loss of network connectivity\n"
                "• Other applications to malfunction\n"
                "• System instability\n"
                "• Need to restart the system\n\n"
                "Only proceed if you understand the consequences."
            )
        else:
            message = (
                f"⚠️ Warning: Port {port}{service_info} is a system service.\n\n"
                "Closing it may affect system functionality or other applications.\n\n"
                f"Process: {display_name}"
            )
        return PortCloseResult.requires_confirmation(level, message, process_name)

    if level == PortSafetyLevel.IMPORTANT:
        message = (
            f"Port {port}{service_info} is used by '{display_name}'.\n\n"
            "Closing this port will terminate the process, which may cause "
            "data loss or affect other applications."
        )
    elif level == PortSafetyLevel.NORMAL:
        message = f"Close port {port}?\n\nThis will terminate '{display_name}'."
    else:
        message = f"Close connection on port {port}?\n\nProcess: {display_name}"

    return PortCloseResult.requires_confirmation(level, message, process_name)
