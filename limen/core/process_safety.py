"""
Process Safety Classification

Rates how dangerous it is to terminate a process and drives the first half of
the validate / confirm / execute kill protocol. Everything here is a pure
function of (name, pid, uid): no OS access, no state.

Tiers (most protected first):
- CRITICAL: never killable, validation always blocks
- SYSTEM: killable only after a strongly worded confirmation
- IMPORTANT: may hold unsaved work
- NORMAL: single confirmation
- BACKGROUND: helpers/agents, killable without confirmation
"""
from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProcessSafetyLevel(IntEnum):
    CRITICAL = 0
    SYSTEM = 1
    IMPORTANT = 2
    NORMAL = 3
    BACKGROUND = 4

    @property
    def description(self) -> str:
        return _LEVEL_DESCRIPTIONS[self]

    @property
    def warning_message(self) -> Optional[str]:
        return _LEVEL_WARNINGS[self]


_LEVEL_DESCRIPTIONS = {
    ProcessSafetyLevel.CRITICAL: "Critical System Process",
    ProcessSafetyLevel.SYSTEM: "System Process",
    ProcessSafetyLevel.IMPORTANT: "Important Process",
    ProcessSafetyLevel.NORMAL: "Normal Process",
    ProcessSafetyLevel.BACKGROUND: "Background Process",
}

_LEVEL_WARNINGS = {
    ProcessSafetyLevel.CRITICAL: (
        "This is a critical system process. Killing it WILL crash or freeze the system. "
        "This action is blocked for your protection."
    ),
    ProcessSafetyLevel.SYSTEM: (
        "This is a core system process. Killing it may cause system instability, "
        "application crashes, or require a restart. Are you absolutely sure?"
    ),
    ProcessSafetyLevel.IMPORTANT: "This process may have unsaved data. Killing it could result in data loss. Continue?",
    ProcessSafetyLevel.NORMAL: "Are you sure you want to quit this process?",
    ProcessSafetyLevel.BACKGROUND: None,
}


class KillStatus(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    FAILED = "failed"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"


class KillResult(BaseModel):
    """Closed set of kill outcomes. Only the fields of the active variant are set."""
    model_config = ConfigDict(frozen=True)

    status: KillStatus
    reason: Optional[str] = None
    level: Optional[ProcessSafetyLevel] = None
    message: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls) -> "KillResult":
        return cls(status=KillStatus.SUCCESS)

    @classmethod
    def blocked(cls, reason: str) -> "KillResult":
        return cls(status=KillStatus.BLOCKED, reason=reason)

    @classmethod
    def requires_confirmation(cls, level: ProcessSafetyLevel, message: str) -> "KillResult":
        return cls(status=KillStatus.REQUIRES_CONFIRMATION, level=level, message=message)

    @classmethod
    def failed(cls, error: str) -> "KillResult":
        return cls(status=KillStatus.FAILED, error=error)

    @classmethod
    def access_denied(cls) -> "KillResult":
        return cls(status=KillStatus.ACCESS_DENIED)

    @classmethod
    def not_found(cls) -> "KillResult":
        return cls(status=KillStatus.NOT_FOUND)

    @property
    def is_success(self) -> bool:
        return self.status == KillStatus.SUCCESS


CRITICAL_PIDS = frozenset({0, 1})

# Killing any of these crashes or freezes the host. No override.
CRITICAL_PROCESS_NAMES = frozenset({
    # Kernel and core
    "kernel_task", "launchd", "kernel", "kthreadd", "systemd", "init",
    # Window server
    "WindowServer", "loginwindow",
    # Core daemons
    "configd", "diskarbitrationd", "securityd", "trustd", "syspolicyd",
    "fseventsd", "mds", "mds_stores", "notifyd", "powerd", "thermald",
    "cfprefsd", "coreservicesd", "lsd", "logd", "syslogd", "memorystatus",
})

SYSTEM_PROCESS_NAMES = frozenset({
    # UI shell
    "Finder", "Dock", "SystemUIServer", "ControlCenter", "NotificationCenter", "Spotlight",
    # Services
    "coreaudiod", "coreduetd", "distnoted", "runningboardd", "mDNSResponder",
    "networkd", "symptomsd", "WiFiAgent", "bluetoothd", "BTServer", "hidd",
    "timed", "cupsd", "corespotlightd", "sharedfilelistd", "CoreServicesUIAgent",
    # System extensions
    "sysextd", "endpointsecurityd",
    # Linux service managers and buses
    "systemd-journald", "systemd-udevd", "systemd-logind", "dbus-daemon", "NetworkManager",
})

# Case-insensitive substrings for apps that may hold unsaved work
IMPORTANT_PROCESS_PATTERNS = (
    # Documents
    "TextEdit", "Pages", "Numbers", "Keynote",
    "Microsoft Word", "Microsoft Excel", "Microsoft PowerPoint",
    # IDEs and editors
    "Xcode", "Visual Studio", "Code", "Sublime", "Atom", "IntelliJ", "PyCharm", "WebStorm",
    # Creative
    "Photoshop", "Illustrator", "Premiere", "Final Cut", "Logic Pro", "GarageBand", "Sketch", "Figma",
    # Browsers
    "Safari", "Google Chrome", "Firefox", "Arc", "Brave",
    # Communication
    "Mail", "Messages", "Slack", "Discord", "Zoom", "Teams",
    # Notes / writing
    "Notes", "Obsidian", "Notion", "Bear", "Ulysses",
    # Database tools
    "TablePlus", "Sequel", "MongoDB", "Postgres",
)

# Root-owned but still user applications, exempt from the root => SYSTEM rule
KNOWN_USER_PROCESSES = frozenset({
    "iTerm2", "Terminal", "Safari", "Google Chrome", "Firefox", "Finder", "Mail",
    "Messages", "Calendar", "Reminders", "Notes", "Photos", "Music", "Podcasts",
    "News", "Stocks", "Home", "FaceTime",
})

_BACKGROUND_SUFFIXES = ("Helper", "Agent", "_service")


def classify_process(name: str, pid: int, uid: int) -> ProcessSafetyLevel:
    """Return the safety tier for a process identity.

    Rules are evaluated in order and the first match wins: critical pid,
    critical name, system name, root-owned (unless a known user app),
    important pattern, helper/agent naming, and finally NORMAL.
    """
    if pid in CRITICAL_PIDS:
        return ProcessSafetyLevel.CRITICAL
    if name in CRITICAL_PROCESS_NAMES:
        return ProcessSafetyLevel.CRITICAL
    if name in SYSTEM_PROCESS_NAMES:
        return ProcessSafetyLevel.SYSTEM
    if uid == 0 and name not in KNOWN_USER_PROCESSES:
        return ProcessSafetyLevel.SYSTEM

    lowered = name.lower()
    if any(pattern.lower() in lowered for pattern in IMPORTANT_PROCESS_PATTERNS):
        return ProcessSafetyLevel.IMPORTANT

    if name.endswith(_BACKGROUND_SUFFIXES) or "XPC" in name:
        return ProcessSafetyLevel.BACKGROUND

    return ProcessSafetyLevel.NORMAL


def can_be_killed(name: str, pid: int, uid: int) -> bool:
    return classify_process(name, pid, uid) != ProcessSafetyLevel.CRITICAL


def validate_kill(name: str, pid: int, uid: int, force: bool = False) -> KillResult:
    """Decide what the caller must do before a kill may be executed.

    Args:
        name: Process name as reported by the provider
        pid: Process ID
        uid: Owning user ID
        force: True when the caller intends a SIGKILL-style force quit

    Returns:
        KillResult: BLOCKED for critical processes regardless of force,
        REQUIRES_CONFIRMATION for system/important/normal tiers, and
        SUCCESS only for background processes.
    """
    level = classify_process(name, pid, uid)

    if level == ProcessSafetyLevel.CRITICAL:
        return KillResult.blocked(
            f"Cannot kill '{name}' (PID: {pid}).\n\n"
            "This is a critical system process. Killing it would crash or freeze the system.\n\n"
            "If this process is causing problems, please restart your computer instead."
        )

    if level == ProcessSafetyLevel.SYSTEM:
        if force:
            return KillResult.requires_confirmation(level, (
                "⚠️ DANGER: You are about to force quit a system process.\n\n"
                f"Process: {name} (PID: {pid})\n\n"
                "This may cause:\n"
                "• System instability\n"
                "• Application crashes\n"
                "• Loss of unsaved work\n"
                "• Need to restart the system\n\n"
                "Only proceed if you understand the risks."
            ))
        return KillResult.requires_confirmation(level, (
            f"⚠️ Warning: '{name}' is a system process.\n\n"
            "Quitting it may cause system instability or require a restart.\n\n"
            "Consider restarting the system instead if you're experiencing issues."
        ))

    if level == ProcessSafetyLevel.IMPORTANT:
        return KillResult.requires_confirmation(level, (
            f"'{name}' may have unsaved work.\n\n"
            "Any unsaved changes will be lost if you quit this application."
        ))

    if level == ProcessSafetyLevel.NORMAL:
        return KillResult.requires_confirmation(level, f"Quit '{name}'?")

    return KillResult.succeeded()
