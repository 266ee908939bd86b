# limen/modules/process_monitor.py
"""
Limen - Process Monitor
psutil-backed process provider plus the kill half of the two-phase
validate / confirm / execute protocol.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import psutil

from limen.core import process_safety
from limen.core.active_response import SIGKILL, SIGTERM, send_signal
from limen.core.errors import AccessDeniedError, SystemCallError
from limen.core.process_safety import KillResult, ProcessSafetyLevel
from limen.core.schemas import ProcessModel, ProcessStatus, ProcessTreeNode
from limen.utils.logger import Logger

PROCESS_ATTRS = [
    'pid', 'ppid', 'name', 'exe', 'username', 'uids', 'gids', 'status',
    'cpu_percent', 'memory_info', 'memory_percent', 'num_threads',
    'create_time', 'cmdline',
]

STATUS_MAP = {
    psutil.STATUS_RUNNING: ProcessStatus.RUNNING,
    psutil.STATUS_SLEEPING: ProcessStatus.SLEEPING,
    psutil.STATUS_DISK_SLEEP: ProcessStatus.SLEEPING,
    psutil.STATUS_IDLE: ProcessStatus.IDLE,
    psutil.STATUS_STOPPED: ProcessStatus.STOPPED,
    psutil.STATUS_TRACING_STOP: ProcessStatus.STOPPED,
    psutil.STATUS_ZOMBIE: ProcessStatus.ZOMBIE,
}


def _to_model(info: Dict[str, Any]) -> ProcessModel:
    pid = info['pid']
    uids = info.get('uids')
    gids = info.get('gids')
    uid = uids.real if uids else -1
    memory = info.get('memory_info')
    created = info.get('create_time')
    cmdline = info.get('cmdline')

    return ProcessModel(
        pid=pid,
        ppid=info.get('ppid') or 0,
        name=info.get('name') or "",
        path=info.get('exe') or None,
        user=info.get('username') or (str(uid) if uid >= 0 else ""),
        uid=uid,
        gid=gids.real if gids else -1,
        status=STATUS_MAP.get(info.get('status'), ProcessStatus.UNKNOWN),
        cpu_percent=info.get('cpu_percent') or 0.0,
        memory_bytes=memory.rss if memory else 0,
        memory_percent=info.get('memory_percent') or 0.0,
        thread_count=info.get('num_threads') or 0,
        start_time=datetime.fromtimestamp(created) if created else None,
        command=" ".join(cmdline) if cmdline else None,
    )


def build_process_tree(processes: List[ProcessModel]) -> List[ProcessTreeNode]:
    """Group processes by parent pid.

    A process whose parent is 0, 1 or missing from the list is a root. Roots
    are never repeated as someone else's child.
    """
    by_pid = {p.pid: p for p in processes}
    roots = [p for p in processes if p.ppid in (0, 1) or p.ppid not in by_pid or p.ppid == p.pid]
    root_pids = {p.pid for p in roots}

    children: Dict[int, List[ProcessModel]] = {}
    for proc in processes:
        if proc.pid not in root_pids:
            children.setdefault(proc.ppid, []).append(proc)

    def build(proc: ProcessModel, seen: set) -> ProcessTreeNode:
        seen.add(proc.pid)
        kids = [build(c, seen) for c in children.get(proc.pid, []) if c.pid not in seen]
        return ProcessTreeNode(process=proc, children=kids)

    seen: set = set()
    return [build(root, seen) for root in roots]


class ProcessMonitor:
    """Enumerates processes through psutil and gates every kill behind
    process_safety. Processes that vanish or deny access mid-scan are
    skipped."""

    def __init__(self):
        self.logger = Logger()

    def list_processes(self) -> List[ProcessModel]:
        processes = []
        try:
            for proc in psutil.process_iter(PROCESS_ATTRS, ad_value=None):
                try:
                    processes.append(_to_model(proc.info))
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
        except psutil.AccessDenied as e:
            raise AccessDeniedError() from e
        except (psutil.Error, OSError) as e:
            raise SystemCallError(f"process enumeration failed: {e}") from e

        processes.sort(key=lambda p: p.cpu_percent, reverse=True)
        return processes

    def get_process(self, pid: int) -> Optional[ProcessModel]:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                info = proc.as_dict(PROCESS_ATTRS, ad_value=None)
        except (psutil.NoSuchProcess, ValueError):
            return None
        except psutil.AccessDenied as e:
            raise AccessDeniedError() from e
        return _to_model(info)

    def get_children(self, pid: int) -> List[ProcessModel]:
        return [p for p in self.list_processes() if p.ppid == pid]

    def search_processes(self, query: str) -> List[ProcessModel]:
        needle = query.lower()
        return [
            p for p in self.list_processes()
            if needle in p.name.lower() or (p.command and needle in p.command.lower())
        ]

    def get_process_tree(self) -> List[ProcessTreeNode]:
        return build_process_tree(self.list_processes())

    def get_safety_level(self, pid: int) -> Optional[ProcessSafetyLevel]:
        try:
            proc = self.get_process(pid)
        except AccessDeniedError:
            return None
        if proc is None:
            return None
        return process_safety.classify_process(proc.name, proc.pid, proc.uid)

    # --- Kill protocol ---

    def validate_kill(self, pid: int, force: bool = False) -> KillResult:
        try:
            proc = self.get_process(pid)
        except AccessDeniedError:
            return KillResult.access_denied()
        if proc is None:
            return KillResult.not_found()

        result = process_safety.validate_kill(proc.name, proc.pid, proc.uid, force=force)
        self.logger.info(f"Kill validation for {proc.name} (PID {pid}): {result.status.value}")
        return result

    def terminate_process(self, pid: int, force: bool = False) -> KillResult:
        """Validate, and only signal right away when no confirmation is needed."""
        validation = self.validate_kill(pid, force=force)
        if not validation.is_success:
            return validation
        return self.execute_confirmed_kill(pid, SIGKILL if force else SIGTERM)

    def force_quit_process(self, pid: int) -> KillResult:
        return self.terminate_process(pid, force=True)

    def execute_confirmed_kill(self, pid: int, sig: int = SIGTERM) -> KillResult:
        """Send the signal after the caller confirmed.

        The target is looked up and classified again because the pid may have
        exited or been reused since validation. A critical target is still
        blocked; a vanished one is reported as NOT_FOUND.
        """
        try:
            proc = self.get_process(pid)
        except AccessDeniedError:
            return KillResult.access_denied()
        if proc is None:
            return KillResult.not_found()

        level = process_safety.classify_process(proc.name, proc.pid, proc.uid)
        if level == ProcessSafetyLevel.CRITICAL:
            self.logger.warning(f"Blocked kill of critical process {proc.name} (PID {pid}).")
            return KillResult.blocked("Critical system process - kill blocked for safety")

        self.logger.info(f"Sending signal {sig} to {proc.name} (PID {pid}).")
        return send_signal(pid, sig)
