# tests/test_process_monitor.py
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from limen.core.active_response import SIGKILL, SIGTERM
from limen.core.errors import AccessDeniedError
from limen.core.process_safety import KillResult, KillStatus, ProcessSafetyLevel
from limen.core.schemas import ProcessStatus
from limen.modules.process_monitor import ProcessMonitor, build_process_tree

from conftest import make_process


def info(pid, name, uid=501, cpu=0.0, ppid=1, exe=None, status=psutil.STATUS_RUNNING):
    return {
        'pid': pid, 'ppid': ppid, 'name': name, 'exe': exe or f"/usr/bin/{name}",
        'username': "root" if uid == 0 else "me",
        'uids': SimpleNamespace(real=uid), 'gids': SimpleNamespace(real=20),
        'status': status, 'cpu_percent': cpu,
        'memory_info': SimpleNamespace(rss=4096), 'memory_percent': 0.5,
        'num_threads': 3, 'create_time': 1_700_000_000.0, 'cmdline': [f"/usr/bin/{name}", "-v"],
    }


def fake_iter(*infos):
    return [MagicMock(info=i) for i in infos]


@pytest.fixture
def monitor():
    return ProcessMonitor()


def lookup_returns(process_info):
    """Make psutil.Process(pid) answer with the given info dict."""
    mock = MagicMock()
    mock.return_value.as_dict.return_value = process_info
    return patch('limen.modules.process_monitor.psutil.Process', mock)


def test_list_processes_maps_and_sorts(monitor):
    rows = fake_iter(info(10, "idle", cpu=0.1), info(11, "busy", cpu=75.0, status=psutil.STATUS_ZOMBIE))
    with patch('limen.modules.process_monitor.psutil.process_iter', return_value=rows):
        processes = monitor.list_processes()

    assert [p.name for p in processes] == ["busy", "idle"]
    busy = processes[0]
    assert busy.status == ProcessStatus.ZOMBIE
    assert (busy.uid, busy.gid, busy.memory_bytes, busy.thread_count) == (501, 20, 4096, 3)
    assert busy.command == "/usr/bin/busy -v"
    assert busy.start_time is not None


def test_missing_attributes_fall_back(monitor):
    bare = {'pid': 12, 'ppid': None, 'name': None, 'exe': None, 'username': None, 'uids': None,
            'gids': None, 'status': None, 'cpu_percent': None, 'memory_info': None,
            'memory_percent': None, 'num_threads': None, 'create_time': None, 'cmdline': None}
    with patch('limen.modules.process_monitor.psutil.process_iter', return_value=fake_iter(bare)):
        proc = monitor.list_processes()[0]

    assert proc.uid == -1
    assert proc.path is None
    assert proc.status == ProcessStatus.UNKNOWN
    assert proc.start_time is None


def test_enumeration_access_denied(monitor):
    with patch('limen.modules.process_monitor.psutil.process_iter', side_effect=psutil.AccessDenied()):
        with pytest.raises(AccessDeniedError):
            monitor.list_processes()


def test_search_matches_name_and_command(monitor):
    rows = fake_iter(info(20, "python3"), info(21, "node"))
    with patch('limen.modules.process_monitor.psutil.process_iter', return_value=rows):
        assert [p.pid for p in monitor.search_processes("PYTHON")] == [20]
        assert [p.pid for p in monitor.search_processes("-v")] == [20, 21]


def test_get_process_vanished(monitor):
    with patch('limen.modules.process_monitor.psutil.Process', side_effect=psutil.NoSuchProcess(pid=4242)):
        assert monitor.get_process(4242) is None
        assert monitor.validate_kill(4242).status == KillStatus.NOT_FOUND
        assert monitor.execute_confirmed_kill(4242).status == KillStatus.NOT_FOUND


def test_get_process_access_denied(monitor):
    with patch('limen.modules.process_monitor.psutil.Process', side_effect=psutil.AccessDenied(pid=88)):
        assert monitor.validate_kill(88).status == KillStatus.ACCESS_DENIED
        assert monitor.get_safety_level(88) is None


def test_execute_blocks_critical_pid(monitor):
    with lookup_returns(info(1, "launchd", uid=0, ppid=0)):
        with patch('limen.modules.process_monitor.send_signal') as mock_signal:
            result = monitor.execute_confirmed_kill(1, SIGKILL)

    assert result.status == KillStatus.BLOCKED
    mock_signal.assert_not_called()


def test_execute_signals_normal_process(monitor):
    with lookup_returns(info(4242, "worker")):
        with patch('limen.modules.process_monitor.send_signal', return_value=KillResult.succeeded()) as mock_signal:
            result = monitor.execute_confirmed_kill(4242)

    assert result.is_success
    mock_signal.assert_called_once_with(4242, SIGTERM)


def test_terminate_waits_for_confirmation(monitor):
    with lookup_returns(info(4242, "worker")):
        with patch('limen.modules.process_monitor.send_signal') as mock_signal:
            result = monitor.terminate_process(4242)
            level = monitor.get_safety_level(4242)

    assert result.status == KillStatus.REQUIRES_CONFIRMATION
    assert level == ProcessSafetyLevel.NORMAL
    mock_signal.assert_not_called()


def test_force_quit_background_process_signals_immediately(monitor):
    with lookup_returns(info(4243, "UpdaterHelper")):
        with patch('limen.modules.process_monitor.send_signal', return_value=KillResult.succeeded()) as mock_signal:
            result = monitor.force_quit_process(4243)

    assert result.is_success
    mock_signal.assert_called_once_with(4243, SIGKILL)


def test_process_tree():
    processes = [
        make_process(1, name="launchd", ppid=0),
        make_process(100, name="shell", ppid=1),
        make_process(200, name="python", ppid=100),
        make_process(300, name="child", ppid=200),
        make_process(400, name="orphan", ppid=9999),
    ]
    roots = build_process_tree(processes)

    assert [r.pid for r in roots] == [1, 100, 400]
    assert roots[0].children == []
    shell = roots[1]
    assert [c.pid for c in shell.children] == [200]
    assert [c.pid for c in shell.children[0].children] == [300]
