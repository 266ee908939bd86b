# tests/test_active_response.py
import psutil
from unittest.mock import patch

from limen.core.active_response import SIGKILL, SIGTERM, send_signal
from limen.core.process_safety import KillStatus


def test_signal_delivered():
    """A live process receives exactly the requested signal."""
    with patch('psutil.Process') as MockProcess:
        process_instance = MockProcess.return_value

        result = send_signal(1234, SIGKILL)

        assert result.is_success
        MockProcess.assert_called_once_with(1234)
        process_instance.send_signal.assert_called_once_with(SIGKILL)


def test_signal_to_vanished_process():
    with patch('psutil.Process') as MockProcess:
        MockProcess.side_effect = psutil.NoSuchProcess(pid=1234)

        result = send_signal(1234)

        assert result.status == KillStatus.NOT_FOUND


def test_signal_access_denied():
    """Without privileges the OS refusal is reported, not raised."""
    with patch('psutil.Process') as MockProcess:
        process_instance = MockProcess.return_value
        process_instance.send_signal.side_effect = psutil.AccessDenied(pid=999)

        result = send_signal(999, SIGTERM)

        assert result.status == KillStatus.ACCESS_DENIED


def test_signal_os_error():
    with patch('psutil.Process') as MockProcess:
        MockProcess.return_value.send_signal.side_effect = OSError("Operation not permitted")

        result = send_signal(999)

        assert result.status == KillStatus.FAILED
        assert "Operation not permitted" in result.error
