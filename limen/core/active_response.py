# limen/core/active_response.py
import signal

import psutil

from limen.core.process_safety import KillResult
from limen.utils.logger import Logger

SIGTERM = int(signal.SIGTERM)
SIGKILL = int(getattr(signal, "SIGKILL", signal.SIGTERM))


def send_signal(pid: int, sig: int = SIGTERM) -> KillResult:
    """Deliver a termination signal. Safety checks are the caller's job.

    Returns:
        KillResult: SUCCESS, NOT_FOUND when the pid is already gone,
        ACCESS_DENIED, or FAILED with the OS error text.
    """
    logger = Logger()
    try:
        process = psutil.Process(pid)
        process.send_signal(sig)
        logger.success(f"Signal {sig} delivered to PID {pid}.")
        return KillResult.succeeded()
    except psutil.NoSuchProcess:
        logger.warning(f"PID {pid} no longer exists.")
        return KillResult.not_found()
    except psutil.AccessDenied:
        logger.error(f"Access denied signalling PID {pid}.")
        return KillResult.access_denied()
    except (psutil.Error, OSError, ValueError) as e:
        logger.error(f"Failed to signal PID {pid}: {e}")
        return KillResult.failed(str(e))
