# limen/utils/formatting.py
"""Human-readable renderings for byte counts, rates, percentages and uptime."""
from datetime import datetime
from typing import Optional

_UNITS = ["KB", "MB", "GB", "TB"]
_RATE_UNITS = ["B/s", "KB/s", "MB/s", "GB/s"]


def format_bytes(count: float) -> str:
    if count < 1024:
        return f"{int(count)} B"
    value = float(count)
    for unit in _UNITS:
        value /= 1024
        if value < 1024 or unit == _UNITS[-1]:
            return f"{value:.1f} {unit}"
    return f"{value:.1f} TB"


def format_bytes_per_second(rate: float) -> str:
    value = float(rate)
    for unit in _RATE_UNITS[:-1]:
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} {_RATE_UNITS[-1]}"


def format_percent(value: float) -> str:
    return f"{value:.1f}%"


def format_uptime(start_time: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Elapsed time since start_time, coarsened to the two largest units."""
    if start_time is None:
        return "Unknown"
    seconds = int(((now or datetime.now()) - start_time).total_seconds())
    seconds = max(seconds, 0)

    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m"
    return f"{seconds // 86400}d {(seconds % 86400) // 3600}h"
