# limen/core/baselines.py
"""
Rolling baselines used by the anomaly detector.

Sample windows are plain lists trimmed to the window size passed on each
append, so a config change to the window size takes effect on the next
sample without rebuilding the baseline.
"""
import math
import time
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

from limen.core.schemas import PortModel

NEW_PORT_WINDOW_SECONDS = 300.0

PortKey = Tuple[int, str]


class BaselineStats(NamedTuple):
    """Frozen view of a sample window, taken before the current sample lands."""
    sample_count: int
    mean: float
    stddev: float


def mean(samples: Sequence[float]) -> float:
    if not samples:
        return 0.0
    return sum(samples) / len(samples)


def sample_stddev(samples: Sequence[float]) -> float:
    """Bessel-corrected standard deviation (n - 1). Zero below two samples."""
    if len(samples) < 2:
        return 0.0
    avg = mean(samples)
    variance = sum((s - avg) ** 2 for s in samples) / (len(samples) - 1)
    return math.sqrt(variance)


def _append_bounded(samples: List[float], value: float, max_samples: int) -> None:
    samples.append(value)
    overflow = len(samples) - max_samples
    if overflow > 0:
        del samples[:overflow]


class ProcessBaseline:
    def __init__(self, pid: int, name: str):
        self.pid = pid
        self.name = name
        self.cpu_samples: List[float] = []
        self.memory_samples: List[float] = []
        self.last_seen = time.time()

    def add_sample(self, cpu: float, memory: float, max_samples: int = 60,
                   now: Optional[float] = None) -> None:
        _append_bounded(self.cpu_samples, cpu, max_samples)
        _append_bounded(self.memory_samples, memory, max_samples)
        self.last_seen = time.time() if now is None else now

    @property
    def sample_count(self) -> int:
        return len(self.cpu_samples)

    @property
    def avg_cpu(self) -> float:
        return mean(self.cpu_samples)

    @property
    def cpu_stddev(self) -> float:
        return sample_stddev(self.cpu_samples)

    @property
    def avg_memory(self) -> float:
        return mean(self.memory_samples)

    @property
    def memory_stddev(self) -> float:
        return sample_stddev(self.memory_samples)

    def cpu_stats(self) -> BaselineStats:
        return BaselineStats(self.sample_count, self.avg_cpu, self.cpu_stddev)

    def memory_stats(self) -> BaselineStats:
        return BaselineStats(len(self.memory_samples), self.avg_memory, self.memory_stddev)


class NetworkBaseline:
    def __init__(self):
        self.bytes_in_samples: List[float] = []
        self.bytes_out_samples: List[float] = []
        self.connection_count_samples: List[float] = []
        self.last_updated = time.time()

    def add_sample(self, bytes_in: float, bytes_out: float, connections: int,
                   max_samples: int = 60, now: Optional[float] = None) -> None:
        _append_bounded(self.bytes_in_samples, bytes_in, max_samples)
        _append_bounded(self.bytes_out_samples, bytes_out, max_samples)
        _append_bounded(self.connection_count_samples, float(connections), max_samples)
        self.last_updated = time.time() if now is None else now

    @property
    def sample_count(self) -> int:
        return len(self.bytes_in_samples)

    @property
    def avg_bytes_in(self) -> float:
        return mean(self.bytes_in_samples)

    @property
    def avg_bytes_out(self) -> float:
        return mean(self.bytes_out_samples)

    @property
    def bytes_in_stddev(self) -> float:
        return sample_stddev(self.bytes_in_samples)

    @property
    def bytes_out_stddev(self) -> float:
        return sample_stddev(self.bytes_out_samples)

    @property
    def avg_connections(self) -> float:
        return mean(self.connection_count_samples)

    @property
    def connections_stddev(self) -> float:
        return sample_stddev(self.connection_count_samples)

    def throughput_stats(self) -> BaselineStats:
        """Combined in+out throughput. Only the mean is tracked for the sum."""
        return BaselineStats(self.sample_count, self.avg_bytes_in + self.avg_bytes_out, 0.0)


class PortBaseline:
    """Known (port, protocol) keys and when each was first observed."""

    def __init__(self):
        self.known_ports: Set[PortKey] = set()
        self.port_history: Dict[PortKey, float] = {}
        self.last_updated = time.time()

    def update(self, ports: Iterable[PortModel], now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        current = {(p.number, p.protocol.value) for p in ports}
        for key in current - self.known_ports:
            self.port_history[key] = now
        # Forget ports that went away; a returning port counts as new again
        for key in self.known_ports - current:
            self.port_history.pop(key, None)
        self.known_ports = current
        self.last_updated = now

    def first_seen(self, port: int, protocol: str) -> Optional[float]:
        return self.port_history.get((port, protocol))

    def is_new_port(self, port: int, protocol: str, now: Optional[float] = None) -> bool:
        first_seen = self.port_history.get((port, protocol))
        if first_seen is None:
            return True
        now = time.time() if now is None else now
        return now - first_seen < NEW_PORT_WINDOW_SECONDS
