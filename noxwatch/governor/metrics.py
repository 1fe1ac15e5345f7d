#!/usr/bin/env python3
"""
Noxwatch Resource Sampler

The only place host metrics are read. Everything else consumes typed
ResourceSample values through the MetricsProvider interface, so a platform
port only has to replace this module.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import psutil

logger = logging.getLogger('noxwatch.governor.metrics')

# Sensor groups tried first when reading temperatures
PREFERRED_SENSORS = ('coretemp', 'k10temp', 'zenpower', 'cpu_thermal', 'cpu-thermal', 'acpitz')


@dataclass
class ResourceSample:
    """Host resource snapshot taken once per tick."""
    memory_percent: float = 0.0
    memory_used_bytes: int = 0
    memory_total_bytes: int = 0
    cpu_percent: float = 0.0
    cpu_count: int = 1
    disk_percent: float = 0.0
    disk_path: str = '/'
    load_average: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    temperature: Optional[float] = None
    connections: Optional[int] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def load_1m(self) -> float:
        return self.load_average[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'memory_percent': round(self.memory_percent, 1),
            'memory_used_bytes': self.memory_used_bytes,
            'memory_total_bytes': self.memory_total_bytes,
            'cpu_percent': round(self.cpu_percent, 1),
            'cpu_count': self.cpu_count,
            'disk_percent': round(self.disk_percent, 1),
            'disk_path': self.disk_path,
            'load_average': [round(v, 2) for v in self.load_average],
            'temperature': round(self.temperature, 1) if self.temperature is not None else None,
            'connections': self.connections,
            'timestamp': self.timestamp,
        }


class MetricsProvider(ABC):
    """Source of host-wide resource samples."""

    @abstractmethod
    def sample(self) -> ResourceSample:
        """Take one sample. May block briefly; call from an executor."""


class PsutilMetricsProvider(MetricsProvider):
    """
    MetricsProvider backed by psutil.

    CPU usage is the delta since this provider's previous call, so with one
    call per tick it covers exactly the sampling interval. The baseline is
    kept per instance; give each sampling loop its own provider.
    """

    def __init__(self, disk_path: str = '/'):
        self.disk_path = disk_path
        self._last_cpu_times = psutil.cpu_times()

    def cpu_percent(self) -> float:
        """Busy share of all CPU time since the previous call."""
        current = psutil.cpu_times()
        previous, self._last_cpu_times = self._last_cpu_times, current

        total = _total_time(current) - _total_time(previous)
        if total <= 0:
            return 0.0
        idle = _idle_time(current) - _idle_time(previous)
        busy = max(0.0, total - idle)
        return round(min(100.0, busy / total * 100), 1)

    def sample(self) -> ResourceSample:
        mem = psutil.virtual_memory()
        sample = ResourceSample(
            memory_percent=mem.percent,
            memory_used_bytes=mem.total - mem.available,
            memory_total_bytes=mem.total,
            cpu_percent=self.cpu_percent(),
            cpu_count=psutil.cpu_count() or 1,
            disk_path=self.disk_path,
        )

        try:
            sample.disk_percent = psutil.disk_usage(self.disk_path).percent
        except OSError as e:
            logger.warning(f"Disk usage unavailable for {self.disk_path}: {e}")

        try:
            sample.load_average = tuple(psutil.getloadavg())
        except (AttributeError, OSError):
            pass

        sample.temperature = self.read_temperature()
        sample.connections = self.count_established()
        return sample

    def read_temperature(self) -> Optional[float]:
        """Highest current reading of the CPU sensor group, or None."""
        reader = getattr(psutil, 'sensors_temperatures', None)
        if reader is None:
            return None
        try:
            sensors = reader()
        except (OSError, RuntimeError):
            return None
        if not sensors:
            return None

        group = None
        for name in PREFERRED_SENSORS:
            if sensors.get(name):
                group = sensors[name]
                break
        if group is None:
            group = next((entries for entries in sensors.values() if entries), None)
        if not group:
            return None

        readings = [entry.current for entry in group if entry.current is not None]
        return max(readings) if readings else None

    def count_established(self) -> Optional[int]:
        """Established inet connections, or None when the OS denies access."""
        try:
            conns = psutil.net_connections(kind='inet')
        except (psutil.AccessDenied, PermissionError):
            return None
        return sum(1 for c in conns if c.status == psutil.CONN_ESTABLISHED)


def _total_time(times) -> float:
    # Linux counts guest time inside user/nice as well
    return sum(times) - getattr(times, 'guest', 0.0) - getattr(times, 'guest_nice', 0.0)


def _idle_time(times) -> float:
    # iowait counts as idle, matching psutil.cpu_percent
    return times.idle + getattr(times, 'iowait', 0.0)


def format_bytes(num: float) -> str:
    """Human-readable byte count."""
    for unit in ('B', 'KB', 'MB', 'GB'):
        if abs(num) < 1024 or unit == 'GB':
            return f"{num:.1f} {unit}" if unit != 'B' else f"{int(num)} B"
        num /= 1024
    return f"{num:.1f} GB"
