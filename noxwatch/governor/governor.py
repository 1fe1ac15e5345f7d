#!/usr/bin/env python3
"""
Noxwatch Resource Governor

Samples host metrics on a fixed interval and compares them with configurable
thresholds. Alerts are edge-triggered: each metric has an alert flag, a
notification fires only when the flag goes from clear to set, and the flag
clears again once the value drops back to or below its threshold.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from ..alerts import AlertSink, Severity
from .metrics import MetricsProvider, ResourceSample, format_bytes

logger = logging.getLogger('noxwatch.governor')

METRICS = ('memory', 'cpu', 'disk', 'load', 'temperature', 'connections')

METRIC_SEVERITY = {
    'memory': Severity.HIGH,
    'cpu': Severity.MEDIUM,
    'disk': Severity.HIGH,
    'load': Severity.MEDIUM,
    'temperature': Severity.HIGH,
    'connections': Severity.MEDIUM,
}

METRIC_LABELS = {
    'memory': ('High memory usage', '%'),
    'cpu': ('High CPU usage', '%'),
    'disk': ('High disk usage', '%'),
    'load': ('High system load', ''),
    'temperature': ('High temperature', ' C'),
    'connections': ('High network connections', ''),
}


@dataclass
class ResourceThresholds:
    """
    Alert thresholds. Percentages for memory/cpu/disk, degrees Celsius for
    temperature, absolute values for load and established connections.
    A load threshold of None means 80% of the CPU core count.
    """
    memory: float = 85.0
    cpu: float = 90.0
    disk: float = 90.0
    load: Optional[float] = None
    temperature: float = 75.0
    connections: int = 1000

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ResourceThresholds':
        data = data or {}
        unknown = set(data) - set(METRICS)
        if unknown:
            logger.warning(f"Ignoring unknown threshold(s): {', '.join(sorted(unknown))}")
        values = {}
        for key in METRICS:
            if data.get(key) is not None:
                values[key] = int(data[key]) if key == 'connections' else float(data[key])
        return cls(**values)

    def limit_for(self, metric: str, sample: ResourceSample) -> float:
        if metric == 'load' and self.load is None:
            return sample.cpu_count * 0.8
        return float(getattr(self, metric))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ThresholdEvent:
    """A flag transition produced by one sample."""
    metric: str
    kind: str  # 'alert' or 'clear'
    value: float
    threshold: float

    @property
    def message(self) -> str:
        label, unit = METRIC_LABELS[self.metric]
        if self.kind == 'alert':
            return f"{label}: {self.value:.1f}{unit} (threshold {self.threshold:.1f}{unit})"
        return f"{self.metric} back to normal: {self.value:.1f}{unit} (threshold {self.threshold:.1f}{unit})"


class ResourceGovernor:
    """
    Edge-triggered host resource alerting.

    The alert flags are owned by this object and only touched inside
    evaluate(), which runs in the governor's own tick.

    Usage:
        governor = ResourceGovernor(PsutilMetricsProvider(), sink)
        await governor.tick()          # one sample
        governor.alert_flags()         # {'memory': False, ...}
    """

    def __init__(
        self,
        provider: MetricsProvider,
        sink: AlertSink,
        thresholds: Optional[ResourceThresholds] = None,
        status_interval: float = 600.0,
        notify_recovery: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.sink = sink
        self.thresholds = thresholds or ResourceThresholds()
        self.status_interval = status_interval
        self.notify_recovery = notify_recovery
        self._clock = clock

        self._flags: Dict[str, bool] = {metric: False for metric in METRICS}
        self._last_sample: Optional[ResourceSample] = None
        self._last_status_at: Optional[float] = None
        self._stats = {
            'samples': 0,
            'alerts_raised': 0,
            'alerts_cleared': 0,
            'status_reports': 0,
        }

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def metric_values(sample: ResourceSample) -> Dict[str, Optional[float]]:
        return {
            'memory': sample.memory_percent,
            'cpu': sample.cpu_percent,
            'disk': sample.disk_percent,
            'load': sample.load_1m,
            'temperature': sample.temperature,
            'connections': float(sample.connections) if sample.connections is not None else None,
        }

    def evaluate(self, sample: ResourceSample) -> List[ThresholdEvent]:
        """Apply one sample to the alert flags and return the transitions."""
        events: List[ThresholdEvent] = []
        for metric, value in self.metric_values(sample).items():
            limit = self.thresholds.limit_for(metric, sample)

            if value is None:
                # Metric unavailable this tick: reset without notifying
                self._flags[metric] = False
                continue

            if value > limit:
                if not self._flags[metric]:
                    self._flags[metric] = True
                    events.append(ThresholdEvent(metric, 'alert', value, limit))
            elif self._flags[metric]:
                self._flags[metric] = False
                events.append(ThresholdEvent(metric, 'clear', value, limit))
        return events

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> List[ThresholdEvent]:
        """Take one sample, raise/clear alerts, and emit the periodic summary."""
        loop = asyncio.get_running_loop()
        sample = await loop.run_in_executor(None, self.provider.sample)
        self._last_sample = sample
        self._stats['samples'] += 1

        events = self.evaluate(sample)
        for event in events:
            self._emit(event)

        now = self._clock()
        if self._last_status_at is None or now - self._last_status_at >= self.status_interval:
            self._last_status_at = now
            self._stats['status_reports'] += 1
            logger.info(f"System status - {self.status_summary(sample)}")

        return events

    def _emit(self, event: ThresholdEvent):
        if event.kind == 'alert':
            self._stats['alerts_raised'] += 1
            logger.warning(f"ALERT: {event.message}")
            self.sink.notify(
                'RESOURCE',
                METRIC_LABELS[event.metric][0],
                event.message,
                METRIC_SEVERITY[event.metric],
            )
            return

        self._stats['alerts_cleared'] += 1
        logger.info(f"Cleared: {event.message}")
        if self.notify_recovery:
            self.sink.notify(
                'RESOURCE',
                f"{event.metric} recovered",
                event.message,
                Severity.INFO,
            )

    def status_summary(self, sample: ResourceSample) -> str:
        parts = [
            f"Memory: {sample.memory_percent:.1f}% "
            f"({format_bytes(sample.memory_used_bytes)}/{format_bytes(sample.memory_total_bytes)})",
            f"CPU: {sample.cpu_percent:.1f}%",
            f"Disk: {sample.disk_percent:.1f}%",
            f"Load: {', '.join(f'{v:.2f}' for v in sample.load_average)}",
        ]
        if sample.temperature is not None:
            parts.append(f"Temp: {sample.temperature:.1f} C")
        if sample.connections is not None:
            parts.append(f"Connections: {sample.connections}")
        active = [m for m, flag in self._flags.items() if flag]
        parts.append(f"Active alerts: {', '.join(active) if active else 'none'}")
        return ', '.join(parts)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def update_thresholds(self, **changes):
        for key, value in changes.items():
            if key not in METRICS:
                raise ValueError(f"Unknown threshold: {key}")
            setattr(self.thresholds, key, value)
        logger.info(f"Thresholds updated: {changes}")

    def alert_flags(self) -> Dict[str, bool]:
        return dict(self._flags)

    @property
    def last_sample(self) -> Optional[ResourceSample]:
        return self._last_sample

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats['active_alerts'] = [m for m, flag in self._flags.items() if flag]
        stats['thresholds'] = self.thresholds.to_dict()
        return stats
