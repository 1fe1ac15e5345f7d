"""
Shared fakes for Noxwatch tests.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from noxwatch.alerts import AlertSink, Severity
from noxwatch.governor import MetricsProvider, ResourceSample
from noxwatch.health import ServiceManager
from noxwatch.supervisor import ProcessUsage


class RecordingSink(AlertSink):
    """AlertSink that keeps every notification in memory."""

    def __init__(self):
        self.alerts = []

    def notify(self, category, title, body, severity=Severity.MEDIUM):
        self.alerts.append({
            'category': category,
            'title': title,
            'body': body,
            'severity': Severity.parse(severity),
        })

    def by_category(self, category: str) -> List[dict]:
        return [a for a in self.alerts if a['category'] == category]


class FakeMetricsProvider(MetricsProvider):
    """Replays a list of samples, then repeats the default sample."""

    def __init__(self, samples: Optional[List[ResourceSample]] = None, default: Optional[ResourceSample] = None):
        self.samples = list(samples or [])
        self.default = default or make_sample()
        self.calls = 0

    def sample(self) -> ResourceSample:
        self.calls += 1
        if self.samples:
            return self.samples.pop(0)
        return self.default


class FakeServiceManager(ServiceManager):
    """In-memory service table. restart() brings a service up when restart_ok."""

    def __init__(self, active: Optional[Dict[str, bool]] = None, restart_ok: bool = True,
                 slow: Optional[List[str]] = None):
        self.active = dict(active or {})
        self.restart_ok = restart_ok
        self.slow = set(slow or [])
        self.restarts: List[str] = []

    async def is_active(self, name: str) -> bool:
        if name in self.slow:
            await asyncio.sleep(10)
        return self.active.get(name, False)

    async def restart(self, name: str):
        self.restarts.append(name)
        if self.restart_ok:
            self.active[name] = True
            return True, f'{name} restarted'
        return False, f'Job for {name}.service failed'


class FakeInspector:
    """ProcessInspector stand-in with scripted readings."""

    def __init__(self, memory_bytes: int = 10 * 1024 * 1024, cpu_percent: float = 1.0):
        self.memory_bytes = memory_bytes
        self.cpu_percent = cpu_percent
        self.usage: Dict[int, ProcessUsage] = {}
        self.by_name: Dict[str, List[int]] = {}
        self.hot: List[ProcessUsage] = []
        self.dead: set = set()
        self.forgotten: List[int] = []

    def inspect(self, pid: int) -> Optional[ProcessUsage]:
        if pid in self.dead:
            return None
        if pid in self.usage:
            return self.usage[pid]
        return ProcessUsage(pid=pid, name='python', memory_bytes=self.memory_bytes,
                            cpu_percent=self.cpu_percent)

    def pid_exists(self, pid: int) -> bool:
        return pid not in self.dead

    def find_by_name(self, name: str) -> List[int]:
        return list(self.by_name.get(name, []))

    def top_cpu(self, threshold: float, exclude=()) -> List[ProcessUsage]:
        excluded = set(exclude)
        return [u for u in self.hot if u.pid not in excluded and u.cpu_percent > threshold]

    def forget(self, pid: int):
        self.forgotten.append(pid)


def make_sample(memory=40.0, cpu=10.0, disk=30.0, load=(0.2, 0.2, 0.2), temperature=None,
                connections=12, cpu_count=4) -> ResourceSample:
    return ResourceSample(
        memory_percent=memory,
        memory_used_bytes=int(memory * 80 * 1024 * 1024),
        memory_total_bytes=8 * 1024 * 1024 * 1024,
        cpu_percent=cpu,
        cpu_count=cpu_count,
        disk_percent=disk,
        load_average=load,
        temperature=temperature,
        connections=connections,
    )


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Poll predicate until true, failing the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def inspector():
    return FakeInspector()
