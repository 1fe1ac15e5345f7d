#!/usr/bin/env python3
"""
Noxwatch Health Monitor

Deep health checks on a slow cadence, plus a fast heartbeat marker.

Each check probes:
- Configured OS services through the service manager
- Critical processes: the supervisor's critical roster and any externally
  named processes (looked up by name)
- A host resource snapshot
- The security surface (firewall, intrusion prevention)

The resulting HealthReport is persisted in place and handed to the
SelfHealer for remediation.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..governor.metrics import MetricsProvider, ResourceSample
from ..supervisor.inspector import ProcessInspector
from ..utils import write_json_atomic
from .services import SecurityProbe, SecurityStatus, ServiceManager

if TYPE_CHECKING:
    from ..supervisor import ProcessSupervisor

logger = logging.getLogger('noxwatch.health.monitor')

# Above the governor's alert thresholds; crossing these triggers remediation
MEMORY_CRITICAL = 90.0
DISK_CRITICAL = 85.0


class HealthStatus(Enum):
    """Overall health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass
class HealthConfig:
    """Configuration for deep health checks."""
    services: List[str] = field(default_factory=list)
    processes: List[str] = field(default_factory=list)
    check_interval: float = 300.0
    heartbeat_interval: float = 30.0
    probe_timeout: float = 10.0
    check_security: bool = True
    memory_critical: float = MEMORY_CRITICAL
    disk_critical: float = DISK_CRITICAL

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'HealthConfig':
        data = data or {}
        return cls(
            services=[str(s) for s in data.get('services', [])],
            processes=[str(p) for p in data.get('processes', [])],
            check_interval=float(data.get('check_interval', 300)),
            heartbeat_interval=float(data.get('heartbeat_interval', 30)),
            probe_timeout=float(data.get('probe_timeout', 10)),
            check_security=bool(data.get('check_security', True)),
            memory_critical=float(data.get('memory_critical', MEMORY_CRITICAL)),
            disk_critical=float(data.get('disk_critical', DISK_CRITICAL)),
        )


@dataclass
class ProcessHealth:
    """Liveness of one critical process."""
    name: str
    running: bool
    pids: List[int] = field(default_factory=list)
    managed: bool = False

    @property
    def pid_count(self) -> int:
        return len(self.pids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'pid_count': self.pid_count,
            'pids': self.pids,
            'managed': self.managed,
        }


@dataclass(frozen=True)
class HealthIssue:
    """
    One detected problem.

    key identifies the condition across checks ('service:nginx',
    'memory_critical'); message is the human-readable text and may carry
    live readings.
    """
    key: str
    message: str

    # Keys for resource and security conditions
    MEMORY = 'memory_critical'
    DISK = 'disk_critical'
    FIREWALL = 'firewall'
    INTRUSION_PREVENTION = 'intrusion_prevention'

    @classmethod
    def service(cls, name: str) -> 'HealthIssue':
        return cls(f'service:{name}', f"Service {name} is inactive")

    @classmethod
    def process(cls, name: str) -> 'HealthIssue':
        return cls(f'process:{name}', f"Process {name} is not running")


@dataclass
class HealthReport:
    """Point-in-time health snapshot."""
    status: HealthStatus = HealthStatus.HEALTHY
    services: Dict[str, bool] = field(default_factory=dict)
    processes: Dict[str, ProcessHealth] = field(default_factory=dict)
    resources: Optional[ResourceSample] = None
    security: Optional[SecurityStatus] = None
    issues: List[HealthIssue] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def issue_keys(self) -> List[str]:
        return sorted(issue.key for issue in self.issues)

    @property
    def messages(self) -> List[str]:
        return [issue.message for issue in self.issues]

    def has_issue(self, key: str) -> bool:
        return any(issue.key == key for issue in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'status': self.status.value,
            'services': {name: {'active': active} for name, active in self.services.items()},
            'processes': {name: p.to_dict() for name, p in self.processes.items()},
            'resources': self.resources.to_dict() if self.resources else {},
            'security': self.security.to_dict() if self.security else {},
            'issues': self.messages,
        }


class HealthMonitor:
    """
    Builds HealthReports and writes the heartbeat marker.

    Usage:
        monitor = HealthMonitor(config, provider, services, probe, inspector,
                                supervisor=supervisor, report_path=...)
        report = await monitor.check()
        await monitor.heartbeat()
    """

    def __init__(
        self,
        config: HealthConfig,
        provider: MetricsProvider,
        service_manager: ServiceManager,
        security_probe: Optional[SecurityProbe] = None,
        inspector: Optional[ProcessInspector] = None,
        supervisor: Optional['ProcessSupervisor'] = None,
        report_path: Optional[Path] = None,
        heartbeat_path: Optional[Path] = None,
    ):
        self.config = config
        self.provider = provider
        self.service_manager = service_manager
        self.security_probe = security_probe or SecurityProbe(timeout=config.probe_timeout)
        self.inspector = inspector or ProcessInspector()
        self.supervisor = supervisor
        self.report_path = Path(report_path) if report_path else None
        self.heartbeat_path = Path(heartbeat_path) if heartbeat_path else None

        self._start_time = time.time()
        self._last_report: Optional[HealthReport] = None
        self._checks = 0
        self._heartbeats = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def check(self) -> HealthReport:
        """Run a full health check, persist and return the report."""
        report = HealthReport()

        report.services = await self._check_services()
        report.processes = await self._check_processes()
        report.resources = await self._sample_resources()
        if self.config.check_security:
            report.security = await self._check_security()

        report.issues = self._find_issues(report)
        report.status = self._determine_status(report)

        self._checks += 1
        self._last_report = report
        await self._write(self.report_path, report.to_dict())

        if report.issues:
            logger.warning(f"Health check: {report.status.value} ({len(report.issues)} issue(s))")
        else:
            logger.info("Health check: healthy")
        return report

    async def heartbeat(self):
        """Overwrite the heartbeat marker file."""
        try:
            load = list(os.getloadavg())
        except (AttributeError, OSError):
            load = None
        data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'status': 'alive',
            'pid': os.getpid(),
            'uptime_seconds': round(time.time() - self._start_time, 1),
            'load_average': load,
        }
        self._heartbeats += 1
        await self._write(self.heartbeat_path, data)

    @property
    def last_report(self) -> Optional[HealthReport]:
        return self._last_report

    def get_stats(self) -> Dict[str, Any]:
        return {
            'checks_performed': self._checks,
            'heartbeats': self._heartbeats,
            'last_status': self._last_report.status.value if self._last_report else None,
            'last_check': self._last_report.timestamp if self._last_report else None,
        }

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    async def _check_services(self) -> Dict[str, bool]:
        names = list(dict.fromkeys(self.config.services))
        results = await asyncio.gather(*(self._service_active(n) for n in names))
        return dict(zip(names, results))

    async def _service_active(self, name: str) -> bool:
        try:
            return await asyncio.wait_for(
                self.service_manager.is_active(name), timeout=self.config.probe_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Service probe for {name} timed out")
            return False

    async def _check_processes(self) -> Dict[str, ProcessHealth]:
        results: Dict[str, ProcessHealth] = {}
        loop = asyncio.get_running_loop()

        if self.supervisor is not None:
            for name in self.supervisor.critical_names():
                pid = self.supervisor.pid_of(name)
                running = (
                    self.supervisor.is_running(name)
                    and pid is not None
                    and await loop.run_in_executor(None, self.inspector.pid_exists, pid)
                )
                results[name] = ProcessHealth(
                    name=name,
                    running=bool(running),
                    pids=[pid] if running else [],
                    managed=True,
                )

        for name in self.config.processes:
            if name in results:
                logger.debug(f"{name} is supervised, skipping name lookup")
                continue
            try:
                pids = await asyncio.wait_for(
                    loop.run_in_executor(None, self.inspector.find_by_name, name),
                    timeout=self.config.probe_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Process lookup for {name} timed out")
                pids = []
            results[name] = ProcessHealth(name=name, running=bool(pids), pids=pids)

        return results

    async def _sample_resources(self) -> Optional[ResourceSample]:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self.provider.sample),
                timeout=self.config.probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Resource sampling timed out")
            return None

    async def _check_security(self) -> SecurityStatus:
        try:
            return await asyncio.wait_for(
                self.security_probe.check(), timeout=self.config.probe_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Security probe timed out")
            return SecurityStatus()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _find_issues(self, report: HealthReport) -> List[HealthIssue]:
        issues = []
        for name, active in report.services.items():
            if not active:
                issues.append(HealthIssue.service(name))
        for name, proc in report.processes.items():
            if not proc.running:
                issues.append(HealthIssue.process(name))

        res = report.resources
        if res is not None:
            if res.memory_percent > self.config.memory_critical:
                issues.append(HealthIssue(
                    HealthIssue.MEMORY, f"Critical memory usage: {res.memory_percent:.1f}%"
                ))
            if res.disk_percent > self.config.disk_critical:
                issues.append(HealthIssue(
                    HealthIssue.DISK, f"Critical disk usage: {res.disk_percent:.1f}%"
                ))

        sec = report.security
        if sec is not None:
            if not sec.intrusion_prevention:
                issues.append(HealthIssue(
                    HealthIssue.INTRUSION_PREVENTION, "Intrusion prevention is not active"
                ))
            if not sec.firewall:
                issues.append(HealthIssue(HealthIssue.FIREWALL, "Firewall is not active"))
        return issues

    def _determine_status(self, report: HealthReport) -> HealthStatus:
        managed_down = any(p.managed and not p.running for p in report.processes.values())
        resource_critical = report.has_issue(HealthIssue.MEMORY) or report.has_issue(HealthIssue.DISK)
        if managed_down or resource_critical:
            return HealthStatus.CRITICAL
        if report.issues:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    async def _write(self, path: Optional[Path], data: Dict[str, Any]):
        if path is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, write_json_atomic, path, data)
        except OSError as e:
            logger.warning(f"Failed to write {path}: {e}")
