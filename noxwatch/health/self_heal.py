#!/usr/bin/env python3
"""
Noxwatch Self-Healing System

Turns HealthReport problems into corrective actions:
- Inactive service: restart through the service manager
- Supervised process down: defer to the supervisor's restart budget
- Memory critical: drop page caches
- Disk critical: vacuum the journal and truncate stale log files
- Runaway process: SIGKILL after repeated high-CPU samples

Every attempt is appended to the self-healing log; each cycle that took
action sends one aggregated notification.
"""

import asyncio
import fnmatch
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from ..alerts import AlertSink, Severity
from ..supervisor.inspector import ProcessInspector, ProcessUsage
from ..utils import JsonLinesLog, TargetLocks
from .monitor import HealthIssue, HealthReport, HealthStatus
from .services import ServiceManager, run_command

if TYPE_CHECKING:
    from ..supervisor import ProcessSupervisor

logger = logging.getLogger('noxwatch.health.self_heal')

HOLDER = 'self-heal'

DEFAULT_PROTECTED = ['systemd', 'init', 'kthreadd', 'sshd', 'noxwatch']


@dataclass
class SelfHealConfig:
    """Configuration for self-healing responses."""
    enabled: bool = True
    stuck_cpu_percent: float = 90.0
    stuck_cpu_samples: int = 2
    kill_patterns: List[str] = field(default_factory=lambda: ['*'])
    protected_processes: List[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED))
    log_dirs: List[str] = field(default_factory=lambda: ['/var/log'])
    log_max_age_days: int = 7
    log_truncate_bytes: int = 1024 * 1024
    journal_vacuum_time: str = '7d'
    drop_caches_path: str = '/proc/sys/vm/drop_caches'
    command_timeout: float = 60.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SelfHealConfig':
        data = data or {}
        defaults = cls()
        return cls(
            enabled=bool(data.get('enabled', defaults.enabled)),
            stuck_cpu_percent=float(data.get('stuck_cpu_percent', defaults.stuck_cpu_percent)),
            stuck_cpu_samples=max(1, int(data.get('stuck_cpu_samples', defaults.stuck_cpu_samples))),
            kill_patterns=[str(p) for p in data.get('kill_patterns', defaults.kill_patterns)],
            protected_processes=(
                list(DEFAULT_PROTECTED)
                + [str(p) for p in data.get('protected_processes', [])]
            ),
            log_dirs=[str(d) for d in data.get('log_dirs', defaults.log_dirs)],
            log_max_age_days=int(data.get('log_max_age_days', defaults.log_max_age_days)),
            log_truncate_bytes=int(data.get('log_truncate_bytes', defaults.log_truncate_bytes)),
            journal_vacuum_time=str(data.get('journal_vacuum_time', defaults.journal_vacuum_time)),
            drop_caches_path=str(data.get('drop_caches_path', defaults.drop_caches_path)),
            command_timeout=float(data.get('command_timeout', defaults.command_timeout)),
        )


@dataclass
class HealingAction:
    """Audit record of one remediation attempt. Never mutated once logged."""
    action: str  # restart_service, clear_caches, clean_logs, kill_stuck_process
    target: str
    success: bool
    details: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'action': self.action,
            'target': self.target,
            'success': self.success,
            'details': self.details,
        }


class SelfHealer:
    """
    Automated remediation for health check failures.

    Usage:
        healer = SelfHealer(config, services, sink, locks, audit_log,
                            supervisor=supervisor)
        actions = await healer.handle_report(report)
    """

    def __init__(
        self,
        config: SelfHealConfig,
        service_manager: ServiceManager,
        sink: AlertSink,
        locks: TargetLocks,
        audit_log: Optional[JsonLinesLog] = None,
        supervisor: Optional['ProcessSupervisor'] = None,
        inspector: Optional[ProcessInspector] = None,
        known_services: Optional[List[str]] = None,
    ):
        self.config = config
        self.known_services = set(known_services) if known_services is not None else None
        self.service_manager = service_manager
        self.sink = sink
        self.locks = locks
        self.audit_log = audit_log
        self.supervisor = supervisor
        self.inspector = inspector or ProcessInspector()

        self._own_pid = os.getpid()
        self._stuck_counts: Dict[int, int] = {}
        self._last_issues: List[str] = []
        self._cycles = 0
        self._deferred = 0
        self._actions_by_type: Dict[str, int] = {}
        self._failures = 0

    async def handle_report(self, report: HealthReport) -> List[HealingAction]:
        """
        Remediate the problems in a report. Main entry point, once per
        deep health cycle.
        """
        self._cycles += 1
        self._alert_on_issue_change(report)

        if not self.config.enabled:
            return []

        actions: List[HealingAction] = []

        for name, active in report.services.items():
            if not active:
                action = await self.restart_service(name)
                if action is not None:
                    actions.append(action)

        for name, proc in report.processes.items():
            if proc.running:
                continue
            if proc.managed and self.supervisor is not None:
                if await self.supervisor.request_restart(name, reason='health check found it down'):
                    self._deferred += 1
            else:
                logger.warning(f"External process {name} is not running (reported only)")

        # Resource remediation is driven by the report's issues
        res = report.resources
        if res is not None:
            if report.has_issue(HealthIssue.MEMORY):
                actions.append(await self.clear_caches(res.memory_percent))
            if report.has_issue(HealthIssue.DISK):
                actions.append(await self.clean_logs(res.disk_percent))

        actions.extend(await self.kill_stuck_processes())

        if actions:
            await self._record(actions)
            self._notify_actions(actions)
        return actions

    # ------------------------------------------------------------------
    # Remediations
    # ------------------------------------------------------------------

    async def restart_service(self, name: str) -> Optional[HealingAction]:
        """Restart an inactive service. None if it came back on its own."""
        if self.known_services is not None and name not in self.known_services:
            logger.warning(f"Ignoring restart for unconfigured service {name!r}")
            return None

        async with self.locks.hold(name, HOLDER):
            try:
                active = await asyncio.wait_for(
                    self.service_manager.is_active(name),
                    timeout=self.config.command_timeout,
                )
            except asyncio.TimeoutError:
                active = False
            if active:
                logger.info(f"Service {name} is active again, skipping restart")
                return None

            logger.warning(f"Restarting inactive service {name}")
            try:
                success, output = await asyncio.wait_for(
                    self.service_manager.restart(name),
                    timeout=self.config.command_timeout,
                )
            except asyncio.TimeoutError:
                success, output = False, f'restart timed out after {self.config.command_timeout}s'
            return HealingAction('restart_service', name, success, output)

    async def clear_caches(self, memory_percent: float) -> HealingAction:
        logger.warning(f"Memory at {memory_percent:.1f}%, dropping page caches")
        async with self.locks.hold('system:caches', HOLDER):
            sync = await run_command(['sync'], self.config.command_timeout)
            if not sync.ok:
                logger.warning(f"sync failed: {sync.error or sync.output}")

            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._write_drop_caches)
            except OSError as e:
                return HealingAction('clear_caches', 'system', False, f'drop_caches failed: {e}')
            return HealingAction(
                'clear_caches', 'system', True,
                f'memory at {memory_percent:.1f}%, page caches dropped',
            )

    def _write_drop_caches(self):
        with open(self.config.drop_caches_path, 'w') as f:
            f.write('3\n')

    async def clean_logs(self, disk_percent: float) -> HealingAction:
        logger.warning(f"Disk at {disk_percent:.1f}%, cleaning logs")
        async with self.locks.hold('system:logs', HOLDER):
            details = []
            vacuum = await run_command(
                ['journalctl', f'--vacuum-time={self.config.journal_vacuum_time}'],
                self.config.command_timeout,
            )
            if vacuum.ok:
                details.append('journal vacuumed')
            else:
                details.append(f'journal vacuum failed: {vacuum.error or vacuum.output}')

            loop = asyncio.get_running_loop()
            truncated = await loop.run_in_executor(None, self.truncate_stale_logs)
            details.append(f'{len(truncated)} stale log file(s) truncated')

            return HealingAction(
                'clean_logs', 'system',
                vacuum.ok or bool(truncated),
                f'disk at {disk_percent:.1f}%: ' + ', '.join(details),
            )

    def truncate_stale_logs(self) -> List[str]:
        """Truncate *.log files older than log_max_age_days to log_truncate_bytes."""
        cutoff = time.time() - self.config.log_max_age_days * 86400
        truncated = []
        for log_dir in self.config.log_dirs:
            root = Path(log_dir)
            if not root.is_dir():
                continue
            for path in root.rglob('*.log'):
                try:
                    st = path.stat()
                    if not path.is_file() or st.st_mtime >= cutoff:
                        continue
                    if st.st_size <= self.config.log_truncate_bytes:
                        continue
                    os.truncate(path, self.config.log_truncate_bytes)
                    truncated.append(str(path))
                except OSError as e:
                    logger.debug(f"Cannot truncate {path}: {e}")
        return truncated

    async def kill_stuck_processes(self) -> List[HealingAction]:
        """
        SIGKILL processes that stayed above stuck_cpu_percent for
        stuck_cpu_samples consecutive cycles.
        """
        loop = asyncio.get_running_loop()
        hot = await loop.run_in_executor(
            None, self.inspector.top_cpu, self.config.stuck_cpu_percent, self._excluded_pids()
        )

        seen: Set[int] = set()
        candidates: List[ProcessUsage] = []
        for usage in hot:
            if not self._killable(usage.name):
                continue
            seen.add(usage.pid)
            self._stuck_counts[usage.pid] = self._stuck_counts.get(usage.pid, 0) + 1
            if self._stuck_counts[usage.pid] >= self.config.stuck_cpu_samples:
                candidates.append(usage)

        # Streaks are consecutive; drop anything that cooled down or exited
        for pid in list(self._stuck_counts):
            if pid not in seen:
                del self._stuck_counts[pid]

        actions = []
        for usage in candidates:
            action = await self._kill(usage)
            if action is not None:
                actions.append(action)
        return actions

    async def _kill(self, usage: ProcessUsage) -> Optional[HealingAction]:
        target = f"{usage.name} ({usage.pid})"
        async with self.locks.hold(target, HOLDER):
            # The PID may have been reused or handed to the supervisor meanwhile
            if usage.pid in self._excluded_pids():
                return None
            current = await asyncio.get_running_loop().run_in_executor(
                None, self.inspector.inspect, usage.pid
            )
            # External PID; only needed for this one reading
            self.inspector.forget(usage.pid)
            if current is None or current.name != usage.name:
                self._stuck_counts.pop(usage.pid, None)
                return None

            logger.warning(f"Killing stuck process {target} at {usage.cpu_percent:.1f}% CPU")
            self._stuck_counts.pop(usage.pid, None)
            try:
                os.kill(usage.pid, signal.SIGKILL)
            except ProcessLookupError:
                return None
            except PermissionError as e:
                return HealingAction('kill_stuck_process', target, False, f'kill failed: {e}')
            return HealingAction(
                'kill_stuck_process', target, True,
                f'CPU {usage.cpu_percent:.1f}% for {self.config.stuck_cpu_samples} consecutive checks',
            )

    def _excluded_pids(self) -> Set[int]:
        excluded = {1, self._own_pid}
        if self.supervisor is not None:
            excluded |= self.supervisor.managed_pids()
        return excluded

    def _killable(self, name: str) -> bool:
        if name in self.config.protected_processes:
            return False
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.config.kill_patterns)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def _record(self, actions: List[HealingAction]):
        for action in actions:
            self._actions_by_type[action.action] = self._actions_by_type.get(action.action, 0) + 1
            if not action.success:
                self._failures += 1
            log = logger.info if action.success else logger.error
            log(f"SELF-HEAL {action.action} {action.target}: "
                f"{'ok' if action.success else 'failed'} - {action.details}")

        if self.audit_log is None:
            return
        loop = asyncio.get_running_loop()
        for action in actions:
            try:
                await loop.run_in_executor(None, self.audit_log.append, action.to_dict())
            except OSError as e:
                logger.error(f"Failed to write self-healing log: {e}")

    def _notify_actions(self, actions: List[HealingAction]):
        lines = [
            f"{'OK' if a.success else 'FAILED'} {a.action} {a.target}: {a.details}"
            for a in actions
        ]
        self.sink.notify(
            'SELF-HEAL',
            f"Self-healing took {len(actions)} action(s)",
            '\n'.join(lines),
            Severity.MEDIUM,
        )

    def _alert_on_issue_change(self, report: HealthReport):
        # Compare keys, not messages: messages carry live readings
        keys = report.issue_keys
        if keys == self._last_issues:
            return
        self._last_issues = keys

        if not keys:
            logger.info("All health issues resolved")
            return

        severity = Severity.HIGH if report.status == HealthStatus.CRITICAL else Severity.MEDIUM
        self.sink.notify(
            'HEALTH',
            f"Health {report.status.value}: {len(keys)} issue(s)",
            '\n'.join(sorted(report.messages)),
            severity,
        )

    def get_action_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent self-healing actions, newest first."""
        if self.audit_log is None:
            return []
        return list(reversed(self.audit_log.tail(limit)))

    def get_stats(self) -> Dict[str, Any]:
        return {
            'cycles': self._cycles,
            'total_actions': sum(self._actions_by_type.values()),
            'failed_actions': self._failures,
            'actions_by_type': dict(self._actions_by_type),
            'deferred_restarts': self._deferred,
            'tracked_stuck_pids': len(self._stuck_counts),
            'open_issues': list(self._last_issues),
            'config': {
                'enabled': self.config.enabled,
                'stuck_cpu_percent': self.config.stuck_cpu_percent,
                'stuck_cpu_samples': self.config.stuck_cpu_samples,
            },
        }
