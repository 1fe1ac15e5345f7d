#!/usr/bin/env python3
"""
Noxwatch Agent

Wires the supervisor, resource governor, health monitor and self-healer
together and runs their loops on one event loop until told to stop.

Loops:
  supervisor  - per-process resource policing (exits are event-driven)
  governor    - host resource sampling and threshold alerts
  health      - deep health check followed by self-healing
  heartbeat   - liveness marker file

Signals:
  SIGTERM / SIGINT  - cooperative shutdown
  SIGUSR1           - reset failed processes (see 'noxwatch reset')
"""

import asyncio
import logging
import os
import signal
from typing import Any, Dict, List, Optional

from .alerts import AlertDispatcher, AlertSink, Severity
from .config import AgentConfig
from .governor import MetricsProvider, PsutilMetricsProvider, ResourceGovernor
from .health import HealthMonitor, SelfHealer, ServiceManager, SystemctlServiceManager
from .supervisor import ProcessInspector, ProcessSupervisor
from .utils import JsonLinesLog, PeriodicTask, TargetLocks, read_json

logger = logging.getLogger('noxwatch.agent')

SHUTDOWN_ALERT_TIMEOUT = 5.0


def reset_request_path(config: AgentConfig):
    return config.state_dir / 'reset-request.json'


class Agent:
    """
    The running agent.

    Usage:
        agent = Agent(AgentConfig.load())
        asyncio.run(agent.run())
    """

    def __init__(
        self,
        config: AgentConfig,
        sink: Optional[AlertSink] = None,
        provider: Optional[MetricsProvider] = None,
        service_manager: Optional[ServiceManager] = None,
        inspector: Optional[ProcessInspector] = None,
    ):
        self.config = config
        self.locks = TargetLocks()
        self.sink = sink or AlertDispatcher(
            webhooks=list(config.alerts.webhooks),
            agent_id=config.alerts.agent_id,
            timeout=config.alerts.timeout,
            max_retries=config.alerts.max_retries,
            retry_delay=config.alerts.retry_delay,
            failure_alert_threshold=config.alerts.failure_alert_threshold,
        )
        self.inspector = inspector or ProcessInspector()
        # Separate providers: each keeps its own CPU baseline
        self.provider = provider or PsutilMetricsProvider(config.governor.disk_path)
        self.health_provider = provider or PsutilMetricsProvider(config.governor.disk_path)
        self.service_manager = service_manager or SystemctlServiceManager(
            timeout=config.health.probe_timeout
        )

        sup = config.supervisor
        self.supervisor = ProcessSupervisor(
            sup.processes,
            self.sink,
            policy=sup.policy,
            locks=self.locks,
            inspector=self.inspector,
            state_path=config.supervisor_state_path,
            grace_period=sup.grace_period,
            stagger=sup.stagger,
            status_interval=sup.status_interval,
        )

        gov = config.governor
        self.governor = ResourceGovernor(
            self.provider,
            self.sink,
            thresholds=gov.thresholds,
            status_interval=gov.status_interval,
            notify_recovery=gov.notify_recovery,
        )

        self.monitor = HealthMonitor(
            config.health,
            self.health_provider,
            self.service_manager,
            inspector=self.inspector,
            supervisor=self.supervisor,
            report_path=config.health_report_path,
            heartbeat_path=config.heartbeat_path,
        )
        self.healer = SelfHealer(
            config.self_heal,
            self.service_manager,
            self.sink,
            self.locks,
            audit_log=JsonLinesLog(config.heal_log_path, config.heal_log_max_entries),
            supervisor=self.supervisor,
            inspector=self.inspector,
            known_services=config.health.services,
        )

        self.loops: List[PeriodicTask] = [
            PeriodicTask('supervisor', sup.poll_interval, self.supervisor.police, run_immediately=False),
            PeriodicTask('governor', gov.interval, self.governor.tick),
            PeriodicTask('health', config.health.check_interval, self.health_cycle),
            PeriodicTask('heartbeat', config.health.heartbeat_interval, self.monitor.heartbeat),
        ]

        self._stop_event = asyncio.Event()
        self._background: set = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def health_cycle(self):
        """One deep health check followed by remediation."""
        report = await self.monitor.check()
        await self.healer.handle_report(report)

    async def run(self):
        """Run until stop() is called or a shutdown signal arrives."""
        self.config.state_dir.mkdir(parents=True, exist_ok=True)
        self._write_pid()
        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)

        try:
            logger.info(
                f"noxwatch starting (pid {os.getpid()}, "
                f"{len(self.config.supervisor.processes)} supervised process(es))"
            )
            await self.supervisor.start_all()

            runners = [asyncio.create_task(task.run(self._stop_event)) for task in self.loops]
            self.sink.notify('AGENT', 'noxwatch started', f"Supervising {self.supervisor.critical_names()}",
                             Severity.INFO)

            await self._stop_event.wait()
            logger.info("Shutdown requested, waiting for loops to finish")
            await asyncio.gather(*runners, return_exceptions=True)
        finally:
            await self.supervisor.stop()
            if self._background:
                await asyncio.gather(*self._background, return_exceptions=True)
            self.sink.notify('AGENT', 'noxwatch stopped', 'Agent shut down cleanly', Severity.INFO)
            close = getattr(self.sink, 'close', None)
            if close is not None:
                await close(timeout=SHUTDOWN_ALERT_TIMEOUT)
            self._remove_signal_handlers(loop)
            self._remove_pid()
            logger.info("noxwatch stopped")

    def stop(self):
        if not self._stop_event.is_set():
            logger.info("Stop requested")
            self._stop_event.set()

    def request_reset(self):
        """Reset failed processes, optionally limited by a reset request file."""
        request = read_json(reset_request_path(self.config)) or {}
        try:
            reset_request_path(self.config).unlink()
        except FileNotFoundError:
            pass
        name = request.get('name') if isinstance(request, dict) else None
        logger.info(f"Reset requested for {name or 'all processes'}")

        task = asyncio.ensure_future(self.supervisor.reset(name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.stop)
        loop.add_signal_handler(signal.SIGUSR1, self.request_reset)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGUSR1):
            loop.remove_signal_handler(sig)

    def _write_pid(self):
        self.config.pid_path.write_text(f"{os.getpid()}\n")

    def _remove_pid(self):
        try:
            if self.config.pid_path.read_text().strip() == str(os.getpid()):
                self.config.pid_path.unlink()
        except OSError:
            pass

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            'supervisor': self.supervisor.get_stats(),
            'governor': self.governor.get_stats(),
            'health': self.monitor.get_stats(),
            'self_heal': self.healer.get_stats(),
            'loops': {task.name: task.get_stats() for task in self.loops},
            'locks_held': self.locks.held_targets(),
        }
        sink_stats = getattr(self.sink, 'get_stats', None)
        if sink_stats is not None:
            stats['alerts'] = sink_stats()
        return stats
