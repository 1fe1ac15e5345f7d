#!/usr/bin/env python3
"""
Noxwatch Process Supervisor

Keeps a fixed roster of long-running processes alive:
- Spawns each process in its own session with stdin closed and its output
  logged line by line under 'noxwatch.proc.<name>'
- Watches every instance for exit and restarts critical ones within a
  bounded RestartPolicy budget; an exhausted budget marks the process
  failed until an explicit reset
- Polices per-process memory and CPU; a memory breach triggers a
  proactive restart that does not count against the crash budget

All state changes for a process happen while holding its TargetLocks
token, shared with the self-heal engine.
"""

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..alerts import AlertSink, Severity
from ..governor.metrics import format_bytes
from ..utils import TargetLocks, write_json_atomic
from .inspector import ProcessInspector
from .models import ProcessSpec, ProcessState, ProcessStatus, RestartPolicy, utc_now

logger = logging.getLogger('noxwatch.supervisor')

HOLDER = 'supervisor'
OUTPUT_DRAIN_TIMEOUT = 1.0


class SpawnError(Exception):
    """A process could not be started (missing binary, permission denied, ...)."""


class ProcessSupervisor:
    """
    Supervisor for a static roster of ProcessSpec entries.

    Usage:
        supervisor = ProcessSupervisor(specs, sink)
        await supervisor.start_all()
        await supervisor.police()       # once per poll interval
        await supervisor.stop()
    """

    def __init__(
        self,
        specs: Iterable[ProcessSpec],
        sink: AlertSink,
        policy: Optional[RestartPolicy] = None,
        locks: Optional[TargetLocks] = None,
        inspector: Optional[ProcessInspector] = None,
        state_path: Optional[Path] = None,
        grace_period: float = 10.0,
        stagger: float = 0.0,
        status_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink
        self.policy = policy or RestartPolicy()
        self.locks = locks or TargetLocks()
        self.inspector = inspector or ProcessInspector()
        self.state_path = Path(state_path) if state_path else None
        self.grace_period = grace_period
        self.stagger = stagger
        self.status_interval = status_interval
        self._clock = clock

        self._specs: Dict[str, ProcessSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ValueError(f"Duplicate process name: {spec.name}")
            self._specs[spec.name] = spec

        self._states: Dict[str, ProcessState] = {
            name: ProcessState(spec=spec) for name, spec in self._specs.items()
        }
        self._procs: Dict[str, asyncio.subprocess.Process] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._persist_lock = asyncio.Lock()
        self._stopping = False
        self._last_status_at: Optional[float] = None

        self._stats = {
            'spawns': 0,
            'spawn_failures': 0,
            'crash_restarts': 0,
            'resource_restarts': 0,
            'requested_restarts': 0,
            'failures': 0,
            'resets': 0,
        }

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_all(self):
        """Start every roster entry, staggered by self.stagger seconds."""
        await self._persist()
        for i, name in enumerate(self._specs):
            if i and self.stagger > 0:
                await self._sleep(self.stagger)
            if self._stopping:
                return
            await self.start(name)
        logger.info(f"Supervisor started {len(self._specs)} process(es)")

    async def start(self, name: str) -> bool:
        """Start one process if it is not already alive."""
        spec = self._specs.get(name)
        if spec is None:
            logger.warning(f"start requested for unknown process {name!r}, ignoring")
            return False

        async with self.locks.hold(name, HOLDER):
            state = self._states[name]
            if state.alive or state.status == ProcessStatus.RESTARTING:
                return False
            try:
                await self._spawn(spec)
                return True
            except SpawnError as e:
                logger.error(f"[{name}] failed to start: {e}")
                if spec.critical:
                    self._spawn_task(self._recover_locked(name), f'recover-{name}')
                return False

    async def _spawn(self, spec: ProcessSpec):
        """Spawn a new instance. Caller holds the target lock."""
        previous = self._states[spec.name]
        state = previous.successor()
        state.start_attempts += 1
        self._states[spec.name] = state
        self._stats['spawns'] += 1

        env = dict(os.environ)
        env.update(spec.environment())

        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            self._stats['spawn_failures'] += 1
            state.status = ProcessStatus.EXITED
            state.last_error = str(e)
            await self._persist()
            raise SpawnError(str(e)) from e

        state.pid = proc.pid
        state.started_at = utc_now()
        state.status = ProcessStatus.RUNNING
        state.healthy = True
        self._procs[spec.name] = proc

        pump = self._spawn_task(self._pump_output(spec.name, proc.stdout), f'output-{spec.name}')
        self._spawn_task(self._watch(spec.name, proc, pump), f'watch-{spec.name}')

        logger.info(f"[{spec.name}] started (pid {proc.pid}, attempt {state.start_attempts})")
        await self._persist()

    def _spawn_task(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pump_output(self, name: str, stream: Optional[asyncio.StreamReader]):
        if stream is None:
            return
        proc_logger = logging.getLogger(f'noxwatch.proc.{name}')
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                proc_logger.warning("output line exceeded buffer limit, dropped")
                continue
            if not line:
                break
            proc_logger.info(line.decode(errors='replace').rstrip())

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------

    async def _watch(self, name: str, proc: asyncio.subprocess.Process, pump: asyncio.Task):
        returncode = await proc.wait()
        # Drain remaining output; a forked grandchild may keep the pipe open
        await asyncio.wait([pump], timeout=OUTPUT_DRAIN_TIMEOUT)

        async with self.locks.hold(name, HOLDER):
            # A restart or stop already replaced or released this instance
            if self._procs.get(name) is not proc:
                return
            del self._procs[name]
            self.inspector.forget(proc.pid)

            state = self._states[name]
            state.status = ProcessStatus.EXITED
            state.healthy = False
            state.exit_code = returncode
            state.memory_bytes = None
            state.cpu_percent = None

            if self._stopping:
                return

            if not state.spec.critical:
                logger.warning(f"[{name}] exited with code {returncode} (non-critical, left down)")
                await self._persist()
                return

            logger.warning(f"[{name}] exited with code {returncode}")
            self._stats['crash_restarts'] += 1
            await self._recover(name)

    async def _recover_locked(self, name: str):
        async with self.locks.hold(name, HOLDER):
            state = self._states[name]
            if state.alive or state.status == ProcessStatus.FAILED:
                return
            await self._recover(name)

    async def _recover(self, name: str):
        """
        Restart a process within its budget. Caller holds the target lock.

        Spawn failures go around the loop again and consume budget like
        a crash would.
        """
        spec = self._specs[name]
        policy = spec.policy or self.policy

        while not self._stopping:
            state = self._states[name]
            now = self._clock()
            next_count = policy.next_restart_count(state.restart_count, state.last_restart_at, now)
            if next_count is None:
                await self._mark_failed(state, policy)
                return

            state.mark_restart(next_count, now)
            state.status = ProcessStatus.RESTARTING
            await self._persist()
            logger.info(
                f"[{name}] restarting in {policy.restart_delay}s "
                f"(attempt {next_count}/{policy.max_restarts})"
            )

            await self._sleep(policy.restart_delay)
            if self._stopping:
                return

            try:
                await self._spawn(spec)
                return
            except SpawnError as e:
                logger.error(f"[{name}] restart failed: {e}")

    async def _mark_failed(self, state: ProcessState, policy: RestartPolicy):
        state.status = ProcessStatus.FAILED
        state.healthy = False
        self._stats['failures'] += 1
        await self._persist()

        message = (
            f"{state.name} exceeded {policy.max_restarts} restarts within "
            f"{policy.restart_window:.0f}s after {state.start_attempts} start attempts; "
            f"automatic restarts disabled until reset"
        )
        logger.critical(f"[{state.name}] {message}")
        self.sink.notify('PROCESS', f"{state.name} failed", message, Severity.CRITICAL)

    # ------------------------------------------------------------------
    # Resource policing
    # ------------------------------------------------------------------

    async def police(self):
        """Sample every live process and act on memory/CPU limits."""
        loop = asyncio.get_running_loop()
        for name in list(self._specs):
            state = self._states[name]
            if state.status != ProcessStatus.RUNNING or state.pid is None:
                continue

            usage = await loop.run_in_executor(None, self.inspector.inspect, state.pid)
            if usage is None:
                # Gone; the exit watcher handles it
                continue
            state.memory_bytes = usage.memory_bytes
            state.cpu_percent = usage.cpu_percent

            spec = state.spec
            if spec.max_memory_bytes and usage.memory_bytes > spec.max_memory_bytes:
                reason = (
                    f"memory {format_bytes(usage.memory_bytes)} over limit "
                    f"{format_bytes(spec.max_memory_bytes)}"
                )
                logger.warning(f"[{name}] {reason}, restarting")
                await self._resource_restart(name, reason)
            elif spec.max_cpu_percent and usage.cpu_percent > spec.max_cpu_percent:
                logger.warning(
                    f"[{name}] CPU {usage.cpu_percent:.1f}% over limit {spec.max_cpu_percent:.1f}%"
                )

        now = self._clock()
        if self._last_status_at is None or now - self._last_status_at >= self.status_interval:
            self._last_status_at = now
            self._log_status()

    async def _resource_restart(self, name: str, reason: str) -> bool:
        async with self.locks.hold(name, HOLDER):
            state = self._states[name]
            proc = self._procs.get(name)
            if state.status != ProcessStatus.RUNNING or proc is None or proc.returncode is not None:
                return False

            state.status = ProcessStatus.RESTARTING
            del self._procs[name]
            await self._terminate(name, proc)
            self.inspector.forget(proc.pid)

            state.resource_restarts += 1
            state.exit_code = proc.returncode
            state.last_error = reason
            self._stats['resource_restarts'] += 1

            try:
                await self._spawn(state.spec)
                return True
            except SpawnError as e:
                logger.error(f"[{name}] restart after resource breach failed: {e}")
                if state.spec.critical:
                    await self._recover(name)
                return False

    def _log_status(self):
        parts = []
        for name, state in self._states.items():
            part = f"{name}={state.status.value}"
            if state.memory_bytes is not None:
                part += f" ({format_bytes(state.memory_bytes)}, {state.cpu_percent or 0:.1f}% CPU)"
            parts.append(part)
        logger.info(f"Process status: {', '.join(parts) if parts else 'no processes'}")

    # ------------------------------------------------------------------
    # External requests
    # ------------------------------------------------------------------

    async def request_restart(self, name: str, reason: str = '', holder: str = 'health') -> bool:
        """
        Ask the supervisor to bring a process back up.

        No-op if the process is unknown, alive, already restarting or
        failed. Otherwise the restart goes through the normal budget.
        """
        if name not in self._specs:
            logger.warning(f"restart requested for unknown process {name!r}, ignoring")
            return False

        async with self.locks.hold(name, holder):
            state = self._states[name]
            if self._stopping or state.status in (
                ProcessStatus.STARTING,
                ProcessStatus.RUNNING,
                ProcessStatus.RESTARTING,
                ProcessStatus.FAILED,
            ):
                logger.debug(f"[{name}] restart request ignored (status {state.status.value})")
                return False

            logger.info(f"[{name}] restart requested by {holder}{': ' + reason if reason else ''}")
            self._stats['requested_restarts'] += 1
            await self._recover(name)
            return self._states[name].alive

    async def reset(self, name: Optional[str] = None) -> List[str]:
        """
        Clear failed state and restart budgets, then start every target
        that is not running. Returns the names that were started.
        """
        if name is not None and name not in self._specs:
            logger.warning(f"reset requested for unknown process {name!r}, ignoring")
            return []

        started = []
        for target in ([name] if name else list(self._specs)):
            async with self.locks.hold(target, 'reset'):
                state = self._states[target]
                state.reset_budget()
                self._stats['resets'] += 1
                if state.alive or state.status == ProcessStatus.RESTARTING or self._stopping:
                    continue

                logger.info(f"[{target}] reset, starting (was {state.status.value})")
                try:
                    await self._spawn(state.spec)
                    started.append(target)
                except SpawnError as e:
                    logger.error(f"[{target}] failed to start after reset: {e}")
                    if state.spec.critical:
                        await self._recover(target)
                        if self._states[target].alive:
                            started.append(target)
        await self._persist()
        return started

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self):
        """Terminate every managed process and stop restarting."""
        self._stopping = True
        self._stop_event.set()

        async def _stop_one(name: str):
            async with self.locks.hold(name, HOLDER):
                proc = self._procs.pop(name, None)
                state = self._states[name]
                if proc is not None:
                    await self._terminate(name, proc)
                    state.exit_code = proc.returncode
                    self.inspector.forget(proc.pid)
                state.status = ProcessStatus.STOPPED
                state.healthy = False
                state.pid = None

        await asyncio.gather(*(_stop_one(name) for name in self._specs))

        pending = [t for t in self._tasks if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=self.grace_period)
            for task in pending:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        await self._persist()
        logger.info("Supervisor stopped")

    async def _terminate(self, name: str, proc: asyncio.subprocess.Process) -> Optional[int]:
        """SIGTERM the process group, SIGKILL after the grace period."""
        if proc.returncode is not None:
            return proc.returncode

        self._signal_group(proc, signal.SIGTERM)
        try:
            return await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"[{name}] did not exit within {self.grace_period}s, sending SIGKILL")
            self._signal_group(proc, signal.SIGKILL)
            return await proc.wait()

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: int):
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.send_signal(sig)

    async def _sleep(self, delay: float):
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.to_dict() for name, state in self._states.items()}

    def status_of(self, name: str) -> Optional[ProcessStatus]:
        state = self._states.get(name)
        return state.status if state else None

    def is_running(self, name: str) -> bool:
        state = self._states.get(name)
        return bool(state and state.status == ProcessStatus.RUNNING)

    def critical_names(self) -> List[str]:
        return [name for name, spec in self._specs.items() if spec.critical]

    def managed_pids(self) -> Set[int]:
        return {proc.pid for proc in self._procs.values() if proc.returncode is None}

    def pid_of(self, name: str) -> Optional[int]:
        proc = self._procs.get(name)
        return proc.pid if proc is not None and proc.returncode is None else None

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats['processes'] = len(self._specs)
        stats['running'] = sum(1 for s in self._states.values() if s.status == ProcessStatus.RUNNING)
        stats['failed'] = [n for n, s in self._states.items() if s.status == ProcessStatus.FAILED]
        return stats

    async def _persist(self):
        if self.state_path is None:
            return
        data = {
            'updated_at': utc_now(),
            'policy': {
                'max_restarts': self.policy.max_restarts,
                'restart_window': self.policy.restart_window,
                'restart_delay': self.policy.restart_delay,
            },
            'processes': self.snapshot(),
        }
        loop = asyncio.get_running_loop()
        async with self._persist_lock:
            try:
                await loop.run_in_executor(None, write_json_atomic, self.state_path, data)
            except OSError as e:
                logger.warning(f"Failed to write supervisor state {self.state_path}: {e}")
