#!/usr/bin/env python3
"""
Noxwatch Supervisor Models

Static process declarations, the restart policy, and the per-instance
runtime record owned by the supervisor.
"""

import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class RestartPolicy:
    """
    Bounded crash-restart budget.

    A process may be restarted max_restarts times within restart_window
    seconds. The count starts over once more than restart_window seconds
    have passed since the last restart.
    """
    max_restarts: int = 5
    restart_window: float = 300.0
    restart_delay: float = 5.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], base: Optional['RestartPolicy'] = None) -> 'RestartPolicy':
        base = base or cls()
        data = data or {}
        return cls(
            max_restarts=int(data.get('max_restarts', base.max_restarts)),
            restart_window=float(data.get('restart_window', base.restart_window)),
            restart_delay=float(data.get('restart_delay', base.restart_delay)),
        )

    def next_restart_count(
        self,
        restart_count: int,
        last_restart_at: Optional[float],
        now: float,
    ) -> Optional[int]:
        """
        Decide whether one more restart is allowed.

        Returns the restart count to record for the new attempt, or None
        when the budget is exhausted and the process must be marked failed.
        """
        if last_restart_at is None or now - last_restart_at > self.restart_window:
            restart_count = 0
        if restart_count < self.max_restarts:
            return restart_count + 1
        return None


@dataclass(frozen=True)
class ProcessSpec:
    """Declaration of one supervised process. Immutable once loaded."""
    name: str
    command: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Tuple[Tuple[str, str], ...] = ()
    critical: bool = True
    max_memory_bytes: Optional[int] = None
    max_cpu_percent: Optional[float] = None
    policy: Optional[RestartPolicy] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessSpec':
        """
        Build a spec from a config mapping.

        'command' may be a single string (split shell-style) or a list.
        Memory limits accept 'max_memory_bytes' or 'max_memory_mb'.
        """
        if not data.get('name'):
            raise ValueError("process entry is missing 'name'")
        if not data.get('command'):
            raise ValueError(f"process {data['name']!r} is missing 'command'")

        command = data['command']
        parts = shlex.split(command) if isinstance(command, str) else [str(c) for c in command]
        args = parts[1:] + [str(a) for a in data.get('args', [])]

        max_memory = data.get('max_memory_bytes')
        if max_memory is None and data.get('max_memory_mb') is not None:
            max_memory = int(float(data['max_memory_mb']) * 1024 * 1024)

        max_cpu = data.get('max_cpu_percent')
        policy = data.get('restart_policy')

        return cls(
            name=str(data['name']),
            command=parts[0],
            args=tuple(args),
            cwd=data.get('cwd'),
            env=tuple(sorted((str(k), str(v)) for k, v in (data.get('env') or {}).items())),
            critical=bool(data.get('critical', True)),
            max_memory_bytes=int(max_memory) if max_memory is not None else None,
            max_cpu_percent=float(max_cpu) if max_cpu is not None else None,
            policy=RestartPolicy.from_dict(policy) if policy else None,
        )

    @property
    def argv(self) -> Tuple[str, ...]:
        return (self.command,) + self.args

    def environment(self) -> Dict[str, str]:
        return dict(self.env)


class ProcessStatus(Enum):
    STARTING = 'starting'
    RUNNING = 'running'
    EXITED = 'exited'
    RESTARTING = 'restarting'
    STOPPED = 'stopped'
    FAILED = 'failed'


@dataclass
class ProcessState:
    """
    Runtime record for one supervised process.

    A fresh record is created on every spawn; the budget counters
    (restart_count, last_restart_at, resource_restarts, start_attempts)
    are carried forward from the previous record.
    """
    spec: ProcessSpec
    status: ProcessStatus = ProcessStatus.STOPPED
    pid: Optional[int] = None
    started_at: Optional[str] = None
    restart_count: int = 0
    last_restart_at: Optional[float] = None  # supervisor clock
    last_restart_time: Optional[str] = None  # wall clock, for display
    healthy: bool = False
    memory_bytes: Optional[int] = None
    cpu_percent: Optional[float] = None
    exit_code: Optional[int] = None
    resource_restarts: int = 0
    start_attempts: int = 0
    last_error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def alive(self) -> bool:
        return self.status in (ProcessStatus.STARTING, ProcessStatus.RUNNING)

    def successor(self) -> 'ProcessState':
        """New record for the next spawn, carrying the budget counters."""
        return ProcessState(
            spec=self.spec,
            status=ProcessStatus.STARTING,
            restart_count=self.restart_count,
            last_restart_at=self.last_restart_at,
            last_restart_time=self.last_restart_time,
            resource_restarts=self.resource_restarts,
            start_attempts=self.start_attempts,
        )

    def mark_restart(self, restart_count: int, now: float):
        self.restart_count = restart_count
        self.last_restart_at = now
        self.last_restart_time = utc_now()

    def reset_budget(self):
        self.restart_count = 0
        self.last_restart_at = None
        self.last_restart_time = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status.value,
            'pid': self.pid,
            'critical': self.spec.critical,
            'started_at': self.started_at,
            'healthy': self.healthy,
            'restart_count': self.restart_count,
            'last_restart_time': self.last_restart_time,
            'resource_restarts': self.resource_restarts,
            'start_attempts': self.start_attempts,
            'memory_bytes': self.memory_bytes,
            'cpu_percent': self.cpu_percent,
            'exit_code': self.exit_code,
            'last_error': self.last_error,
        }


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
