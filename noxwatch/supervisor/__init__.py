"""
Noxwatch Process Supervisor

Starts, watches, restarts and resource-polices a declared roster of
long-running processes.
"""

from .inspector import ProcessInspector, ProcessUsage
from .models import ProcessSpec, ProcessState, ProcessStatus, RestartPolicy
from .supervisor import ProcessSupervisor, SpawnError

__all__ = [
    'ProcessInspector',
    'ProcessUsage',
    'ProcessSpec',
    'ProcessState',
    'ProcessStatus',
    'RestartPolicy',
    'ProcessSupervisor',
    'SpawnError',
]
