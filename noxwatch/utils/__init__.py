"""
Noxwatch shared utilities: per-target locks, periodic ticks, state files.
"""

from .locks import TargetLocks
from .periodic import PeriodicTask
from .state_files import JsonLinesLog, read_json, write_json_atomic

__all__ = [
    'TargetLocks',
    'PeriodicTask',
    'JsonLinesLog',
    'read_json',
    'write_json_atomic',
]
