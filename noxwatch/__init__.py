"""
Noxwatch - supervision and self-healing agent for protected hosts.

Keeps a roster of critical processes alive, watches host resource pressure,
and repairs common failures (stopped services, full disks, memory pressure,
runaway processes) without operator involvement.
"""

__version__ = '0.3.0'
