#!/usr/bin/env python3
"""
Noxwatch Process Inspection

Per-PID memory/CPU readings, name lookup and a top-CPU scan, all through
psutil. CPU percentages are deltas since the previous reading of the same
process, so psutil.Process objects are cached between calls.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import psutil

logger = logging.getLogger('noxwatch.inspector')


@dataclass
class ProcessUsage:
    """One reading of a process's resource usage."""
    pid: int
    name: str
    memory_bytes: int
    cpu_percent: float

    def to_dict(self) -> Dict:
        return {
            'pid': self.pid,
            'name': self.name,
            'memory_bytes': self.memory_bytes,
            'cpu_percent': round(self.cpu_percent, 1),
        }


class ProcessInspector:
    """psutil-backed process inspection. Calls block; run them in an executor."""

    def __init__(self):
        self._procs: Dict[int, psutil.Process] = {}

    def _process(self, pid: int) -> psutil.Process:
        proc = self._procs.get(pid)
        if proc is None or not proc.is_running():
            proc = psutil.Process(pid)
            # First cpu_percent() call only primes the counters
            proc.cpu_percent(interval=None)
            self._procs[pid] = proc
        return proc

    def inspect(self, pid: int) -> Optional[ProcessUsage]:
        """Current RSS and CPU usage for a PID, or None if it is gone."""
        try:
            proc = self._process(pid)
            with proc.oneshot():
                return ProcessUsage(
                    pid=pid,
                    name=proc.name(),
                    memory_bytes=proc.memory_info().rss,
                    cpu_percent=proc.cpu_percent(interval=None),
                )
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            self._procs.pop(pid, None)
            return None
        except psutil.AccessDenied:
            logger.debug(f"Access denied inspecting pid {pid}")
            self._procs.pop(pid, None)
            return None

    def pid_exists(self, pid: int) -> bool:
        return psutil.pid_exists(pid)

    def find_by_name(self, name: str) -> List[int]:
        """PIDs whose process name matches exactly."""
        pids = []
        for proc in psutil.process_iter(['pid', 'name']):
            if proc.info['name'] == name:
                pids.append(proc.info['pid'])
        return sorted(pids)

    def top_cpu(self, threshold: float, exclude: Iterable[int] = ()) -> List[ProcessUsage]:
        """
        Processes whose CPU usage since the previous scan is above threshold,
        highest first. The first scan after start reports nothing since all
        counters are freshly primed.
        """
        excluded = set(exclude)
        hot = []
        for proc in psutil.process_iter(['pid', 'name', 'cpu_percent', 'memory_info']):
            info = proc.info
            if info['pid'] in excluded:
                continue
            cpu = info.get('cpu_percent')
            if cpu is None or cpu <= threshold:
                continue
            mem = info.get('memory_info')
            hot.append(ProcessUsage(
                pid=info['pid'],
                name=info.get('name') or '?',
                memory_bytes=mem.rss if mem else 0,
                cpu_percent=cpu,
            ))
        hot.sort(key=lambda u: u.cpu_percent, reverse=True)
        return hot

    def forget(self, pid: int):
        self._procs.pop(pid, None)
