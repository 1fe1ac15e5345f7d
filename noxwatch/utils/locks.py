#!/usr/bin/env python3
"""
Noxwatch Target Locks

Per-target serialization tokens. Every mutating action on a named target
(process restart, service restart, kill) runs while holding the token for
that name, so two components can never act on the same target at once.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List

logger = logging.getLogger('noxwatch.locks')


class TargetLocks:
    """
    Registry of one asyncio.Lock per target name.

    Locks are created lazily and never held across ticks. Callers must
    re-check the target state after acquiring, since another holder may
    already have acted.

    Usage:
        locks = TargetLocks()
        async with locks.hold('noxhime-core', holder='supervisor'):
            ...
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, str] = {}

    def _lock_for(self, target: str) -> asyncio.Lock:
        lock = self._locks.get(target)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[target] = lock
        return lock

    @asynccontextmanager
    async def hold(self, target: str, holder: str = '') -> AsyncIterator[None]:
        """Acquire the token for a target for the duration of the block."""
        lock = self._lock_for(target)
        if lock.locked():
            logger.debug(
                f"[{target}] waiting for {self._holders.get(target, 'unknown')} "
                f"(requested by {holder or 'unknown'})"
            )
        async with lock:
            self._holders[target] = holder
            try:
                yield
            finally:
                self._holders.pop(target, None)

    def is_held(self, target: str) -> bool:
        lock = self._locks.get(target)
        return bool(lock and lock.locked())

    def holder(self, target: str) -> str:
        return self._holders.get(target, '')

    def held_targets(self) -> List[str]:
        return sorted(name for name, lock in self._locks.items() if lock.locked())
