#!/usr/bin/env python3
"""
Noxwatch Service Manager & Security Probe

Thin wrappers around external commands (systemctl, ufw, fail2ban-client).
Every command runs as an asyncio subprocess with a hard timeout; a command
that times out or cannot be executed counts as a failed result.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

logger = logging.getLogger('noxwatch.health.services')

DEFAULT_COMMAND_TIMEOUT = 10.0


@dataclass
class CommandResult:
    """Outcome of one external command."""
    returncode: Optional[int]
    output: str = ''
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


async def run_command(argv: Sequence[str], timeout: float = DEFAULT_COMMAND_TIMEOUT) -> CommandResult:
    """Run a command, capturing combined output, killed after timeout seconds."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.debug(f"Cannot run {argv[0]}: {e}")
        return CommandResult(returncode=None, error=str(e))

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning(f"Command timed out after {timeout}s: {' '.join(argv)}")
        return CommandResult(returncode=None, timed_out=True, error=f'timed out after {timeout}s')

    return CommandResult(
        returncode=proc.returncode,
        output=stdout.decode(errors='replace').strip() if stdout else '',
    )


class ServiceManager(ABC):
    """OS service manager boundary."""

    @abstractmethod
    async def is_active(self, name: str) -> bool:
        """True if the service is currently active."""

    @abstractmethod
    async def restart(self, name: str) -> Tuple[bool, str]:
        """Restart a service. Returns (success, output)."""


class SystemctlServiceManager(ServiceManager):
    """ServiceManager backed by systemd's systemctl."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT, systemctl: str = 'systemctl'):
        self.timeout = timeout
        self.systemctl = systemctl

    async def is_active(self, name: str) -> bool:
        result = await run_command([self.systemctl, 'is-active', name], self.timeout)
        return result.ok and result.output.splitlines()[:1] == ['active']

    async def restart(self, name: str) -> Tuple[bool, str]:
        result = await run_command([self.systemctl, 'restart', name], self.timeout)
        if result.ok:
            return True, result.output or f'{name} restarted'
        return False, result.error or result.output or f'exit code {result.returncode}'


@dataclass
class SecurityStatus:
    firewall: bool = False
    intrusion_prevention: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            'firewall': self.firewall,
            'intrusion_prevention': self.intrusion_prevention,
        }


class SecurityProbe:
    """
    Checks that the host firewall and intrusion-prevention service are up.

    A check passes when the command succeeds and its output contains the
    expected marker text.
    """

    def __init__(
        self,
        firewall_command: Sequence[str] = ('ufw', 'status'),
        firewall_marker: str = 'Status: active',
        ips_command: Sequence[str] = ('fail2ban-client', 'status'),
        ips_marker: str = 'Number of jail:',
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.firewall_command = tuple(firewall_command)
        self.firewall_marker = firewall_marker
        self.ips_command = tuple(ips_command)
        self.ips_marker = ips_marker
        self.timeout = timeout

    async def _marker_present(self, argv: Sequence[str], marker: str) -> bool:
        result = await run_command(argv, self.timeout)
        return result.ok and marker in result.output

    async def check(self) -> SecurityStatus:
        firewall, ips = await asyncio.gather(
            self._marker_present(self.firewall_command, self.firewall_marker),
            self._marker_present(self.ips_command, self.ips_marker),
        )
        return SecurityStatus(firewall=firewall, intrusion_prevention=ips)
