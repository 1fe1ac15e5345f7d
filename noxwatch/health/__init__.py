"""
Noxwatch Health Monitoring & Self-Healing

Deep health checks for services, critical processes, resources and the
security surface, with automated remediation.

Features:
- Service checks through the OS service manager (systemctl)
- Critical process liveness (supervised roster and named host processes)
- Firewall / intrusion-prevention status
- Heartbeat marker file
- Self-healing: service restarts, cache drops, log cleanup, runaway kills
- Append-only, rotated self-healing audit log
"""

from .monitor import (
    HealthConfig,
    HealthIssue,
    HealthMonitor,
    HealthReport,
    HealthStatus,
    ProcessHealth,
)
from .self_heal import (
    HealingAction,
    SelfHealConfig,
    SelfHealer,
)
from .services import (
    CommandResult,
    SecurityProbe,
    SecurityStatus,
    ServiceManager,
    SystemctlServiceManager,
    run_command,
)

__all__ = [
    # Monitor
    'HealthConfig',
    'HealthIssue',
    'HealthMonitor',
    'HealthReport',
    'HealthStatus',
    'ProcessHealth',
    # Self-heal
    'HealingAction',
    'SelfHealConfig',
    'SelfHealer',
    # Services
    'CommandResult',
    'SecurityProbe',
    'SecurityStatus',
    'ServiceManager',
    'SystemctlServiceManager',
    'run_command',
]
