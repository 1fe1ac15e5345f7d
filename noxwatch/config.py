#!/usr/bin/env python3
"""
Noxwatch Configuration

One YAML document, loaded once at startup. Every section is optional and
falls back to safe defaults.

Environment variables:
  NOXWATCH_CONFIG      - Config file path (default: /etc/noxwatch/noxwatch.yaml)
  NOXWATCH_STATE_DIR   - Overrides state_dir
  NOXWATCH_LOG_LEVEL   - Overrides logging.level
  ALERT_WEBHOOK_URL    - Adds a webhook target
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .alerts import WebhookConfig
from .governor import ResourceThresholds
from .health import HealthConfig, SelfHealConfig
from .supervisor import ProcessSpec, RestartPolicy

logger = logging.getLogger('noxwatch.config')

DEFAULT_CONFIG_PATH = '/etc/noxwatch/noxwatch.yaml'
DEFAULT_STATE_DIR = '/var/lib/noxwatch'


class ConfigError(Exception):
    """Configuration file missing, unreadable or invalid."""


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    file: Optional[str] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'LoggingConfig':
        data = data or {}
        level = str(data.get('level', 'INFO')).upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"invalid log level {level!r}")
        return cls(
            level=level,
            file=data.get('file'),
            max_bytes=int(data.get('max_bytes', 10 * 1024 * 1024)),
            backup_count=int(data.get('backup_count', 5)),
        )


@dataclass
class SupervisorConfig:
    poll_interval: float = 15.0
    grace_period: float = 10.0
    stagger: float = 2.0
    status_interval: float = 300.0
    policy: RestartPolicy = field(default_factory=RestartPolicy)
    processes: List[ProcessSpec] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SupervisorConfig':
        data = data or {}
        specs = [ProcessSpec.from_dict(entry) for entry in data.get('processes') or []]
        names = [spec.name for spec in specs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate process name(s): {', '.join(duplicates)}")
        return cls(
            poll_interval=float(data.get('poll_interval', 15)),
            grace_period=float(data.get('grace_period', 10)),
            stagger=float(data.get('stagger', 2)),
            status_interval=float(data.get('status_interval', 300)),
            policy=RestartPolicy.from_dict(data.get('restart_policy')),
            processes=specs,
        )


@dataclass
class GovernorConfig:
    interval: float = 30.0
    status_interval: float = 600.0
    notify_recovery: bool = False
    disk_path: str = '/'
    thresholds: ResourceThresholds = field(default_factory=ResourceThresholds)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'GovernorConfig':
        data = data or {}
        return cls(
            interval=float(data.get('interval', 30)),
            status_interval=float(data.get('status_interval', 600)),
            notify_recovery=bool(data.get('notify_recovery', False)),
            disk_path=str(data.get('disk_path', '/')),
            thresholds=ResourceThresholds.from_dict(data.get('thresholds')),
        )


@dataclass
class AlertsConfig:
    agent_id: Optional[str] = None
    webhooks: List[WebhookConfig] = field(default_factory=list)
    timeout: float = 10.0
    max_retries: int = 3
    retry_delay: float = 1.0
    failure_alert_threshold: int = 3

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AlertsConfig':
        data = data or {}
        return cls(
            agent_id=data.get('agent_id'),
            webhooks=[WebhookConfig.from_dict(w) for w in data.get('webhooks') or []],
            timeout=float(data.get('timeout', 10)),
            max_retries=int(data.get('max_retries', 3)),
            retry_delay=float(data.get('retry_delay', 1)),
            failure_alert_threshold=int(data.get('failure_alert_threshold', 3)),
        )


@dataclass
class AgentConfig:
    """Complete agent configuration."""
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    heal_log_max_entries: int = 1000
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    governor: GovernorConfig = field(default_factory=GovernorConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    self_heal: SelfHealConfig = field(default_factory=SelfHealConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    source: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AgentConfig':
        data = data or {}
        return cls(
            state_dir=Path(data.get('state_dir', DEFAULT_STATE_DIR)),
            heal_log_max_entries=int(data.get('heal_log_max_entries', 1000)),
            logging=LoggingConfig.from_dict(data.get('logging')),
            supervisor=SupervisorConfig.from_dict(data.get('supervisor')),
            governor=GovernorConfig.from_dict(data.get('governor')),
            health=HealthConfig.from_dict(data.get('health')),
            self_heal=SelfHealConfig.from_dict(data.get('self_heal')),
            alerts=AlertsConfig.from_dict(data.get('alerts')),
        )

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'AgentConfig':
        """
        Load configuration from YAML.

        An explicitly named file (argument or NOXWATCH_CONFIG) must exist;
        a missing default file means built-in defaults.
        """
        explicit = path or os.environ.get('NOXWATCH_CONFIG')
        config_path = Path(explicit or DEFAULT_CONFIG_PATH)

        if not config_path.exists():
            if explicit:
                raise ConfigError(f"Config file not found: {config_path}")
            logger.info(f"No config file at {config_path}, using defaults")
            config = cls()
        else:
            try:
                with open(config_path, 'r') as f:
                    data = yaml.safe_load(f)
            except OSError as e:
                raise ConfigError(f"Cannot read {config_path}: {e}") from e
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

            if data is not None and not isinstance(data, dict):
                raise ConfigError(f"{config_path}: top level must be a mapping")
            try:
                config = cls.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"{config_path}: {e}") from e
            config.source = str(config_path)

        config.apply_env()
        return config

    def apply_env(self):
        state_dir = os.environ.get('NOXWATCH_STATE_DIR')
        if state_dir:
            self.state_dir = Path(state_dir)

        level = os.environ.get('NOXWATCH_LOG_LEVEL')
        if level:
            try:
                self.logging.level = LoggingConfig.from_dict({'level': level}).level
            except ValueError as e:
                raise ConfigError(f"NOXWATCH_LOG_LEVEL: {e}") from e

        url = os.environ.get('ALERT_WEBHOOK_URL')
        if url and all(w.url != url for w in self.alerts.webhooks):
            self.alerts.webhooks.append(WebhookConfig(url=url))

    # === State files ===

    @property
    def heartbeat_path(self) -> Path:
        return self.state_dir / 'heartbeat.json'

    @property
    def health_report_path(self) -> Path:
        return self.state_dir / 'health-report.json'

    @property
    def heal_log_path(self) -> Path:
        return self.state_dir / 'self-healing.log'

    @property
    def supervisor_state_path(self) -> Path:
        return self.state_dir / 'supervisor-state.json'

    @property
    def pid_path(self) -> Path:
        return self.state_dir / 'noxwatch.pid'

    def summary(self) -> Dict[str, Any]:
        return {
            'source': self.source or '(defaults)',
            'state_dir': str(self.state_dir),
            'processes': [spec.name for spec in self.supervisor.processes],
            'services': list(self.health.services),
            'external_processes': list(self.health.processes),
            'webhooks': len(self.alerts.webhooks),
            'intervals': {
                'supervisor_poll': self.supervisor.poll_interval,
                'governor': self.governor.interval,
                'health': self.health.check_interval,
                'heartbeat': self.health.heartbeat_interval,
            },
        }
