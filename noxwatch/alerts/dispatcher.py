#!/usr/bin/env python3
"""
Noxwatch Alert Dispatcher

The single "notify" capability used by the supervisor, governor and
self-heal engine. Delivery is fire-and-forget: notify() returns at once,
webhook posts run as background tasks with a hard timeout, and failures are
only ever logged locally.

Supported targets: Discord and Slack incoming webhooks, generic JSON webhooks.
"""

import asyncio
import logging
import os
import socket
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Set

import aiohttp

logger = logging.getLogger('noxwatch.alerts.dispatcher')


class Severity(IntEnum):
    """Alert severity levels (higher = more urgent)"""
    DEBUG = 0
    INFO = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5

    @classmethod
    def parse(cls, value: Any) -> 'Severity':
        """Accept a Severity, its name (any case) or its integer level."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown severity: {value!r}")


_LOG_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


def build_alert(category: str, title: str, body: str, severity: Severity) -> Dict[str, Any]:
    """Build the alert record handed to formatters."""
    return {
        'category': category,
        'title': title,
        'body': body,
        'severity': severity.name,
        'severity_level': int(severity),
        'timestamp': time.time(),
    }


class AlertSink(ABC):
    """Anything that can receive agent notifications."""

    @abstractmethod
    def notify(self, category: str, title: str, body: str,
               severity: Severity = Severity.MEDIUM):
        """Hand off a notification. Must never raise and never block."""


class LogSink(AlertSink):
    """Sink that only writes notifications to the local log."""

    def __init__(self, logger_name: str = 'noxwatch.alerts'):
        self._logger = logging.getLogger(logger_name)
        self.sent: int = 0

    def notify(self, category: str, title: str, body: str,
               severity: Severity = Severity.MEDIUM):
        severity = Severity.parse(severity)
        self._logger.log(
            _LOG_LEVELS[severity],
            f"ALERT [{category}] {title}: {body}",
        )
        self.sent += 1


class WebhookType(Enum):
    """Supported webhook types."""
    DISCORD = "discord"
    SLACK = "slack"
    GENERIC = "generic"


@dataclass
class WebhookConfig:
    """
    Webhook configuration.

    Attributes:
        url: Webhook URL
        webhook_type: Type of webhook (auto-detected if not specified)
        min_severity: Minimum severity to send to this webhook
        headers: Custom headers to include
        enabled: Whether this webhook is active
    """
    url: str
    webhook_type: Optional[WebhookType] = None
    min_severity: Severity = Severity.LOW
    headers: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True

    def __post_init__(self):
        """Auto-detect webhook type from URL if not specified."""
        if self.webhook_type is None:
            self.webhook_type = self._detect_type()
        elif isinstance(self.webhook_type, str):
            self.webhook_type = WebhookType(self.webhook_type.lower())
        self.min_severity = Severity.parse(self.min_severity)

    def _detect_type(self) -> WebhookType:
        url_lower = self.url.lower()
        if 'discord.com/api/webhooks' in url_lower or 'discordapp.com/api/webhooks' in url_lower:
            return WebhookType.DISCORD
        if 'hooks.slack.com' in url_lower:
            return WebhookType.SLACK
        return WebhookType.GENERIC

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WebhookConfig':
        return cls(
            url=data['url'],
            webhook_type=data.get('type'),
            min_severity=data.get('min_severity', 'LOW'),
            headers=dict(data.get('headers') or {}),
            enabled=data.get('enabled', True),
        )


# === Webhook Formatters ===

_DISCORD_COLORS = {
    'CRITICAL': 0xFF0000,
    'HIGH': 0xFF9900,
    'MEDIUM': 0xFFCC00,
    'LOW': 0x3498DB,
    'INFO': 0x3498DB,
    'DEBUG': 0x999999,
}

_SLACK_COLORS = {
    'CRITICAL': '#FF0000',
    'HIGH': '#FF6600',
    'MEDIUM': '#FFCC00',
    'LOW': '#0066FF',
    'INFO': '#0066FF',
    'DEBUG': '#999999',
}


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def format_discord(alert: Dict[str, Any], agent_id: str) -> Dict[str, Any]:
    """Format alert for a Discord webhook (embed format)."""
    severity = alert.get('severity', 'INFO')
    payload: Dict[str, Any] = {
        "embeds": [
            {
                "title": f"[{alert.get('category', 'ALERT')}] {alert.get('title', '')}",
                "description": alert.get('body', '')[:4000],
                "color": _DISCORD_COLORS.get(severity, 0x999999),
                "fields": [
                    {"name": "Host", "value": agent_id, "inline": True},
                    {"name": "Severity", "value": severity, "inline": True},
                ],
                "footer": {"text": "Noxwatch"},
                "timestamp": _iso(alert.get('timestamp', time.time())),
            }
        ]
    }
    if severity == 'CRITICAL':
        payload["content"] = "@here system requires immediate attention"
    return payload


def format_slack(alert: Dict[str, Any], agent_id: str) -> Dict[str, Any]:
    """Format alert for a Slack webhook (attachment format)."""
    severity = alert.get('severity', 'INFO')
    return {
        "attachments": [
            {
                "color": _SLACK_COLORS.get(severity, '#999999'),
                "title": f"[{alert.get('category', 'ALERT')}] {alert.get('title', '')}",
                "text": alert.get('body', ''),
                "fields": [
                    {"title": "Host", "value": agent_id, "short": True},
                    {"title": "Severity", "value": severity, "short": True},
                ],
                "footer": "Noxwatch",
                "ts": int(alert.get('timestamp', time.time())),
            }
        ]
    }


def format_generic(alert: Dict[str, Any], agent_id: str) -> Dict[str, Any]:
    """Format alert for a generic JSON webhook."""
    return {
        "agent_id": agent_id,
        "alert": alert,
        "timestamp": _iso(alert.get('timestamp', time.time())),
    }


# === Alert Dispatcher ===

class AlertDispatcher(AlertSink):
    """
    Dispatches notifications to configured webhooks.

    Features:
    - Multiple webhook targets with per-target minimum severity
    - Background sending on the running event loop
    - Per-request timeout and retry with exponential backoff
    - Log-only degradation when delivery keeps failing
    """

    def __init__(
        self,
        webhooks: Optional[List[WebhookConfig]] = None,
        agent_id: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        failure_alert_threshold: int = 3,
    ):
        """
        Initialize the dispatcher.

        Args:
            webhooks: List of webhook configurations
            agent_id: Identifier for this host, shown in every alert
            timeout: Total timeout per HTTP request in seconds
            max_retries: Maximum attempts per webhook
            retry_delay: Initial retry delay (doubles each retry)
            failure_alert_threshold: Consecutive failed deliveries before the
                sink is reported as degraded
        """
        self.webhooks: List[WebhookConfig] = webhooks or []
        self.agent_id = agent_id or os.environ.get('NOXWATCH_AGENT_ID') or socket.gethostname()
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.failure_alert_threshold = failure_alert_threshold

        if not self.webhooks:
            self._load_env_webhooks()

        self._log_sink = LogSink('noxwatch.alerts')
        self._pending: Set[asyncio.Task] = set()
        self._consecutive_failures = 0
        self._degraded = False
        self._stats = {
            'alerts_notified': 0,
            'alerts_sent': 0,
            'alerts_failed': 0,
            'alerts_log_only': 0,
        }

    def _load_env_webhooks(self):
        """Load webhook config from environment variables."""
        url = os.environ.get('ALERT_WEBHOOK_URL')
        if url:
            self.webhooks.append(WebhookConfig(url=url))

    # === AlertSink ===

    def notify(self, category: str, title: str, body: str,
               severity: Severity = Severity.MEDIUM):
        """
        Record and dispatch a notification without waiting for delivery.

        The alert is always written to the local log first, so nothing is
        lost when no webhook is configured or delivery fails.
        """
        severity = Severity.parse(severity)
        self._stats['alerts_notified'] += 1
        self._log_sink.notify(category, title, body, severity)

        alert = build_alert(category, title, body, severity)
        targets = [
            w for w in self.webhooks
            if w.enabled and severity >= w.min_severity
        ]
        if not targets:
            self._stats['alerts_log_only'] += 1
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, alert '{title}' kept log-only")
            self._stats['alerts_log_only'] += 1
            return

        task = loop.create_task(self.deliver(alert, targets))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # === Delivery ===

    async def deliver(self, alert: Dict[str, Any],
                      targets: Optional[List[WebhookConfig]] = None) -> bool:
        """Send one alert to every target. Returns True if any target accepted it."""
        if targets is None:
            severity = Severity.parse(alert.get('severity', 'INFO'))
            targets = [w for w in self.webhooks if w.enabled and severity >= w.min_severity]

        delivered = False
        for webhook in targets:
            if await self._send_to_webhook(webhook, alert):
                delivered = True

        self._track_delivery(delivered)
        return delivered

    async def _send_to_webhook(self, webhook: WebhookConfig, alert: Dict[str, Any]) -> bool:
        """Send alert to a single webhook with retries."""
        payload = self._format_payload(webhook, alert)

        delay = self.retry_delay
        for attempt in range(self.max_retries):
            try:
                await self._http_post(webhook, payload)
                self._stats['alerts_sent'] += 1
                return True
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
                else:
                    logger.error(
                        f"Failed to send alert to {webhook.webhook_type.value} webhook "
                        f"after {self.max_retries} attempt(s): {e or type(e).__name__}"
                    )
        self._stats['alerts_failed'] += 1
        return False

    def _format_payload(self, webhook: WebhookConfig, alert: Dict[str, Any]) -> Dict[str, Any]:
        if webhook.webhook_type == WebhookType.DISCORD:
            return format_discord(alert, self.agent_id)
        if webhook.webhook_type == WebhookType.SLACK:
            return format_slack(alert, self.agent_id)
        return format_generic(alert, self.agent_id)

    async def _http_post(self, webhook: WebhookConfig, payload: Dict[str, Any]):
        """Send HTTP POST request to webhook."""
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'Noxwatch-Alert/1.0',
        }
        headers.update(webhook.headers)

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(webhook.url, json=payload, headers=headers) as response:
                response.raise_for_status()
                return await response.read()

    def _track_delivery(self, delivered: bool):
        if delivered:
            if self._degraded:
                logger.warning("Alert delivery recovered, webhook notifications resumed")
            self._consecutive_failures = 0
            self._degraded = False
            return

        self._consecutive_failures += 1
        if not self._degraded and self._consecutive_failures >= self.failure_alert_threshold:
            self._degraded = True
            logger.critical(
                f"Alert sink unreachable after {self._consecutive_failures} consecutive "
                f"deliveries, degraded to log-only operation"
            )

    # === Lifecycle ===

    async def close(self, timeout: Optional[float] = None):
        """Give in-flight deliveries a bounded chance to finish."""
        if not self._pending:
            return
        pending = list(self._pending)
        _, not_done = await asyncio.wait(pending, timeout=timeout or self.timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Dropped {len(not_done)} undelivered alert(s) on shutdown")

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def pending(self) -> int:
        return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats['consecutive_failures'] = self._consecutive_failures
        stats['degraded'] = self._degraded
        stats['webhooks'] = len(self.webhooks)
        return stats
