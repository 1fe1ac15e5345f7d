"""
Noxwatch Alert Sink

Fire-and-forget notifications to webhooks (Discord, Slack, generic JSON),
with local log fallback.
"""

from .dispatcher import (
    AlertDispatcher,
    AlertSink,
    LogSink,
    Severity,
    WebhookConfig,
    WebhookType,
)

__all__ = [
    'AlertDispatcher',
    'AlertSink',
    'LogSink',
    'Severity',
    'WebhookConfig',
    'WebhookType',
]
