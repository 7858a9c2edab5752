"""ccmetrics - Session metrics pipeline for AI coding assistants.

ccmetrics runs as short-lived hook processes of the host application and
records per-segment cost, token and utilization metrics to a remote
insert-only store, queueing records locally while the store is unreachable.
"""

__version__ = "0.1.0"

from ccmetrics.config import Config, ConfigError
from ccmetrics.events import ClientType, EndReason, HookEvent, HookPayload, MetricsSource

__all__ = [
    "Config",
    "ConfigError",
    "ClientType",
    "EndReason",
    "HookEvent",
    "HookPayload",
    "MetricsSource",
]
