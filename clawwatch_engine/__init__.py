"""
ClawWatch Engine — telemetry collector for a fleet of gateway-hosted agents.

Runs unattended next to the gateway:
- Gateway push channel (live events) + session polling over RPC
- Transcript tailing (JSONL backfill of cost and activity)
- Dedup, stats cache and budget aggregation
- Alert rule evaluation with per-rule cooldown
- Retention sweeps (APScheduler)
"""

__version__ = "0.1.0"

from clawwatch_engine.config import CollectorConfig
from clawwatch_engine.exceptions import (
    CollectorError,
    ConfigError,
    GatewayError,
    GatewayRPCError,
    SchedulerError,
    StoreError,
)

__all__ = ["CollectorConfig", "CollectorError", "ConfigError", "GatewayError",
           "GatewayRPCError", "SchedulerError", "StoreError", "get_engine", "set_engine"]

# Global collector instance (set by CollectorEngine.start())
_engine_instance = None


def get_engine():
    """Get the global CollectorEngine instance."""
    return _engine_instance


def set_engine(engine):
    """Set the global CollectorEngine instance."""
    global _engine_instance
    _engine_instance = engine
