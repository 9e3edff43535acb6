"""Collector-specific exceptions."""


class CollectorError(Exception):
    """Base exception for clawwatch_engine."""
    pass


class ConfigError(CollectorError):
    """Missing or invalid process configuration (fatal at startup)."""
    pass


class GatewayError(CollectorError):
    """Gateway connection errors (socket closed, handshake rejected, etc.)."""
    pass


class GatewayRPCError(GatewayError):
    """Gateway tool invocation failed (non-2xx or ok=false)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TranscriptError(CollectorError):
    """A transcript file exists but cannot be read."""
    pass


class StoreError(CollectorError):
    """Downstream store errors (query or mutation failed)."""
    pass


class SchedulerError(CollectorError):
    """Scheduler errors (job registration, schedule parsing)."""
    pass
