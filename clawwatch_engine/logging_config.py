"""Structured logging configuration for the collector."""
import logging
import contextvars

import structlog

connection_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "connection_id", default="-"
)


def bind_connection_id(connection_id: int) -> contextvars.Token:
    """Tag log lines emitted from the current task with a gateway connection id."""
    return connection_id_var.set(str(connection_id))


class ConnectionIdFilter(logging.Filter):
    """Copy the current connection id onto stdlib log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.connection_id = connection_id_var.get("-")
        return True


def add_connection_id(logger, method_name, event_dict):
    """Structlog processor to add the gateway connection id."""
    cid = connection_id_var.get("-")
    if cid != "-":
        event_dict["connection_id"] = cid
    return event_dict


def configure_logging(level: int = logging.INFO):
    """Configure stdlib + structlog output."""
    # Module loggers use logging.getLogger(); force=True replaces any handler
    # installed by an import side-effect.
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s [conn=%(connection_id)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    for handler in logging.root.handlers:
        handler.addFilter(ConnectionIdFilter())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_connection_id,
            structlog.dev.ConsoleRenderer() if level <= logging.DEBUG else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
