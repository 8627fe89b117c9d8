"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in ELK, Loki or CloudWatch.
Every pipeline log includes: image_id, batch_id, step, version and timestamp.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variables for run-scoped logging
image_id_var: ContextVar[Optional[str]] = ContextVar("image_id", default=None)
batch_id_var: ContextVar[Optional[str]] = ContextVar("batch_id", default=None)
step_var: ContextVar[Optional[str]] = ContextVar("step", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application and pipeline context to every log entry."""
    event_dict["version"] = APP_VERSION

    image_id = image_id_var.get()
    if image_id:
        event_dict.setdefault("image_id", image_id)

    batch_id = batch_id_var.get()
    if batch_id:
        event_dict.setdefault("batch_id", batch_id)

    step = step_var.get()
    if step:
        event_dict.setdefault("step", step)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(image_id="abc123", step="upscale"):
            logger.info("upscale_started")
    """

    def __init__(
        self,
        image_id: Optional[str] = None,
        step: Optional[str] = None,
        batch_id: Optional[str] = None
    ):
        self.image_id = image_id
        self.step = step
        self.batch_id = batch_id
        self._tokens = []

    def __enter__(self):
        if self.image_id:
            self._tokens.append((image_id_var, image_id_var.set(self.image_id)))
        if self.batch_id:
            self._tokens.append((batch_id_var, batch_id_var.set(self.batch_id)))
        if self.step:
            self._tokens.append((step_var, step_var.set(self.step)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
        return False


def set_image_context(image_id: str, batch_id: Optional[str] = None, step: Optional[str] = None):
    """Set the current pipeline context for logging."""
    image_id_var.set(image_id)
    if batch_id:
        batch_id_var.set(batch_id)
    if step:
        step_var.set(step)


def set_step(step: Optional[str]):
    """Update the current pipeline step."""
    step_var.set(step)


def clear_image_context():
    """Clear the current pipeline context."""
    image_id_var.set(None)
    batch_id_var.set(None)
    step_var.set(None)


# Example log output structure:
# {
#   "timestamp": "2024-05-20T10:00:00Z",
#   "level": "info",
#   "event": "step_completed",
#   "step": "compose-and-persist",
#   "image_id": "550e8400-e29b-41d4-a716-446655440000",
#   "batch_id": "1c0b5e0e-3f3a-4a45-9a57-54b6e1c1f1aa",
#   "version": "1.0.0",
#   "duration_ms": 4200
# }
