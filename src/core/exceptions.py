"""
Global Exception Handling

Provides structured error responses, the pipeline error taxonomy and a
circuit breaker for the external providers.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, image_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class FramingBaseException(Exception):
    """Base exception for the framing service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        image_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.image_id = image_id or image_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(FramingBaseException):
    """Raised when input validation fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class InvalidCropError(ValidationError):
    """Raised when a crop rectangle falls outside the source image."""

    def __init__(self, message: str, crop: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        if crop is not None:
            self.details["crop"] = crop


class NotFoundError(FramingBaseException):
    """Raised when a batch or image does not exist."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=404, **kwargs)


class InvalidStatusTransition(FramingBaseException):
    """Raised when an image status change is not allowed by the state machine."""

    def __init__(self, current: str, requested: str, **kwargs):
        super().__init__(
            f"Cannot move image from '{current}' to '{requested}'",
            code=409,
            **kwargs
        )
        self.details["current"] = current
        self.details["requested"] = requested


class PipelineStageError(FramingBaseException):
    """Raised when a pipeline step fails."""

    def __init__(self, message: str, stage: str, **kwargs):
        super().__init__(message, code=500, stage=stage, **kwargs)


class ExternalAPIError(FramingBaseException):
    """Raised when an external API call fails transiently (network, 5xx)."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class PermanentProviderError(ExternalAPIError):
    """Raised when a provider answers with something that will not improve on retry."""


class MalformedProviderResponse(PermanentProviderError):
    """Raised when a provider response matches none of the known shapes."""


class UpscaleJobFailedError(PermanentProviderError):
    """Raised when an asynchronous upscale job reports a terminal failure."""


class UpscaleTimeoutError(FramingBaseException):
    """Raised when an asynchronous upscale job exceeds its polling budget."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=504, **kwargs)


class StorageError(FramingBaseException):
    """Raised when storage operations fail."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class CircuitBreakerOpenError(FramingBaseException):
    """Raised when circuit breaker is open."""

    def __init__(self, service: str, **kwargs):
        super().__init__(
            f"Service '{service}' is temporarily unavailable (circuit breaker open)",
            code=503,
            **kwargs
        )
        self.details["service"] = service


class DispatchError(FramingBaseException):
    """Raised when a pipeline run cannot be handed to the worker queue."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=503, **kwargs)


# Errors that retrying the whole run cannot fix
PERMANENT_ERRORS = (ValidationError, NotFoundError, InvalidStatusTransition, PermanentProviderError)


def is_permanent(error: BaseException) -> bool:
    return isinstance(error, PERMANENT_ERRORS)


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state

        if state == "CLOSED":
            return True
        if state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info(
                    "circuit_breaker_closed",
                    circuit=self.name,
                    message="Service recovered"
                )
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.now(timezone.utc)

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# Global circuit breakers for external services
circuit_breakers: Dict[str, CircuitBreaker] = {
    "color": CircuitBreaker("color", failure_threshold=5, recovery_timeout=120),
    "upscale": CircuitBreaker("upscale", failure_threshold=3, recovery_timeout=120),
}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if name not in circuit_breakers:
        circuit_breakers[name] = CircuitBreaker(name)
    return circuit_breakers[name]


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(exc: FramingBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "image_id": exc.image_id,
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(FramingBaseException)
    async def framing_exception_handler(request: Request, exc: FramingBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "framing_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )

        return JSONResponse(status_code=exc.code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "image_id": image_id_var.get(),
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
