from datetime import datetime, timedelta, timezone

from src.core.exceptions import (
    CircuitBreaker,
    ExternalAPIError,
    InvalidCropError,
    InvalidStatusTransition,
    MalformedProviderResponse,
    NotFoundError,
    PipelineStageError,
    StorageError,
    UpscaleTimeoutError,
    is_permanent,
)


def test_permanent_errors():
    assert is_permanent(InvalidCropError("bad crop"))
    assert is_permanent(NotFoundError("gone"))
    assert is_permanent(InvalidStatusTransition("completed", "failed"))
    assert is_permanent(MalformedProviderResponse("garbage", service="upscale"))


def test_transient_errors():
    assert not is_permanent(ExternalAPIError("502", service="upscale"))
    assert not is_permanent(StorageError("disk full"))
    assert not is_permanent(UpscaleTimeoutError("slow"))
    assert not is_permanent(PipelineStageError("boom", stage="compose-and-persist"))
    assert not is_permanent(RuntimeError("boom"))


def test_circuit_opens_after_threshold():
    breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=60)

    breaker.record_failure()
    assert breaker.can_execute()
    breaker.record_failure()
    assert breaker.state == "OPEN"
    assert not breaker.can_execute()


def test_circuit_recovers_through_half_open():
    breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=60, half_open_max_calls=2)
    breaker.record_failure()
    breaker._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=61)

    assert breaker.state == "HALF_OPEN"
    assert breaker.can_execute()
    breaker.record_success()
    breaker.record_success()
    assert breaker.state == "CLOSED"


def test_half_open_failure_reopens():
    breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=60)
    breaker.record_failure()
    breaker._last_failure_time = datetime.now(timezone.utc) - timedelta(seconds=61)
    assert breaker.state == "HALF_OPEN"

    breaker.record_failure()
    assert breaker.state == "OPEN"
