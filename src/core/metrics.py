"""
Prometheus Metrics for Observability

Tracks pipeline step latency, provider calls and degraded steps.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Step
pipeline_step_latency_seconds = Histogram(
    "pipeline_step_latency_seconds",
    "Time spent in each pipeline step",
    labelnames=["step", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Pipeline runs by terminal outcome
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total number of pipeline runs reaching a terminal state",
    labelnames=["status", "failure_step"]
)

# Active Runs
active_runs_gauge = Gauge(
    "pipeline_active_runs",
    "Number of pipeline runs currently executing"
)

# Steps that fell back instead of failing
degraded_steps_total = Counter(
    "pipeline_degraded_steps_total",
    "Degradable steps that used their fallback",
    labelnames=["step", "reason"]
)

# Upscale provider calls
upscale_api_calls_total = Counter(
    "upscale_api_calls_total",
    "Total number of upscale provider calls",
    labelnames=["status", "mode"]
)

# Color analysis provider calls
color_analysis_calls_total = Counter(
    "color_analysis_calls_total",
    "Total number of color analysis calls",
    labelnames=["status"]
)

# Dispatches
batch_dispatch_total = Counter(
    "batch_dispatch_images_total",
    "Images handed to the pipeline by the batch dispatcher",
    labelnames=["status"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "framing_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_step_latency(step: str):
    """
    Context manager to track pipeline step latency.

    Usage:
        with track_step_latency("upscale"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_step_latency_seconds.labels(step=step, status=status).observe(time.time() - start)


def record_run_completion(status: str, failure_step: str = "none"):
    """Record a pipeline run reaching a terminal state."""
    pipeline_runs_total.labels(status=status, failure_step=failure_step).inc()


def record_degraded_step(step: str, reason: str):
    """Record a degradable step falling back."""
    degraded_steps_total.labels(step=step, reason=reason).inc()


def record_upscale_call(status: str, mode: str = "submit"):
    """Record an upscale provider call."""
    upscale_api_calls_total.labels(status=status, mode=mode).inc()


def record_color_analysis_call(status: str):
    """Record a color analysis call."""
    color_analysis_calls_total.labels(status=status).inc()


def record_dispatch(status: str):
    batch_dispatch_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
