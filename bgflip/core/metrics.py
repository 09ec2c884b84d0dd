"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, Clipdrop API calls, credential exchanges and
storage operations. Exposed at /api/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for one upload pipeline run",
    labelnames=["status"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Clipdrop API Calls
clipdrop_api_calls_total = Counter(
    "clipdrop_api_calls_total",
    "Total number of Clipdrop API calls",
    labelnames=["status", "http_status"]
)

# Credential exchanges (sts, impersonation)
token_exchanges_total = Counter(
    "token_exchanges_total",
    "Total number of federation token exchange calls",
    labelnames=["stage", "status"]
)

# Object store operations
storage_operations_total = Counter(
    "storage_operations_total",
    "Total number of object store operations",
    labelnames=["operation", "status"]
)

# Uploads
images_processed_total = Counter(
    "images_processed_total",
    "Total number of uploads run through the pipeline",
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Application Info
app_info = Info(
    "bgflip_app",
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
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("remove_background"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_clipdrop_call(status: str, http_status: int = 200):
    """Record a Clipdrop API call."""
    clipdrop_api_calls_total.labels(
        status=status,
        http_status=str(http_status)
    ).inc()


def record_token_exchange(stage: str, status: str):
    """Record an STS or impersonation call."""
    token_exchanges_total.labels(stage=stage, status=status).inc()


def record_storage_operation(operation: str, status: str):
    """Record an object store operation."""
    storage_operations_total.labels(operation=operation, status=status).inc()


def record_pipeline_run(status: str, duration_seconds: float):
    """Record the outcome of one upload pipeline run."""
    images_processed_total.labels(status=status).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
