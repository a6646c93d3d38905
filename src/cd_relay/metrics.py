"""
Prometheus metrics for the CD relay.

This module defines the metrics collected by the builder and deployer services
to monitor builds, deployments, commit status updates and audit delivery.
"""

from prometheus_client import Counter, Histogram
import time


# Builder metrics
builds_total = Counter(
    "cd_relay_builds_total",
    "Total number of builds handled by the builder",
    ["status"],  # status = success|failure
)

build_duration_seconds = Histogram(
    "cd_relay_build_duration_seconds",
    "Time spent building and pushing an image",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200),
)

build_errors_total = Counter(
    "cd_relay_build_errors_total",
    "Total number of failed builds",
    ["error_type"],
)

build_log_lines_total = Counter(
    "cd_relay_build_log_lines_total",
    "Total number of progress lines collected from the build engine",
)

# Deployer metrics
pipeline_runs_total = Counter(
    "cd_relay_pipeline_runs_total",
    "Total number of build-deploy pipeline runs",
    ["state", "stage"],  # state = REPORTED|FAILED, stage = BUILD|DEPLOY
)

deployments_total = Counter(
    "cd_relay_deployments_total",
    "Total number of function deployments sent to the gateway",
    ["method"],  # method = POST (create) | PUT (update)
)

deployment_duration_seconds = Histogram(
    "cd_relay_deployment_duration_seconds",
    "Time spent deploying a function to the gateway",
)

deployment_errors_total = Counter(
    "cd_relay_deployment_errors_total",
    "Total number of failed function deployments",
    ["error_type"],
)

# GitHub status update metrics
github_status_updates_total = Counter(
    "cd_relay_github_status_updates_total",
    "Total number of GitHub commit statuses posted",
    ["state", "context"],
)

github_status_update_errors_total = Counter(
    "cd_relay_github_status_update_errors_total",
    "Total number of GitHub commit status errors",
    ["context", "error_type"],
)

# Audit metrics
audit_events_total = Counter(
    "cd_relay_audit_events_total",
    "Total number of audit events emitted",
    ["source"],
)

audit_errors_total = Counter(
    "cd_relay_audit_errors_total",
    "Total number of audit events that could not be delivered",
    ["error_type"],
)


class MetricsContext:
    """Context manager for timing operations and handling errors with metrics."""

    def __init__(self, histogram, error_counter, error_labels=None):
        self.histogram = histogram
        self.error_counter = error_counter
        self.error_labels = error_labels or []
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.time() - self.start_time
            self.histogram.observe(duration)

        if exc_type is not None:
            error_type = exc_type.__name__
            self.error_counter.labels(*self.error_labels, error_type).inc()

        return False  # Don't suppress exceptions


def track_build():
    """Context manager for tracking build metrics."""
    return MetricsContext(build_duration_seconds, build_errors_total)


def track_deployment():
    """Context manager for tracking gateway deployment metrics."""
    return MetricsContext(deployment_duration_seconds, deployment_errors_total)
