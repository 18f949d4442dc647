"""
Metrics Collection with Prometheus.

Exposes authentication and subscription lifecycle metrics for monitoring.
"""

import time
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class AccountCoreMetrics:
    """
    Centralized metrics for the account core.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Login attempts and lockouts
    - Token issue / rotation / revocation and blacklist lookups
    - Scheduler passes and downgrade enforcement
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("account_core_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "account_core_http_requests_total",
            "Total HTTP requests",
            ["endpoint", "method", "status_code"],
        )
        self.http_request_duration_seconds = Histogram(
            "account_core_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["endpoint", "method"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )
        self.http_requests_in_progress = Gauge(
            "account_core_http_requests_in_progress",
            "HTTP requests currently being processed",
            ["endpoint", "method"],
        )

        # ====================================================================
        # Authentication Metrics
        # ====================================================================
        self.login_attempts_total = Counter(
            "account_core_login_attempts_total",
            "Login attempts by method and outcome",
            ["method", "outcome"],
        )
        self.account_lockouts_total = Counter(
            "account_core_account_lockouts_total",
            "Accounts locked after repeated failures",
        )
        self.tokens_issued_total = Counter(
            "account_core_tokens_issued_total",
            "Token pairs issued",
        )
        self.token_rotations_total = Counter(
            "account_core_token_rotations_total",
            "Refresh token rotations by outcome",
            ["outcome"],
        )
        self.tokens_revoked_total = Counter(
            "account_core_tokens_revoked_total",
            "Refresh tokens revoked by reason",
            ["reason"],
        )
        self.blacklist_checks_total = Counter(
            "account_core_blacklist_checks_total",
            "Blacklist lookups by result",
            ["result"],
        )
        self.fail_open_total = Counter(
            "account_core_fail_open_total",
            "Security checks that failed open because storage was unavailable",
            ["check"],
        )

        # ====================================================================
        # Subscription Lifecycle Metrics
        # ====================================================================
        self.scheduler_pass_rows_total = Counter(
            "account_core_scheduler_pass_rows_total",
            "Rows handled by scheduler passes",
            ["pass_name", "result"],
        )
        self.scheduler_run_duration_seconds = Histogram(
            "account_core_scheduler_run_duration_seconds",
            "Duration of a full scheduler run",
            ["job"],
            buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
        )
        self.downgrade_trims_total = Counter(
            "account_core_downgrade_trims_total",
            "Resources trimmed by downgrade enforcement",
            ["resource"],
        )
        self.cleanup_rows_total = Counter(
            "account_core_cleanup_rows_total",
            "Rows deleted by retention cleanup",
            ["table"],
        )

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=str(status_code)
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_login(self, method: str, outcome: str) -> None:
        """Record a login outcome (success, invalid, locked, suspended)."""
        self.login_attempts_total.labels(method=method, outcome=outcome).inc()

    def record_pass(self, pass_name: str, processed: int, skipped: int, failed: int) -> None:
        """Record the row counts of one scheduler pass."""
        for result, count in (("processed", processed), ("skipped", skipped), ("failed", failed)):
            if count:
                self.scheduler_pass_rows_total.labels(pass_name=pass_name, result=result).inc(count)

    def record_downgrade(
        self, menus: int, products: int, ads: int, branches: int
    ) -> None:
        """Record what a downgrade enforcement run trimmed."""
        for resource, count in (
            ("menus", menus),
            ("products", products),
            ("ads", ads),
            ("branches", branches),
        ):
            if count:
                self.downgrade_trims_total.labels(resource=resource).inc(count)


# Global metrics instance
metrics = AccountCoreMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/api/auth/login", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        self.start_time = time.time()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.time() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def get_metrics_handler() -> Callable[[], bytes]:
    """Get Prometheus exposition handler for the /metrics route."""
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
