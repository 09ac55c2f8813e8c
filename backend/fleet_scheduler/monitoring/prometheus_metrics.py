"""
Prometheus metrics module for the fleet scheduler.

Service timings come from @measure_operation; the scheduler and lock manager
add domain counters for admissions, transitions and lock contention.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry so repeated imports in tests never collide with the default one
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "fleet_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "fleet_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "fleet_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

vehicle_lock_total = Counter(
    "fleet_vehicle_lock_total",
    "Vehicle lock acquisitions and releases by outcome",
    ["action", "outcome"],  # acquire|release x success|timeout|redis_unavailable|not_owner|error
    registry=REGISTRY,
)

vehicle_lock_wait_seconds = Histogram(
    "fleet_vehicle_lock_wait_seconds",
    "Time spent waiting for a vehicle lock",
    registry=REGISTRY,
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)

admission_decisions_total = Counter(
    "fleet_admission_decisions_total",
    "Conflict checker decisions",
    ["mode", "outcome"],  # admitted | EXCLUSIVE_CONFLICT | CAPACITY_EXCEEDED
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "fleet_booking_transitions_total",
    "Booking lifecycle transitions applied",
    ["event", "to_status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'SchedulerService')
            operation: Operation name (e.g., 'request_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()

        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_vehicle_lock(action: str, outcome: str, waited: Optional[float] = None) -> None:
        vehicle_lock_total.labels(action=action, outcome=outcome).inc()
        if waited is not None:
            vehicle_lock_wait_seconds.observe(max(waited, 0.0))
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_admission(mode: str, outcome: str) -> None:
        admission_decisions_total.labels(mode=mode, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_transition(event: str, to_status: str) -> None:
        booking_transitions_total.labels(event=event, to_status=to_status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """
        Generate Prometheus metrics in exposition format.

        Returns:
            Metrics data in Prometheus text format
        """
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts
        if payload is not None and ts is not None and (now - ts) <= PrometheusMetrics._cache_ttl_seconds:
            return payload

        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
            PrometheusMetrics._cache_ts = monotonic()
            return PrometheusMetrics._cache_payload

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        """Invalidate cached metrics so next scrape refreshes."""
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
