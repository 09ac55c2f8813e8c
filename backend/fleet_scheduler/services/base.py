# backend/fleet_scheduler/services/base.py
"""
Base Service Pattern for the fleet reservation scheduler.

Provides common functionality for all service classes including:
- Transaction management through the repository
- Logging
- Performance monitoring
"""

from contextlib import contextmanager
from functools import wraps
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, cast

from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.scheduler_repository import SchedulerRepository

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for all service layer components.

    Provides common patterns for:
    - Repository unit-of-work handling
    - Logging
    - Performance monitoring
    """

    # Class-level metrics storage
    _class_metrics: Dict[str, Dict[str, Dict[str, Any]]] = {}
    _class_metrics_lock = threading.Lock()

    def __init__(self, repository: SchedulerRepository):
        """
        Initialize base service.

        Args:
            repository: Storage backend shared by the scheduler services
        """
        self.repository = repository
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Context manager for repository transactions.

        Usage:
            with self.transaction():
                self.repository.save_booking(booking)
                # Note: commit is handled automatically
        """
        try:
            with self.repository.transaction():
                yield
            self.logger.debug("Transaction committed successfully")
        except Exception as e:
            self.logger.debug(f"Transaction rolled back: {type(e).__name__}")
            raise

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("request_booking")
            def request_booking(self, ...):
                # Method implementation

        Args:
            operation_name: Name of the operation for metrics

        Returns:
            Decorator function
        """

        def decorator(func: F) -> F:
            func._operation_name = operation_name  # type: ignore[attr-defined]
            func._is_measured = True  # type: ignore[attr-defined]

            @wraps(func)
            def wrapper(self, *args, **kwargs):
                start_time = time.time()
                success = False
                error_type: Optional[str] = None

                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    elapsed = time.time() - start_time

                    if hasattr(self, "_record_metric"):
                        self._record_metric(operation_name, elapsed, success)

                    # Only log if it's actually slow
                    if elapsed > SLOW_OPERATION_SECONDS and hasattr(self, "logger"):
                        self.logger.warning(
                            f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                        )

                    prometheus_metrics.record_service_operation(
                        service=self.__class__.__name__,
                        operation=operation_name,
                        duration=elapsed,
                        status="success" if success else "error",
                        error_type=error_type,
                    )

            return cast(F, wrapper)

        return decorator

    @contextmanager
    def measure_operation_context(self, operation_name: str) -> Iterator[None]:
        """
        Context manager to measure operation performance.

        Usage:
            with self.measure_operation_context("rebuild_index"):
                # Do work here
                pass
        """
        start_time = time.time()
        success = False

        try:
            yield
            success = True
        finally:
            elapsed = time.time() - start_time
            self._record_metric(operation_name, elapsed, success)

            if elapsed > SLOW_OPERATION_SECONDS:
                self.logger.warning(
                    f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                )

            prometheus_metrics.record_service_operation(
                service=self.__class__.__name__,
                operation=operation_name,
                duration=elapsed,
                status="success" if success else "error",
            )

    def log_operation(self, operation: str, **context: Any) -> None:
        """
        Log an operation with context.

        Args:
            operation: Operation name
            **context: Additional context to log
        """
        self.logger.info(f"Operation: {operation}", extra={"operation": operation, **context})

    def _record_metric(self, operation: str, elapsed: float, success: bool) -> None:
        """
        Record performance metrics.

        Args:
            operation: Operation name
            elapsed: Time taken in seconds
            success: Whether operation succeeded
        """
        class_name = self.__class__.__name__
        with BaseService._class_metrics_lock:
            metrics = BaseService._class_metrics.setdefault(class_name, {})

            if operation not in metrics:
                metrics[operation] = {
                    "count": 0,
                    "total_time": 0.0,
                    "success_count": 0,
                    "failure_count": 0,
                    "min_time": float("inf"),
                    "max_time": 0.0,
                }

            metric_data = metrics[operation]
            metric_data["count"] += 1
            metric_data["total_time"] += elapsed
            metric_data["min_time"] = min(metric_data["min_time"], elapsed)
            metric_data["max_time"] = max(metric_data["max_time"], elapsed)

            if success:
                metric_data["success_count"] += 1
            else:
                metric_data["failure_count"] += 1

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """
        Performance metrics recorded for this service class.

        Returns:
            Operation name -> count, timings, success rate and average time
        """
        with BaseService._class_metrics_lock:
            metrics = {
                operation: dict(data)
                for operation, data in BaseService._class_metrics.get(
                    self.__class__.__name__, {}
                ).items()
            }
        result: Dict[str, Dict[str, Any]] = {}
        for operation, data in metrics.items():
            count = data["count"]
            result[operation] = {
                **data,
                "avg_time": data["total_time"] / count if count else 0.0,
                "success_rate": data["success_count"] / count if count else 0.0,
            }
        return result

    def reset_metrics(self) -> None:
        with BaseService._class_metrics_lock:
            BaseService._class_metrics.pop(self.__class__.__name__, None)
