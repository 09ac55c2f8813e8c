# backend/tests/unit/services/test_scheduler_base_service.py
"""
Unit tests for BaseService.

The repository is mocked so only the unit-of-work wrapper, timing and
metrics bookkeeping are exercised.
"""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest

from fleet_scheduler.core.exceptions import StorageException
from fleet_scheduler.repositories.scheduler_repository import SchedulerRepository
from fleet_scheduler.services.base import BaseService


@pytest.fixture
def mock_repository():
    repository = MagicMock(spec=SchedulerRepository)
    repository.entered = []

    @contextmanager
    def transaction():
        repository.entered.append("begin")
        try:
            yield
        except Exception:
            repository.entered.append("rollback")
            raise
        repository.entered.append("commit")

    repository.transaction.side_effect = transaction
    return repository


@pytest.fixture(autouse=True)
def clear_metrics():
    BaseService._class_metrics.clear()
    yield
    BaseService._class_metrics.clear()


class TestInitialization:
    def test_logger_uses_class_name(self, mock_repository):
        class FleetReportService(BaseService):
            pass

        service = FleetReportService(mock_repository)

        assert service.repository is mock_repository
        assert service.logger.name == "FleetReportService"


class TestTransactionManagement:
    def test_commit_on_success(self, mock_repository):
        service = BaseService(mock_repository)

        with service.transaction():
            pass

        assert mock_repository.entered == ["begin", "commit"]

    def test_rollback_and_reraise(self, mock_repository):
        service = BaseService(mock_repository)

        with pytest.raises(StorageException):
            with service.transaction():
                raise StorageException("write failed")

        assert mock_repository.entered == ["begin", "rollback"]


class TestPerformanceMonitoring:
    def test_measure_operation_records_success(self, mock_repository):
        class FleetReportService(BaseService):
            @BaseService.measure_operation("summarize")
            def summarize(self, vehicle_id):
                return f"summary:{vehicle_id}"

        service = FleetReportService(mock_repository)

        assert service.summarize("veh-1") == "summary:veh-1"
        assert FleetReportService.summarize._is_measured is True
        metrics = service.get_metrics()["summarize"]
        assert metrics["count"] == 1
        assert metrics["success_rate"] == 1.0

    def test_measure_operation_records_failure(self, mock_repository):
        class FleetReportService(BaseService):
            @BaseService.measure_operation("summarize")
            def summarize(self):
                raise ValueError("no data")

        service = FleetReportService(mock_repository)

        with pytest.raises(ValueError):
            service.summarize()

        metrics = service.get_metrics()["summarize"]
        assert metrics["failure_count"] == 1
        assert metrics["success_rate"] == 0.0

    def test_prometheus_receives_error_type(self, mock_repository):
        class FleetReportService(BaseService):
            @BaseService.measure_operation("summarize")
            def summarize(self):
                raise StorageException("down")

        service = FleetReportService(mock_repository)

        with patch("fleet_scheduler.services.base.prometheus_metrics") as metrics:
            with pytest.raises(StorageException):
                service.summarize()

        kwargs = metrics.record_service_operation.call_args.kwargs
        assert kwargs["service"] == "FleetReportService"
        assert kwargs["status"] == "error"
        assert kwargs["error_type"] == "StorageException"

    def test_slow_operation_logged(self, mock_repository):
        service = BaseService(mock_repository)

        with patch("fleet_scheduler.services.base.time") as fake_time:
            fake_time.time.side_effect = [100.0, 101.5]
            with patch.object(service.logger, "warning") as mock_warning:
                with service.measure_operation_context("rebuild_index"):
                    pass

        message = mock_warning.call_args[0][0]
        assert "Slow operation detected" in message
        assert "rebuild_index took 1.50s" in message

    def test_metrics_aggregate_and_reset(self, mock_repository):
        service = BaseService(mock_repository)

        service._record_metric("lookup", 0.1, success=True)
        service._record_metric("lookup", 0.2, success=False)
        service._record_metric("lookup", 0.3, success=True)

        metrics = service.get_metrics()["lookup"]
        assert metrics["count"] == 3
        assert metrics["avg_time"] == pytest.approx(0.2)
        assert metrics["success_rate"] == pytest.approx(2 / 3)
        assert metrics["min_time"] == 0.1
        assert metrics["max_time"] == 0.3

        service.reset_metrics()
        assert service.get_metrics() == {}

    def test_concurrent_recording_keeps_every_count(self, mock_repository):
        service = BaseService(mock_repository)

        def record_many(worker):
            for i in range(500):
                service._record_metric("lookup", 0.001, success=(worker + i) % 2 == 0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(record_many, range(8)))

        metrics = service.get_metrics()["lookup"]
        assert metrics["count"] == 4000
        assert metrics["success_count"] + metrics["failure_count"] == 4000


class TestLogging:
    def test_log_operation(self, mock_repository):
        service = BaseService(mock_repository)

        with patch.object(service.logger, "info") as mock_info:
            service.log_operation("request_booking", booking_id="b-1", vehicle_id="v-1")

        args, kwargs = mock_info.call_args
        assert args[0] == "Operation: request_booking"
        assert kwargs["extra"] == {
            "operation": "request_booking",
            "booking_id": "b-1",
            "vehicle_id": "v-1",
        }
