# backend/fleet_scheduler/core/exceptions.py
"""
Domain-specific exceptions for the fleet reservation scheduler.

Every failure the scheduler reports carries an ErrorKind so callers can react
to the reason (retry a STORAGE_ERROR, surface a conflict) without parsing
messages. to_http_exception() gives the surrounding HTTP layer a ready mapping.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from .enums import ErrorKind

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or (self.kind.value if self.kind else self.__class__.__name__)
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND
    kind = ErrorKind.NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when an actor lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific scheduler exceptions


class InvalidIntervalException(ValidationException):
    """Raised when a booking interval is empty, inverted or too long."""

    kind = ErrorKind.INVALID_INTERVAL

    def __init__(self, message: str = "Booking end must be after its start", **details: Any):
        super().__init__(message, details=details)


class VehicleUnavailableException(BusinessRuleException):
    """Raised when a vehicle is flagged for maintenance or otherwise unavailable."""

    kind = ErrorKind.VEHICLE_UNAVAILABLE

    def __init__(self, vehicle_id: str, vehicle_status: str):
        super().__init__(
            message=f"Vehicle {vehicle_id} cannot be booked while {vehicle_status}",
            details={"vehicle_id": vehicle_id, "status": vehicle_status},
        )


class ExclusiveConflictException(ConflictException):
    """Raised when an interval collides with an exclusive commitment on the vehicle."""

    kind = ErrorKind.EXCLUSIVE_CONFLICT

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time window conflicts with an existing booking",
            details=details or {},
        )


class CapacityExceededException(ConflictException):
    """Raised when shared occupancy would exceed the vehicle's capacity."""

    kind = ErrorKind.CAPACITY_EXCEEDED

    def __init__(self, capacity: int, peak_occupancy: int, **details: Any):
        super().__init__(
            message=(
                f"Vehicle capacity of {capacity} would be exceeded "
                f"(peak occupancy {peak_occupancy})"
            ),
            details={"capacity": capacity, "peak_occupancy": peak_occupancy, **details},
        )


class InvalidTransitionException(ConflictException):
    """Raised when a lifecycle event is not legal for the booking's current status."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, message: str, **details: Any):
        super().__init__(message, details=details)


class VehicleNotFoundException(NotFoundException):
    def __init__(self, vehicle_id: str):
        super().__init__(f"Vehicle {vehicle_id} not found", details={"vehicle_id": vehicle_id})


class BookingNotFoundException(NotFoundException):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found", details={"booking_id": booking_id})


class MembershipNotFoundException(NotFoundException):
    def __init__(self, booking_id: str, rider_id: str):
        super().__init__(
            f"Rider {rider_id} has no open seat on booking {booking_id}",
            details={"booking_id": booking_id, "rider_id": rider_id},
        )


class UnauthorizedActionException(ForbiddenException):
    """Raised when the actor lacks the capability the operation requires."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, actor_id: str, action: str, required: Optional[str] = None):
        details: Dict[str, Any] = {"actor_id": actor_id, "action": action}
        if required:
            details["required_capability"] = required
        super().__init__(f"Actor {actor_id} may not {action}", details=details)


class StorageException(ServiceException):
    """
    Raised for repository failures.

    Storage failures are retryable: the repository stays authoritative and the
    caller may repeat the whole operation.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    kind = ErrorKind.STORAGE_ERROR
    retryable = True

    def to_http_exception(self) -> HTTPException:
        exc = super().to_http_exception()
        exc.headers = {"Retry-After": "1"}
        return exc


class LockTimeoutException(StorageException):
    """Raised when a vehicle lock cannot be acquired in time."""

    def __init__(self, vehicle_id: str, waited_seconds: float, stage: str = "local"):
        super().__init__(
            f"Timed out waiting for vehicle {vehicle_id} lock",
            details={
                "vehicle_id": vehicle_id,
                "waited_seconds": waited_seconds,
                "stage": stage,
            },
        )
