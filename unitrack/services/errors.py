"""
Typed errors for the unit tracking core.

Every error carries a machine-readable ``code`` and a ``retryable`` flag so
callers (and the HTTP layer) never parse messages:

    TrackingError (base)
    |
    +-- NotFoundError                NOT_FOUND              definitive
    +-- InvalidTransitionError       INVALID_TRANSITION     definitive
    +-- LocationMismatchError        LOCATION_MISMATCH      definitive
    +-- ConversionNotAllowedError    CONVERSION_NOT_ALLOWED definitive
    +-- ValidationError              VALIDATION_ERROR       definitive
    +-- ImmutabilityViolationError   IMMUTABLE_RECORD       definitive
    +-- ConcurrencyConflictError     CONCURRENCY_CONFLICT   retryable
    +-- NetworkError                 NETWORK_ERROR          retryable
    +-- OperationTimeoutError        TIMEOUT                retryable

Business rules never retry on their own. Retryable errors are safe to
re-issue with the same idempotency key.
"""

from __future__ import annotations

from typing import Any


class TrackingError(Exception):
    code: str = "TRACKING_ERROR"
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


class NotFoundError(TrackingError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, key: Any):
        super().__init__(f"{entity} not found: {key}", entity=entity, key=str(key))
        self.entity = entity
        self.key = str(key)


class InvalidTransitionError(TrackingError):
    code = "INVALID_TRANSITION"


class LocationMismatchError(TrackingError):
    code = "LOCATION_MISMATCH"

    def __init__(self, message: str, *, expected_location_id: Any = None, actual_location_id: Any = None):
        super().__init__(
            message,
            expected_location_id=str(expected_location_id) if expected_location_id else None,
            actual_location_id=str(actual_location_id) if actual_location_id else None,
        )


class ConversionNotAllowedError(TrackingError):
    code = "CONVERSION_NOT_ALLOWED"


class ValidationError(TrackingError):
    code = "VALIDATION_ERROR"


class ImmutabilityViolationError(TrackingError):
    code = "IMMUTABLE_RECORD"

    def __init__(self, entity: str, entity_id: str, action: str):
        super().__init__(f"{entity} {entity_id} is append-only ({action} refused)")
        self.entity = entity
        self.entity_id = entity_id
        self.action = action


class ConcurrencyConflictError(TrackingError):
    code = "CONCURRENCY_CONFLICT"
    retryable = True


class NetworkError(TrackingError):
    code = "NETWORK_ERROR"
    retryable = True


class OperationTimeoutError(TrackingError):
    code = "TIMEOUT"
    retryable = True
