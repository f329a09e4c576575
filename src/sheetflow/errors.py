"""
Typed errors raised by the timesheet core.

Every error carries a machine-readable ``code`` so callers (HTTP layer, CLI)
can map it without parsing the message. Validation and state errors are raised
before any write, the caller's transaction is rolled back and nothing changes.

    SheetflowError
    +-- ValidationError          malformed or out-of-range input
    +-- InvalidStateTransition   action illegal for the current status
    +-- PermissionDenied         actor role may not perform the action
    +-- NotFoundError            referenced record does not exist
    +-- AggregationError         billing cannot resolve a user/project/rate
    +-- ConsistencyError         invariant violation found by a repair procedure
    +-- ConcurrentUpdateError    optimistic version check lost
"""
from typing import Optional


class SheetflowError(Exception):
    code: str = "SHEETFLOW_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(SheetflowError):
    code = "VALIDATION_ERROR"


class InvalidStateTransition(SheetflowError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class PermissionDenied(SheetflowError):
    code = "PERMISSION_DENIED"


class NotFoundError(SheetflowError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, record_id: Optional[str]):
        super().__init__(f"{entity} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


class AggregationError(SheetflowError):
    code = "AGGREGATION_ERROR"


class ConsistencyError(SheetflowError):
    """Never raised to callers; repair procedures log it and correct the record."""
    code = "CONSISTENCY_ERROR"

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class ConcurrentUpdateError(SheetflowError):
    code = "CONCURRENT_UPDATE"
