# errors.py
# Domain failures raised inside the engine and translated to Outcome / HTTP
# at the boundary. Store-level errors live here too so every layer shares them.

from typing import Optional

from shared_types import Failure


class LifecycleError(Exception):
    kind = "LifecycleError"

    def __init__(self, message: str, action: Optional[str] = None, resource_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.action = action
        self.resource_id = resource_id

    def to_failure(self) -> Failure:
        return Failure(kind=self.kind, message=self.message, action=self.action, resource_id=self.resource_id)


class Unauthorized(LifecycleError):
    kind = "Unauthorized"


class NotFound(LifecycleError):
    kind = "NotFound"


class Conflict(LifecycleError):
    kind = "Conflict"


class ValidationError(LifecycleError):
    kind = "ValidationError"


class ConfigurationError(LifecycleError):
    """Internal defect, e.g. an action name missing from the permission table."""
    kind = "ConfigurationError"


# ── Store errors ──────────────────────────────────────────────────────────────

class StaleWriteError(Exception):
    """The record changed between snapshot and commit (compare-and-swap lost)."""

    def __init__(self, key: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(f"{key}: expected version {expected_version}, found {actual_version}")
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailable(Exception):
    """Transient storage I/O failure. Callers may retry with backoff."""


class AssigneeBackingError(Exception):
    """Deleting the assignment entry would leave the request's assignee without a backing entry."""

    def __init__(self, assignment_id: str, request_id: str, technician_id: str):
        super().__init__(f"assignment {assignment_id} is the last entry backing {technician_id} on {request_id}")
        self.assignment_id = assignment_id
        self.request_id = request_id
        self.technician_id = technician_id
