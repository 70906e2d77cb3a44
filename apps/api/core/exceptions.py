"""
Custom exception classes.

Every precondition failure carries a descriptive message naming the offending
entity and condition, plus a stable error code for callers.
"""
from typing import Optional


class SyncEngineError(Exception):
    """Base engine exception with consistent structure."""

    error_code = "SYNC_ENGINE_ERROR"

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        if error_code:
            self.error_code = error_code


class NotFoundError(SyncEngineError):
    """Referenced entity does not exist (or no longer exists)."""

    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"cannot find {resource} {identifier}")
        self.resource = resource
        self.identifier = identifier


class ValidationError(SyncEngineError):
    """Invalid input or configuration."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else None
        super().__init__(detail, error_code=error_code)
        self.field = field


class InvalidTransitionError(ValidationError):
    """No state transition is declared between two states."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, resource: str, identifier: str, from_state: str, to_state: str):
        super().__init__(
            f"cannot transition {resource} {identifier} from {from_state} to {to_state}"
        )
        self.from_state = from_state
        self.to_state = to_state


class LockedResourceError(ValidationError):
    """Mutation of an entity owned by an external configuration owner."""

    error_code = "LOCKED"

    def __init__(self, resource: str, identifier: str, locked_by: str):
        super().__init__(f"{resource} {identifier} is locked by {locked_by}")
        self.locked_by = locked_by


class DependencyConfigurationError(ValidationError):
    """A property references a property key that does not exist."""

    error_code = "DEPENDENCY_CONFIGURATION"


class ConflictError(SyncEngineError):
    """Resource conflict (e.g., duplicate name, resource still in use)."""

    error_code = "CONFLICT"


class ConnectorCapabilityError(ValidationError):
    """The connector bound to an entity lacks a required method."""

    error_code = "CONNECTOR_CAPABILITY"

    def __init__(self, connection: str, method: str):
        super().__init__(f"connection {connection} does not implement {method}")
        self.method = method


class ExportBatchError(SyncEngineError):
    """A destination rejected (or failed) a whole export batch; retried with backoff."""

    error_code = "EXPORT_BATCH_FAILED"

    def __init__(self, destination_id: str, detail: str, retry_delay: Optional[int] = None):
        super().__init__(f"export to destination {destination_id} failed: {detail}")
        self.destination_id = destination_id
        self.retry_delay = retry_delay
