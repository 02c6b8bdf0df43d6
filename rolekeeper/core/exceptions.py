"""Custom exception classes for the role migration core."""

from typing import Optional


class RoleSystemError(Exception):
    """Base exception for the role subsystem."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(RoleSystemError):
    """Raised when a user, assignment, or snapshot does not exist."""
    pass


class ReferenceIntegrityError(RoleSystemError):
    """Raised when a record points at a user/institution/department that is gone."""
    pass


class RoleValidationError(RoleSystemError):
    """Raised when a structural or temporal rule is violated."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", severity: str = "high"):
        self.code = code
        self.severity = severity
        super().__init__(message)


class ConflictError(RoleSystemError):
    """Raised when a write collides with an existing active assignment."""
    pass


class TransactionError(RoleSystemError):
    """Raised when the rollback critical section cannot be entered or committed."""
    pass


class SnapshotCreationError(TransactionError):
    """Raised when a snapshot could not be captured in full."""
    pass


class ConfigurationError(RoleSystemError):
    """Raised for invalid settings or when a disabled feature is invoked."""
    pass


class StoreError(RoleSystemError):
    """Raised when the store returns a malformed row or fails unexpectedly."""

    def __init__(self, message: str = "Store operation failed", operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message)


class StoreUnavailableError(StoreError):
    """Raised for transient store faults (timeouts, dropped connections)."""
    pass


class OperationCancelledError(RoleSystemError):
    """Raised when a store call exceeds its deadline or is cancelled by the server."""
    pass
