"""
Errors raised by the report lifecycle.

Every error except NotificationError is surfaced to the caller with a reason
string. A raised error always means nothing was written.
"""


class LifecycleError(Exception):
    """Base for all lifecycle errors. ``kind`` is the stable machine-readable name."""
    kind = "lifecycle_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(LifecycleError):
    """A required field is missing or malformed."""
    kind = "validation_error"


class Unauthorized(LifecycleError):
    """The actor's role or identity does not permit the action."""
    kind = "unauthorized"


class InvalidTransition(LifecycleError):
    """No edge of the status state machine leads from the current status to the requested one."""
    kind = "invalid_transition"

    def __init__(self, message: str, current_status=None, requested_status=None):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(message)


class NotFound(LifecycleError):
    kind = "not_found"


class PersistenceError(LifecycleError):
    """The store failed (connectivity, conflict). Safe to retry."""
    kind = "persistence_error"


class NotificationError(LifecycleError):
    """
    Delivery failed. Never surfaced: the engine logs it and the transition
    still succeeds.
    """
    kind = "notification_error"
