"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
map it to a status code, so no service ever builds an HTTP response.

Usage:
    from opsgate.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowTemplate", resource_id=42)
    raise ValidationError("Template has no nodes", details={"nodes": "empty"})

Status mapping:
    AuthorizationError       → 403
    NotFoundError            → 404
    ConflictError            → 409
    StateConflictError       → 409
    ValidationError          → 422
    FallbackAssignmentError  → 500 (logged critical)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Role", "WorkflowInstance").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional itemized breakdown for structured API responses
                 (e.g. ``{"violations": [...]}`` from template activation).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique record.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StateConflictError(ConflictError):
    """Raised when an operation is not legal in the entity's current state.

    Examples: advancing an already completed step, cancelling a cancelled
    instance, removing a role the user does not hold.
    """

    def __init__(self, resource: str, message: str, state: str | None = None) -> None:
        self.resource = resource
        self.field = "status"
        self.value = state
        self.state = state
        Exception.__init__(self, message)


class AuthorizationError(Exception):
    """Raised when the acting user is not allowed to perform the operation.

    Maps to HTTP 403. ``permission`` names the missing grant when one applies.
    """

    def __init__(self, message: str = "Permission denied", permission: str | None = None) -> None:
        self.permission = permission
        super().__init__(message)


class FallbackAssignmentError(Exception):
    """Raised when a user would be left with zero roles.

    Fatal: the surrounding transaction is rolled back and nothing changes.
    Happens only when the fallback role row is missing from the database.
    """
