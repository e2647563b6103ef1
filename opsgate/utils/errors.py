"""Standardised API error responses.

Usage
-----
    from opsgate.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workflow instance not found")
    return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    return api_error(E.CONFLICT_STATE, "Step already completed")
"""

from __future__ import annotations

from flask import jsonify

from opsgate.core.exceptions import (
    AuthorizationError,
    ConflictError,
    FallbackAssignmentError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    FALLBACK_ASSIGNMENT = "ERR_FALLBACK_ASSIGNMENT"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.FALLBACK_ASSIGNMENT: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override. Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (violations list, required permission...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_service_error_handlers(bp, logger):
    """Attach the service-exception → HTTP mapping to a blueprint.

    Every API blueprint shares the same table, so it is registered once
    per blueprint here instead of being repeated in each module.
    """

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(StateConflictError)
    def _handle_state_conflict(error: StateConflictError):
        return api_error(E.CONFLICT_STATE, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(AuthorizationError)
    def _handle_forbidden(error: AuthorizationError):
        details = {"required": error.permission} if error.permission else None
        return api_error(E.FORBIDDEN, str(error), details=details)

    @bp.errorhandler(FallbackAssignmentError)
    def _handle_fallback(error: FallbackAssignmentError):
        logger.critical("Fallback role assignment failed: %s", error)
        return api_error(E.FALLBACK_ASSIGNMENT, "Role assignment could not be completed")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        from flask import request
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
