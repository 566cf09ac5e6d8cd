"""Standardised API error responses.

Usage
-----
    from factory_pulse.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Project not found")
    return api_error(E.PREREQUISITE_FAILURE, "Blocked", details={"errors": [...]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for every error
     • transition taxonomy codes mirror the exception ``kind``
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Stage-transition taxonomy
    STRUCTURAL_VIOLATION = "ERR_STRUCTURAL_VIOLATION"
    PREREQUISITE_FAILURE = "ERR_PREREQUISITE_FAILURE"
    CONCURRENCY_CONFLICT = "ERR_CONCURRENCY_CONFLICT"
    BACKEND_FAILURE = "ERR_BACKEND_FAILURE"
    INVALID_OPTIONS = "ERR_INVALID_TRANSITION_OPTIONS"
    BYPASS_NOT_PERMITTED = "ERR_BYPASS_NOT_PERMITTED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.STRUCTURAL_VIOLATION: 422,
    E.PREREQUISITE_FAILURE: 422,
    E.CONCURRENCY_CONFLICT: 409,
    E.BACKEND_FAILURE: 503,
    E.INVALID_OPTIONS: 400,
    E.BYPASS_NOT_PERMITTED: 403,
}

# Transition error kind -> code
KIND_TO_CODE: dict[str, str] = {
    "StructuralViolation": E.STRUCTURAL_VIOLATION,
    "PrerequisiteFailure": E.PREREQUISITE_FAILURE,
    "ConcurrencyConflict": E.CONCURRENCY_CONFLICT,
    "BackendFailure": E.BACKEND_FAILURE,
    "InvalidTransitionOptions": E.INVALID_OPTIONS,
    "BypassNotPermitted": E.BYPASS_NOT_PERMITTED,
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
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (reason list, committed flags, etc.).

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
