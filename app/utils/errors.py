"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Oficio not found")
    return api_error(E.VALIDATION_REQUIRED, "sector_id is required")

Blueprints map the service exception hierarchy with one call:

    register_error_handlers(document_bp)
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from app.core.exceptions import (
    ChatConnectionError,
    ChatDeliveryError,
    ConflictError,
    NotFoundError,
    ProtocolAllocationError,
    StageLockedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (ERR_ prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    STAGE_LOCKED = "ERR_STAGE_LOCKED"
    PROTOCOL_EXHAUSTED = "ERR_PROTOCOL_EXHAUSTED"

    # Upstream / availability
    COUNTER_UNAVAILABLE = "ERR_COUNTER_UNAVAILABLE"
    CHAT_UNAVAILABLE = "ERR_CHAT_UNAVAILABLE"
    CHAT_DELIVERY = "ERR_CHAT_DELIVERY"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.STAGE_LOCKED: 409,
    E.PROTOCOL_EXHAUSTED: 409,
    E.COUNTER_UNAVAILABLE: 503,
    E.CHAT_UNAVAILABLE: 503,
    E.CHAT_DELIVERY: 502,
    E.DATABASE: 500,
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
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, stage index, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)``, drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


# ── Exception → response mapping ──────────────────────────────────────


def register_error_handlers(bp):
    """Attach handlers for the service exception hierarchy to *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(StageLockedError)
    def _handle_stage_locked(error: StageLockedError):
        return api_error(
            E.STAGE_LOCKED, str(error),
            details={"stage_index": error.stage_index, "reason": error.reason},
        )

    @bp.errorhandler(ProtocolAllocationError)
    def _handle_protocol(error: ProtocolAllocationError):
        logger.error("Protocol allocation failed: %s", error, extra={"attempt": error.attempts})
        return api_error(
            E.PROTOCOL_EXHAUSTED, str(error),
            details={"table": error.table, "attempts": error.attempts},
        )

    @bp.errorhandler(ChatConnectionError)
    def _handle_chat_connection(error: ChatConnectionError):
        return api_error(E.CHAT_UNAVAILABLE, str(error))

    @bp.errorhandler(ChatDeliveryError)
    def _handle_chat_delivery(error: ChatDeliveryError):
        return api_error(E.CHAT_DELIVERY, str(error), details={"temp_id": error.temp_id})

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
