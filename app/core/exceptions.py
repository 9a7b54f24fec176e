"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Oficio", resource_id="6f1c...")
    raise ValidationError("Stage body is required", details={"body": "empty"})

Taxonomy:
    ValidationError          user input blocked before the action (422)
    NotFoundError            missing record (404)
    ConflictError            duplicate / invalid state (409)
    StageLockedError         edit attempted on a read-only stage (409)
    ProtocolAllocationError  protocol retry bound exhausted, fatal (409)
    ChatConnectionError      read path failed; last-known-good data kept (503)
    ChatDeliveryError        message write failed; placeholder removed (502)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Oficio", "ChatSession").
        resource_id: The key that was looked up. Included in logs and message.
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
    """Raised when input fails business-rule validation in the service layer.

    The data was well-formed but the action is not allowed yet (missing
    signer before advancing a stage, empty message body, unknown block type).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StageLockedError(Exception):
    """Raised when a write targets a stage that is not the editable current stage.

    Args:
        stage_index: The stage the caller tried to modify.
        reason: "historic", "not_viewing_current" or "approved_lock".
    """

    def __init__(self, stage_index: int, reason: str) -> None:
        self.stage_index = stage_index
        self.reason = reason
        super().__init__(f"Stage {stage_index} is read-only ({reason})")


class ProtocolAllocationError(Exception):
    """Raised when a unique protocol could not be allocated.

    Fatal: the retry bound was exhausted (or the counter could not mint a
    new value). Callers must surface this, never retry it silently.
    """

    def __init__(self, table: str, attempts: int, last_protocol: str | None = None) -> None:
        self.table = table
        self.attempts = attempts
        self.last_protocol = last_protocol
        super().__init__(
            f"Could not allocate a unique protocol for {table} after {attempts} attempt(s)"
            + (f" (last tried {last_protocol})" if last_protocol else "")
        )


class ChatConnectionError(Exception):
    """Raised when a chat read path (history fetch) fails.

    In-memory state is preserved; the UI shows a connection error instead
    of an empty inbox.
    """


class ChatDeliveryError(Exception):
    """Raised when sending a chat message fails after the optimistic placeholder
    was shown. The placeholder has already been removed when this is raised.
    """

    def __init__(self, message: str, temp_id: str | None = None) -> None:
        self.temp_id = temp_id
        super().__init__(message)
