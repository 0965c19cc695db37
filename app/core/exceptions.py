"""
Platform-wide exception hierarchy.

Every lifecycle service raises one of these types; the blueprint registers a
handler per type once and gets consistent status codes and error codes
everywhere.  No other exception type is meant to reach the HTTP boundary.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Indicator", resource_id=42)
    raise ValidationError("A rejection remark is required", details={"remark": "required"})
"""


class NotFoundError(Exception):
    """Raised when an indicator, category, user or evidence item is absent.

    Args:
        resource: Human-readable entity name (e.g. "Indicator", "Evidence").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.details: dict = {}
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or missing a required value.

    Examples: missing rejection remark, score outside [0, 100], no assignee,
    due date not after start date.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when the request is well-formed but clashes with stored state.

    Examples: category hierarchy mismatch, self-parented category, an action
    that is not valid from the indicator's current status, or a write based
    on a stale revision.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the actor may not perform the operation.

    Covers a role without the capability, a non-top-authority edit of a
    sealed record, and evidence operations by someone other than the uploader.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StorageError(Exception):
    """Raised when evidence could not be stored; nothing was committed."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
