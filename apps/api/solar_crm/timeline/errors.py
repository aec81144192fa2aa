from __future__ import annotations

from typing import Any


class TimelineError(Exception):
    """Base error for step catalog and lead timeline operations.

    Each subclass carries a stable ``code`` and the HTTP status the API layer
    maps it to, so callers never need to inspect the message text.
    """

    code = "timeline_error"
    status_code = 400

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(TimelineError):
    code = "not_found"
    status_code = 404


class NotAuthorizedError(TimelineError):
    """Raised when the actor's role may not act on the step or lead."""

    code = "not_authorized"
    status_code = 403


class AlreadyCompletedError(TimelineError):
    code = "already_completed"
    status_code = 409


class StepNotActiveError(TimelineError):
    """Raised when the step is not in a status the operation can start from."""

    code = "step_not_active"
    status_code = 409


class ValidationError(TimelineError):
    code = "validation_failed"
    status_code = 422


class MissingDocumentsError(TimelineError):
    """Raised when required document categories have no valid submitted document."""

    code = "missing_documents"
    status_code = 422

    def __init__(self, missing_categories: list[str]) -> None:
        self.missing_categories = sorted(set(missing_categories))
        super().__init__(
            f"Missing required documents: {', '.join(self.missing_categories)}",
            details={"missing_documents": self.missing_categories},
        )


class DatabaseError(TimelineError):
    code = "database_error"
    status_code = 500
