"""Service error types.

Services raise these for every predictable failure; the HTTP layer maps
them to a status code and an `{"errors": [...]}` body. Anything else
escaping a service is an unexpected fault.
"""

from typing import Any, List, Optional

from pydantic import BaseModel


class FieldError(BaseModel):
    """A single problem with a request payload.

    `field` names the offending field (None for a general error), `index`
    the position inside a collection field, `value` the rejected value and
    `expected` the value that would have been accepted, when known.
    """
    field: Optional[str] = None
    index: Optional[int] = None
    message: str
    value: Any = None
    expected: Any = None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class ServiceError(Exception):
    status_code = 500

    def __init__(self, errors: Optional[List[FieldError]] = None, message: Optional[str] = None):
        self.errors = list(errors or [])
        self.message = message or (self.errors[0].message if self.errors else self.__class__.__name__)
        super().__init__(self.message)


class NotFound(ServiceError):
    status_code = 404


class Forbidden(ServiceError):
    status_code = 403


class ValidationFailed(ServiceError):
    status_code = 400


class Conflict(ServiceError):
    status_code = 409


class DuplicateResultError(Exception):
    """Raised by the result repository when a single-response result already exists."""
