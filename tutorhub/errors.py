"""Domain errors raised by the service layer and rendered by the API."""

from typing import Optional


class DomainError(Exception):
    """Base for every error a caller is expected to see."""

    code = "domain_error"
    http_status = 400

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidInput(DomainError):
    code = "invalid_input"


class InvalidStatus(InvalidInput):
    code = "invalid_status"


class InvalidRole(InvalidInput):
    code = "invalid_role"


class InvalidReference(DomainError):
    """A referenced user id does not resolve."""
    code = "invalid_reference"


class NotFound(DomainError):
    code = "not_found"
    http_status = 404


class Duplicate(DomainError):
    code = "duplicate"
    http_status = 409


class Forbidden(DomainError):
    code = "forbidden"
    http_status = 403


class InvalidState(DomainError):
    """Operation not allowed at the entity's current lifecycle stage."""
    code = "invalid_state"
