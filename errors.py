"""Failure types raised by the catalog, identity and loan modules.

Each carries a short ``code`` and the HTTP status the API answers with, so the
API layer can translate any of them with a single exception handler.
"""


class LibraryError(Exception):
    code = "library_error"
    http_status = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class OutOfStock(LibraryError):
    """No copy of the book is available at request or approval time."""
    code = "out_of_stock"
    http_status = 409


class InvalidState(LibraryError):
    """The loan (or record) is not in a status that allows the action."""
    code = "invalid_state"
    http_status = 409


class MissingReason(LibraryError):
    code = "missing_reason"
    http_status = 422


class InvalidDate(LibraryError):
    code = "invalid_date"
    http_status = 422


class NotFound(LibraryError):
    code = "not_found"
    http_status = 404


class Unauthorized(LibraryError):
    """The acting user is missing or lacks the required role."""
    code = "unauthorized"
    http_status = 401

    def __init__(self, message: str = "", *, authenticated: bool = False) -> None:
        super().__init__(message)
        # An identified user without the right role gets 403 instead of 401.
        if authenticated:
            self.http_status = 403


class ExternalServiceError(Exception):
    """Raised when an external metadata service cannot be reached."""
