from __future__ import annotations


class BookkeepingError(Exception):
    """Base class; `kind` is a stable machine-readable tag."""

    kind = "bookkeeping"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_json(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(BookkeepingError):
    """Malformed or ambiguous ticket."""

    kind = "validation"


class AuthorizationError(BookkeepingError):
    """Missing permission bit or bad credentials."""

    kind = "authorization"


class SelfGrantError(AuthorizationError):
    pass


class NotFoundError(BookkeepingError):
    kind = "not_found"


class ConflictError(BookkeepingError):
    kind = "conflict"


class InsufficientLotsError(BookkeepingError):
    """Raised when a sell demands more than the open FIFO quantity."""

    kind = "insufficient_lots"


class ConstraintError(BookkeepingError):
    """Invalid ISIN, price, quantity or password."""

    kind = "constraint"
