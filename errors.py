import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class AppError(HTTPException):
    status_code = 500
    default_message = "Server Error"

    def __init__(self, message: str = None):
        super().__init__(status_code=self.status_code, detail=message or self.default_message)

    @property
    def message(self) -> str:
        return self.detail


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class AuthError(AppError):
    status_code = 401
    default_message = "Not authorized to access this route"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Not permitted"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class InsufficientStockError(ConflictError):
    default_message = "Insufficient stock"


class IntegrationError(AppError):
    status_code = 502
    default_message = "External service unavailable"


def describe_errors(errors: Iterable[Dict[str, Any]]) -> str:
    """Flatten pydantic error dicts into one readable message."""
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        msg = err.get("msg", "Invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or ValidationError.default_message


@contextmanager
def best_effort(action: str) -> Iterator[None]:
    """Run an external side effect whose failure must not abort the caller.

    Failures are logged with their traceback and swallowed.
    """
    try:
        yield
    except Exception:
        logger.exception("Best-effort call failed: %s", action)
