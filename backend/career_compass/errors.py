from __future__ import annotations

import functools
import sqlite3
from typing import Any, Callable, TypeVar

F = TypeVar("F", bound=Callable[..., Any])


class AccessError(Exception):
    """Base class for policy and workflow violations raised by the controller."""

    code = "ACCESS_ERROR"
    status_code = 400
    default_message = "request rejected"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class PermissionDenied(AccessError):
    code = "PERMISSION_DENIED"
    status_code = 403
    default_message = "permission denied"


class AlreadyRequested(AccessError):
    code = "ALREADY_REQUESTED"
    status_code = 409
    default_message = "join request already pending"


class AlreadyMember(AccessError):
    code = "ALREADY_MEMBER"
    status_code = 409
    default_message = "already a member of this group"


class NotPending(AccessError):
    code = "NOT_PENDING"
    status_code = 409
    default_message = "user has no pending join request"


class PreconditionFailed(AccessError):
    code = "PRECONDITION_FAILED"
    status_code = 409
    default_message = "target is not in the required state"


class NotFound(AccessError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "not found"


class StoreUnavailable(AccessError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    default_message = "store unavailable"


def guard_store(func: F) -> F:
    """Surface sqlite failures from the wrapped call as StoreUnavailable."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"{func.__name__}: {exc}") from exc

    return wrapper  # type: ignore[return-value]
