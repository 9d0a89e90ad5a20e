"""Discriminated outcomes returned by tool handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from calendar_assistant.errors import CalendarBackendError, EventNotFoundError, ToolValidationError
from calendar_assistant.models import Slot


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    BACKEND = "backend"
    INTERNAL = "internal"


@dataclass(slots=True, frozen=True)
class Ok:
    payload: Any = None


@dataclass(slots=True, frozen=True)
class Conflict:
    """The requested time collides with existing commitments."""

    payload: dict[str, Any]
    suggestions: list[Slot] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class Err:
    kind: ErrorKind
    message: str


HandlerResult = Union[Ok, Conflict, Err]


def err_from_exception(exc: BaseException) -> Err:
    """Map an exception raised inside a handler to an Err."""

    if isinstance(exc, EventNotFoundError):
        return Err(ErrorKind.NOT_FOUND, str(exc))
    if isinstance(exc, CalendarBackendError):
        if exc.status_code in (401, 403):
            return Err(ErrorKind.AUTH, str(exc))
        return Err(ErrorKind.BACKEND, str(exc))
    if isinstance(exc, (ToolValidationError, ValueError)):
        return Err(ErrorKind.VALIDATION, str(exc))
    if isinstance(exc, TimeoutError):
        return Err(ErrorKind.BACKEND, str(exc) or "Operation timed out")
    return Err(ErrorKind.INTERNAL, str(exc) or exc.__class__.__name__)
