"""Exception types raised across the assistant."""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for all assistant errors."""


class ToolValidationError(AssistantError):
    """Tool arguments failed validation before any side effect."""


class CalendarBackendError(AssistantError):
    """The calendar service could not complete a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EventNotFoundError(CalendarBackendError):
    """The requested event does not exist."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event {event_id} not found", status_code=404)
        self.event_id = event_id


class ModelServiceError(AssistantError):
    """The language-model service failed or returned an unusable response."""


class EmptyHistoryError(AssistantError):
    """History normalization left nothing to send to the model."""


class CacheError(AssistantError):
    """The shared cache tier failed."""
