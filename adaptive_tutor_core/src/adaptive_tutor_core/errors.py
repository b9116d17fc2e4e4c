"""
Error Taxonomy

Exceptions raised across the routing, embedding, indexing and tutoring core.
Cache-tier failures never surface as these; they are absorbed where they happen.
"""

from typing import Optional


class TutorCoreError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(TutorCoreError):
    """A required credential or model reference is missing. Fatal at startup."""


class NotInitializedError(TutorCoreError):
    """An operation was attempted before the service finished its setup."""


class ValidationError(TutorCoreError):
    """Empty or malformed input, or vectors of different dimensions."""


class UpstreamUnavailable(TutorCoreError):
    """The model, index or durable store could not be reached."""


class MalformedResponse(TutorCoreError):
    """Structured text returned by the model could not be parsed."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class NotFoundError(TutorCoreError):
    """An entity an operation depends on does not exist."""

    def __init__(self, kind: str, identifier: str, reason: Optional[str] = None):
        self.kind = kind
        self.identifier = identifier
        message = f"{kind} '{identifier}' not found"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class CollectionNotFoundError(NotFoundError):
    def __init__(self, collection: str):
        super().__init__("Collection", collection)


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str):
        super().__init__("Session", session_id, reason="unknown or expired")
