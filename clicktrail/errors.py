"""
Error taxonomy for ClickTrail.

Capture-time errors are contained per event by the recorder. Analysis-time
errors abort the whole ``analyze_session`` call.
"""

from typing import Optional


class ClickTrailError(Exception):
    """Base class for every error raised by ClickTrail."""


# --- capture -----------------------------------------------------------------

class CaptureFailure(ClickTrailError):
    """A screenshot or a context lookup failed."""


class StabilityTimeout(ClickTrailError):
    """The screen did not settle before the stability deadline."""


class CaptureCancelled(ClickTrailError):
    """The owning session ended while an event was still being captured."""


# --- storage -----------------------------------------------------------------

class StorageFailure(ClickTrailError):
    """Writing or reading session artifacts failed."""


class SessionSealed(StorageFailure):
    """A write targeted a session that is not open."""


class SessionNotFound(StorageFailure):
    """No session folder exists for the requested id."""


class DataIntegrityError(StorageFailure):
    """A metadata file has no matching before/after screenshot."""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = missing or []


# --- analysis ----------------------------------------------------------------

class NoEventsFound(ClickTrailError):
    """The session holds no metadata files."""

    def __str__(self) -> str:
        return super().__str__() or "No events found in this session."


class MissingCredential(ClickTrailError):
    """No API key is configured for the selected provider."""

    def __str__(self) -> str:
        return super().__str__() or "API key not configured. Please set your API key in settings."


class MissingModelSelection(ClickTrailError):
    """No model is selected for the selected provider."""

    def __str__(self) -> str:
        return super().__str__() or "No model selected. Please select a model in settings."


class ApiRequestFailed(ClickTrailError):
    """Non-2xx status or transport error talking to the LLM provider."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class ResponseDecodeFailure(ClickTrailError):
    """The provider envelope or the structured content was not valid."""

    def __init__(self, message: str, body: Optional[str] = None):
        super().__init__(message)
        self.body = body


class AnalysisCancelled(ClickTrailError):
    """The caller aborted an analysis run."""


# --- monitoring --------------------------------------------------------------

class InvalidTransition(ClickTrailError):
    """A monitoring command is not valid in the current state."""
