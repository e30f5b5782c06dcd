"""
Platform-facing collaborators of the capture pipeline: screen pixels, UI
context and the global click listener.

``clicks`` is not imported here: pynput needs a display connection at import
time, so it is loaded only when monitoring actually starts.
"""

from .context import ContextProvider, UnavailableContextProvider, get_context_provider
from .screen import ScreenCapture, ScreenshotSource

__all__ = [
    "ContextProvider",
    "UnavailableContextProvider",
    "get_context_provider",
    "ScreenCapture",
    "ScreenshotSource",
]
