"""
Event Recorder

Turns one click into one stored event:

    baseline screenshot → active app → optional context → wait for a
    stable screen → ClickEvent → click marker on the baseline → store

Every failure is contained to the click that caused it. Only a missing
active app drops the event; any other missing piece is stored as absent.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, TypeVar

from .annotator import ClickMarkerAnnotator
from .errors import CaptureCancelled, CaptureFailure, ClickTrailError, SessionSealed, StorageFailure
from .observers.context import ContextProvider
from .observers.screen import ScreenshotSource
from .schemas import ClickEvent
from .stability import DEFAULT_INTERVAL, DEFAULT_TIMEOUT, DEFAULT_WINDOW, StabilityDetector
from .storage import SessionArtifactKey, SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventRecorder:
    def __init__(
        self,
        store: SessionStore,
        screen: ScreenshotSource,
        context: ContextProvider,
        annotator: Optional[ClickMarkerAnnotator] = None,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        window: int = DEFAULT_WINDOW,
    ):
        self.store = store
        self.screen = screen
        self.context = context
        self.annotator = annotator or ClickMarkerAnnotator()
        self.interval = interval
        self.timeout = timeout
        self.window = window
        self._session_id: Optional[str] = None
        self._cancel: Optional[asyncio.Event] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def bind(self, session_id: str, cancel: asyncio.Event) -> None:
        """Route subsequent clicks into ``session_id`` until ``cancel`` is set."""
        self._session_id = session_id
        self._cancel = cancel

    def unbind(self) -> None:
        self._session_id = None
        self._cancel = None

    @staticmethod
    def _optional(label: str, lookup: Callable[[], T], default: T) -> T:
        try:
            return lookup()
        except CaptureFailure as exc:
            logger.warning(f"Context lookup '{label}' failed, storing without it: {exc}")
        except Exception as exc:
            logger.warning(f"Context lookup '{label}' crashed, storing without it: {type(exc).__name__}: {exc}")
        return default

    async def on_click(
        self,
        position: Tuple[float, float],
        modifiers: Tuple[str, ...] = (),
    ) -> Optional[SessionArtifactKey]:
        """Capture and persist one click. Returns the stored key, or None if dropped."""
        session_id, cancel = self._session_id, self._cancel
        if session_id is None:
            logger.debug("Click ignored: no open session")
            return None

        clicked_at = datetime.now(timezone.utc)
        try:
            return await self._record(session_id, cancel, clicked_at, position, modifiers)
        except CaptureCancelled:
            logger.info(f"Click at {position} dropped: session {session_id} ended mid-capture")
        except SessionSealed:
            logger.info(f"Click at {position} dropped: session {session_id} is sealed")
        except StorageFailure as exc:
            logger.error(f"Click at {position} not stored: {exc}")
        except ClickTrailError as exc:
            logger.warning(f"Click at {position} dropped: {type(exc).__name__}: {exc}")
        return None

    async def _record(
        self,
        session_id: str,
        cancel: Optional[asyncio.Event],
        clicked_at: datetime,
        position: Tuple[float, float],
        modifiers: Tuple[str, ...],
    ) -> SessionArtifactKey:
        # 1. baseline, before anything yields to the loop
        try:
            before: Optional[bytes] = self.screen.capture()
        except CaptureFailure as exc:
            logger.warning(f"Baseline screenshot failed: {exc}")
            before = None

        # 2. active app is mandatory
        try:
            active_app = self.context.active_app()
        except Exception as exc:
            raise CaptureFailure(f"Active app unavailable, dropping event: {exc}") from exc

        # 3. everything else is optional
        element, windows, apps = await asyncio.to_thread(
            lambda: (
                self._optional("clicked element", lambda: self.context.element_at(position), None),
                self._optional("windows", self.context.windows, []),
                self._optional("running apps", self.context.running_apps, []),
            )
        )

        # 4. after screenshot
        outcome = await StabilityDetector(self.window).wait_until_stable(
            self.screen.grab,
            interval=self.interval,
            timeout=self.timeout,
            cancel=cancel,
            fallback=before,
        )

        # 5.
        event = ClickEvent(
            timestamp=clicked_at,
            mouse_position=position,
            active_app=active_app,
            clicked_element=element,
            open_windows=tuple(windows),
            running_apps=tuple(apps),
            modifier_flags=tuple(modifiers),
        )

        # 6. only the baseline gets the marker
        if before is not None and self.annotator.enabled:
            try:
                before = self.annotator.annotate(before, self.screen.to_image_point(position))
            except (OSError, ValueError) as exc:
                logger.warning(f"Click marker not drawn: {exc}")

        # 7.
        if cancel is not None and cancel.is_set():
            raise CaptureCancelled("Session ended before the event was stored")
        key = await asyncio.to_thread(self.store.write, session_id, event, before, outcome.image)
        logger.info(
            f"Recorded click in {active_app.name} @({position[0]:.0f},{position[1]:.0f}) "
            f"{'stable' if outcome.stable else 'unsettled'} after {outcome.samples} samples"
        )
        return key
