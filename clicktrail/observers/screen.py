from __future__ import annotations
###############################################################################
# Imports                                                                     #
###############################################################################

# -- Standard library --
import asyncio
import logging
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Optional, Tuple

# -- Third-party --
import mss
from mss.exception import ScreenShotError
from PIL import Image

# -- Local --
from ..errors import CaptureFailure

logger = logging.getLogger(__name__)

###############################################################################
# Screenshot source                                                           #
###############################################################################


class ScreenshotSource(ABC):
    """Returns the full screen as PNG bytes, or raises :class:`CaptureFailure`."""

    @abstractmethod
    def capture(self) -> bytes:
        ...

    async def grab(self) -> bytes:
        """Non-blocking variant of :meth:`capture` for polling loops."""
        return await asyncio.to_thread(self.capture)

    def to_image_point(self, point: Tuple[float, float]) -> Tuple[float, float]:
        """Map a global click position to pixel coordinates in the captured image."""
        return point


class ScreenCapture(ScreenshotSource):
    """Primary-display capture through mss.

    A fresh ``mss`` context is opened for every capture because grabs happen
    on worker threads and mss handles must not cross threads.
    """

    _MON_START: int = 1  # first real display in mss

    def __init__(self) -> None:
        self._monitor: Optional[dict] = None
        self._size: Optional[Tuple[int, int]] = None

    # ─────────────────────────────── tiny sync helpers
    @staticmethod
    def _mon_for(x: float, y: float, mons: list[dict]) -> Optional[int]:
        """Find which monitor contains the given coordinates."""
        for idx, m in enumerate(mons, 1):
            if m["left"] <= x < m["left"] + m["width"] and m["top"] <= y < m["top"] + m["height"]:
                return idx
        return None

    @staticmethod
    def _encode_png(frame) -> bytes:
        image = Image.frombytes("RGB", (frame.width, frame.height), frame.rgb)
        buffer = BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    # ─────────────────────────────── capture
    def capture(self) -> bytes:
        try:
            with mss.mss() as sct:
                monitors = sct.monitors[self._MON_START:]
                if not monitors:
                    raise CaptureFailure("No display available")
                monitor = monitors[0]
                frame = sct.grab(monitor)
        except ScreenShotError as exc:
            raise CaptureFailure(f"Screen capture failed (is screen recording permitted?): {exc}") from exc

        self._monitor = dict(monitor)
        self._size = (frame.width, frame.height)
        return self._encode_png(frame)

    def to_image_point(self, point: Tuple[float, float]) -> Tuple[float, float]:
        if self._monitor is None or self._size is None:
            return point
        x, y = point
        if self._mon_for(x, y, [self._monitor]) is None:
            logger.debug(f"Click at ({x:.0f},{y:.0f}) is outside the captured display")
        # Retina displays capture at a multiple of the logical size
        scale_x = self._size[0] / self._monitor["width"]
        scale_y = self._size[1] / self._monitor["height"]
        return (x - self._monitor["left"]) * scale_x, (y - self._monitor["top"]) * scale_y
