"""
Post-click screen stability detection.

After a click the UI may still be animating or loading. We poll the screen at a fixed
cadence and call it settled once the last ``window`` frames hash identically.
Digests are SHA-256 of the raw image bytes.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Optional

from .errors import CaptureCancelled, CaptureFailure, StabilityTimeout

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 3
DEFAULT_INTERVAL = 0.1  # seconds between samples
DEFAULT_TIMEOUT = 1.0  # seconds from the first sample


def fingerprint(image: bytes) -> str:
    return hashlib.sha256(image).hexdigest()


@dataclass
class StabilityOutcome:
    image: Optional[bytes]
    stable: bool
    samples: int
    elapsed: float


class StabilityDetector:
    """Sliding window over the most recent screenshot fingerprints."""

    def __init__(self, window: int = DEFAULT_WINDOW):
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = window
        self._history: Deque[str] = deque(maxlen=window)

    def reset(self) -> None:
        self._history.clear()

    def push(self, image: bytes) -> bool:
        """Record one frame and report whether the screen is now stable."""
        self._history.append(fingerprint(image))
        return self.is_stable()

    def is_stable(self) -> bool:
        return len(self._history) == self.window and len(set(self._history)) == 1

    async def wait_until_stable(
        self,
        grab: Callable[[], Awaitable[bytes]],
        *,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        cancel: Optional[asyncio.Event] = None,
        fallback: Optional[bytes] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> StabilityOutcome:
        """Poll ``grab`` until stable or until ``timeout`` has elapsed.

        Sampling is strictly sequential: capture, digest, compare, sleep.
        A failed capture is skipped and retried on the next tick. ``timeout``
        is a hard bound: a capture still running at the deadline is abandoned.
        On timeout
        the last frame captured is returned; ``fallback`` is only used when
        no frame could be captured at all.

        Raises:
            CaptureCancelled: ``cancel`` was set while waiting.
        """
        self.reset()
        start = clock()
        samples = 0
        last: Optional[bytes] = None

        while True:
            if cancel is not None and cancel.is_set():
                raise CaptureCancelled("Session ended while waiting for the screen to settle")

            # The deadline also bounds a single capture that hangs
            remaining = max(0.0, timeout - (clock() - start))
            if samples and remaining <= 0:
                break
            try:
                frame = await asyncio.wait_for(grab(), remaining)
            except asyncio.TimeoutError:
                logger.debug(f"Stability sample {samples} still pending at the deadline")
                break
            except CaptureFailure as exc:
                logger.debug(f"Skipping stability sample {samples}: {exc}")
                frame = None

            if frame is not None:
                last = frame
                if self.push(frame):
                    elapsed = clock() - start
                    logger.debug(f"Screen stable after {samples + 1} samples ({elapsed * 1000:.0f} ms)")
                    return StabilityOutcome(frame, True, samples + 1, elapsed)
            samples += 1

            if clock() - start >= timeout:
                break
            await sleep(interval)

        elapsed = clock() - start
        logger.warning(
            f"{StabilityTimeout.__name__}: screen not stable after {elapsed * 1000:.0f} ms, "
            f"using {'last sample' if last is not None else 'baseline'}"
        )
        return StabilityOutcome(last if last is not None else fallback, False, samples, elapsed)
