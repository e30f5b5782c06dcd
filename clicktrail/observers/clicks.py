"""Global click listener.

pynput listeners run on their own threads; every click is handed back to the
asyncio loop with ``call_soon_threadsafe`` so the callback never blocks the
listener.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional, Set, Tuple

from pynput import keyboard, mouse

logger = logging.getLogger(__name__)

ClickCallback = Callable[[Tuple[float, float], Tuple[str, ...]], None]

MODIFIER_ORDER = ("command", "option", "control", "shift")

_MODIFIER_KEYS = {
    keyboard.Key.cmd: "command",
    keyboard.Key.cmd_l: "command",
    keyboard.Key.cmd_r: "command",
    keyboard.Key.alt: "option",
    keyboard.Key.alt_l: "option",
    keyboard.Key.alt_r: "option",
    keyboard.Key.ctrl: "control",
    keyboard.Key.ctrl_l: "control",
    keyboard.Key.ctrl_r: "control",
    keyboard.Key.shift: "shift",
    keyboard.Key.shift_l: "shift",
    keyboard.Key.shift_r: "shift",
}

CLICK_BUTTONS = (mouse.Button.left, mouse.Button.right)


class ClickObserver:
    def __init__(self, callback: ClickCallback, loop: asyncio.AbstractEventLoop):
        self._callback = callback
        self._loop = loop
        self._held: Set[keyboard.Key] = set()
        self._held_lock = threading.Lock()
        self._mouse_listener: Optional[mouse.Listener] = None
        self._key_listener: Optional[keyboard.Listener] = None

    # ─────────────────────────────── modifiers
    def _on_press(self, key) -> None:
        if key in _MODIFIER_KEYS:
            with self._held_lock:
                self._held.add(key)

    def _on_release(self, key) -> None:
        with self._held_lock:
            self._held.discard(key)

    def modifiers(self) -> Tuple[str, ...]:
        with self._held_lock:
            names = {_MODIFIER_KEYS[key] for key in self._held}
        return tuple(name for name in MODIFIER_ORDER if name in names)

    # ─────────────────────────────── clicks
    def _on_click(self, x: float, y: float, button, pressed: bool) -> None:
        if not pressed or button not in CLICK_BUTTONS:
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._callback, (float(x), float(y)), self.modifiers())

    # ─────────────────────────────── lifecycle
    def start(self) -> None:
        self._mouse_listener = mouse.Listener(on_click=self._on_click)
        self._key_listener = keyboard.Listener(on_press=self._on_press, on_release=self._on_release)
        self._mouse_listener.start()
        self._key_listener.start()
        logger.info("Click listener started")

    def stop(self) -> None:
        for listener in (self._mouse_listener, self._key_listener):
            if listener is not None:
                listener.stop()
        self._mouse_listener = self._key_listener = None
        with self._held_lock:
            self._held.clear()
        logger.info("Click listener stopped")
