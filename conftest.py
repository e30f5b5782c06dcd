"""Shared fakes and fixtures for the ClickTrail test suite."""

import json
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import List, Optional, Sequence, Union

import pytest
from PIL import Image

from clicktrail.config_manager import ConfigManager
from clicktrail.errors import CaptureFailure
from clicktrail.observers.context import ContextProvider
from clicktrail.observers.screen import ScreenshotSource
from clicktrail.schemas import AppDescriptor, ClickEvent, Rect, UIElementDescriptor, WindowDescriptor
from clicktrail.services.llm_client import LLMClient
from clicktrail.storage import SessionStore

MACHINE_ID = "TEST-MACHINE"
SESSION_START = datetime(2025, 3, 14, 9, 26, 53, tzinfo=timezone.utc)


def png_bytes(color=(255, 255, 255), size=(16, 16)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def usage_json(*pairs) -> str:
    apps = ", ".join(f'{{"appName": "{name}", "secondsUsed": {seconds}}}' for name, seconds in pairs)
    return f'{{"apps": [{apps}]}}'


def envelope(content: str) -> str:
    return json.dumps({"choices": [{"message": {"role": "assistant", "content": content}}]})


class FakeScreen(ScreenshotSource):
    """Plays back ``frames`` one per capture, repeating the last one forever.

    A frame that is an exception instance is raised instead of returned.
    """

    def __init__(self, frames: Sequence[Union[bytes, Exception]], on_capture=None):
        self.frames = list(frames)
        self.calls = 0
        self.on_capture = on_capture

    def capture(self) -> bytes:
        index = min(self.calls, len(self.frames) - 1)
        self.calls += 1
        if self.on_capture is not None:
            self.on_capture(self.calls)
        frame = self.frames[index]
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def grab(self) -> bytes:
        return self.capture()


class FakeContext(ContextProvider):
    def __init__(self, app_name: str = "Xcode", fail_active_app: bool = False, fail_element: bool = False):
        self.app = AppDescriptor(name=app_name, bundle_identifier="com.apple.dt.Xcode", process_id=4242)
        self.fail_active_app = fail_active_app
        self.fail_element = fail_element

    def active_app(self) -> AppDescriptor:
        if self.fail_active_app:
            raise CaptureFailure("frontmost app unknown")
        return self.app

    def element_at(self, point):
        if self.fail_element:
            raise CaptureFailure("accessibility denied")
        return UIElementDescriptor(role="AXButton", title="Build", element_type="button")

    def windows(self):
        return [
            WindowDescriptor(
                title="main.swift",
                owner_name=self.app.name,
                bundle_identifier=self.app.bundle_identifier,
                bounds=Rect(x=0, y=25, width=1440, height=875),
                layer=0,
            )
        ]

    def running_apps(self):
        return [self.app, AppDescriptor(name="Finder", bundle_identifier="com.apple.finder", process_id=1)]


class FakeLLMClient(LLMClient):
    """Returns queued assistant contents; an exception in the queue is raised."""

    provider = "Fake"

    def __init__(self, contents: Sequence[Union[str, Exception]] = (), default: Optional[str] = None):
        super().__init__("test-key", "fake-model")
        self.contents: List[Union[str, Exception]] = list(contents)
        self.default = default or usage_json(("Xcode", 60))
        self.requests: List[list] = []

    async def _send(self, messages, json_schema, log) -> str:
        self.requests.append(messages)
        content = self.contents.pop(0) if self.contents else self.default
        if isinstance(content, Exception):
            raise content
        return content


class FakeListener:
    instances: List["FakeListener"] = []

    def __init__(self, callback, loop):
        self.callback = callback
        self.loop = loop
        self.started = False
        self.stopped = False
        FakeListener.instances.append(self)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


def make_event(timestamp: datetime, app_name: str = "Xcode", modifiers=()) -> ClickEvent:
    return ClickEvent(
        timestamp=timestamp,
        mouse_position=(640.0, 400.0),
        active_app=AppDescriptor(name=app_name, bundle_identifier=f"com.example.{app_name.lower()}", process_id=100),
        clicked_element=UIElementDescriptor(role="AXButton", title="OK"),
        open_windows=(WindowDescriptor(owner_name=app_name, bounds=Rect(x=0, y=0, width=800, height=600)),),
        running_apps=(),
        modifier_flags=tuple(modifiers),
    )


def record_session(store: SessionStore, count: int, start: datetime = SESSION_START, gap: float = 30.0) -> str:
    """Write ``count`` complete events into a new sealed session."""
    session_id = store.start_session(now=start)
    for i in range(count):
        event = make_event(start + timedelta(seconds=gap * i), app_name="Xcode" if i % 2 == 0 else "Safari")
        store.write(session_id, event, png_bytes((i % 256, 0, 0)), png_bytes((0, i % 256, 0)))
    store.end_session()
    return session_id


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "sessions", MACHINE_ID)


@pytest.fixture
def config(tmp_path, monkeypatch) -> ConfigManager:
    for name in ("OPENAI_API_KEY", "HF_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    manager = ConfigManager(config_dir=str(tmp_path / "config"), load_env=False)
    manager.update_section("capture", {"data_dir": str(tmp_path / "data")})
    return manager
