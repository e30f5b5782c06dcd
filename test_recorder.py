import asyncio
import json

import pytest

from clicktrail.annotator import ClickMarkerAnnotator
from clicktrail.errors import CaptureFailure
from clicktrail.recorder import EventRecorder
from conftest import FakeContext, FakeScreen, SESSION_START, png_bytes

BASELINE = png_bytes((255, 255, 255), size=(100, 100))
SETTLED = png_bytes((0, 0, 255), size=(100, 100))


def recorder_for(store, screen, context=None, annotator=None, timeout=0.2):
    return EventRecorder(
        store,
        screen,
        context or FakeContext(),
        annotator or ClickMarkerAnnotator(),
        interval=0.001,
        timeout=timeout,
    )


def bind(recorder, store):
    session_id = store.start_session(now=SESSION_START)
    cancel = asyncio.Event()
    recorder.bind(session_id, cancel)
    return session_id, cancel


@pytest.mark.asyncio
async def test_click_is_stored_with_context_and_both_screenshots(store):
    screen = FakeScreen([BASELINE, SETTLED])
    recorder = recorder_for(store, screen)
    session_id, _ = bind(recorder, store)

    key = await recorder.on_click((50.0, 50.0), ("command",))

    assert key is not None
    [record] = store.list_events(session_id, strict=True)
    event = record.event
    assert event.active_app.name == "Xcode"
    assert event.clicked_element.title == "Build"
    assert event.modifier_flags == ("command",)
    assert event.mouse_position == (50.0, 50.0)
    assert len(event.running_apps) == 2
    assert event.open_windows[0].owner_name == "Xcode"
    assert record.after_path.read_bytes() == SETTLED
    # The marker goes on the baseline only
    assert record.before_path.read_bytes() == ClickMarkerAnnotator().annotate(BASELINE, (50.0, 50.0))


@pytest.mark.asyncio
async def test_marker_can_be_disabled(store):
    recorder = recorder_for(store, FakeScreen([BASELINE, SETTLED]), annotator=ClickMarkerAnnotator(enabled=False))
    session_id, _ = bind(recorder, store)

    await recorder.on_click((10.0, 10.0))

    [record] = store.list_events(session_id)
    assert record.before_path.read_bytes() == BASELINE


@pytest.mark.asyncio
async def test_missing_active_app_drops_event(store):
    recorder = recorder_for(store, FakeScreen([BASELINE]), context=FakeContext(fail_active_app=True))
    session_id, _ = bind(recorder, store)

    assert await recorder.on_click((1.0, 1.0)) is None
    assert store.list_events(session_id) == []


@pytest.mark.asyncio
async def test_optional_context_failure_is_stored_as_absent(store):
    recorder = recorder_for(store, FakeScreen([BASELINE, SETTLED]), context=FakeContext(fail_element=True))
    session_id, _ = bind(recorder, store)

    assert await recorder.on_click((1.0, 1.0)) is not None
    [record] = store.list_events(session_id)
    assert record.event.clicked_element is None
    data = json.loads(record.metadata_path.read_text())
    assert data["clickedElement"] is None


@pytest.mark.asyncio
async def test_failed_baseline_still_records_after_image(store):
    recorder = recorder_for(store, FakeScreen([CaptureFailure("denied"), SETTLED]))
    session_id, _ = bind(recorder, store)

    assert await recorder.on_click((1.0, 1.0)) is not None
    [record] = store.list_events(session_id)
    assert record.before_path is None
    assert record.after_path.read_bytes() == SETTLED


@pytest.mark.asyncio
async def test_unsettled_screen_uses_last_frame(store):
    frames = [BASELINE] + [png_bytes((i % 256, i // 256, 0), size=(20, 20)) for i in range(1, 600)]
    screen = FakeScreen(frames)
    recorder = recorder_for(store, screen, timeout=0.05)
    session_id, _ = bind(recorder, store)

    await recorder.on_click((1.0, 1.0))

    [record] = store.list_events(session_id)
    assert record.after_path.read_bytes() == frames[min(screen.calls, len(frames)) - 1]


@pytest.mark.asyncio
async def test_session_end_during_stability_wait_discards_event(store):
    cancel_holder = {}

    def end_session_on_third_capture(calls):
        if calls == 3:
            store.end_session()
            cancel_holder["cancel"].set()

    frames = [png_bytes((i, 0, 0), size=(20, 20)) for i in range(50)]
    recorder = recorder_for(store, FakeScreen(frames, on_capture=end_session_on_third_capture))
    session_id, cancel = bind(recorder, store)
    cancel_holder["cancel"] = cancel

    assert await recorder.on_click((1.0, 1.0)) is None
    assert list((store.root / session_id).iterdir()) == []


@pytest.mark.asyncio
async def test_unbound_recorder_ignores_clicks(store):
    screen = FakeScreen([BASELINE])
    recorder = recorder_for(store, screen)
    assert await recorder.on_click((1.0, 1.0)) is None
    assert screen.calls == 0


class BrokenWindowsContext(FakeContext):
    def windows(self):
        raise ValueError("objc bridge returned an unexpected value")


@pytest.mark.asyncio
async def test_unexpected_lookup_error_only_drops_that_field(store):
    recorder = recorder_for(store, FakeScreen([BASELINE, SETTLED]), context=BrokenWindowsContext())
    session_id, _ = bind(recorder, store)

    assert await recorder.on_click((1.0, 1.0)) is not None
    [record] = store.list_events(session_id, strict=True)
    assert record.event.open_windows == ()
    assert record.event.clicked_element.title == "Build"
    data = json.loads(record.metadata_path.read_text())
    assert data["openWindows"] == []
