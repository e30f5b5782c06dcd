import json
from datetime import datetime, timedelta, timezone

import pytest

from clicktrail.errors import DataIntegrityError, SessionNotFound, SessionSealed, StorageFailure
from clicktrail.storage import SessionArtifactKey, format_timestamp, parse_timestamp
from conftest import MACHINE_ID, SESSION_START, make_event, png_bytes, record_session


def test_timestamps_are_colon_free_and_reversible():
    moment = datetime(2025, 3, 14, 9, 26, 53, 589000, tzinfo=timezone.utc)
    assert format_timestamp(moment) == "2025-03-14T09-26-53Z"
    assert format_timestamp(moment, precise=True) == "2025-03-14T09-26-53.589Z"
    assert parse_timestamp("2025-03-14T09-26-53Z") == moment.replace(microsecond=0)
    assert parse_timestamp("2025-03-14T09-26-53.589Z") == moment


@pytest.mark.parametrize("text", ["", "Documents", "2025-03-14", "2025-03-14Tnoon"])
def test_parse_timestamp_rejects_other_names(text):
    with pytest.raises(ValueError):
        parse_timestamp(text)


def test_artifact_key_names_share_prefix():
    event = make_event(SESSION_START)
    key = SessionArtifactKey.for_event("s1", event)
    assert key.metadata_name == "2025-03-14T09-26-53.000Z_metadata.json"
    assert key.before_name == "2025-03-14T09-26-53.000Z_before.png"
    assert key.after_name == "2025-03-14T09-26-53.000Z_after.png"
    assert SessionArtifactKey.from_metadata_name("s1", key.metadata_name) == key


def test_session_id_is_timestamp_and_machine_id(store):
    session_id = store.start_session(now=SESSION_START)
    assert session_id == f"2025-03-14T09-26-53Z_{MACHINE_ID}"
    assert store.active_session_id == session_id
    assert (store.root / session_id).is_dir()


def test_only_one_session_open_at_a_time(store):
    store.start_session(now=SESSION_START)
    with pytest.raises(StorageFailure):
        store.start_session(now=SESSION_START)


def test_sessions_started_in_same_second_get_distinct_folders(store):
    first = store.start_session(now=SESSION_START)
    store.end_session()
    second = store.start_session(now=SESSION_START)
    assert first != second
    assert second.startswith("2025-03-14T09-26-54Z")


def test_write_produces_artifact_triple(store):
    session_id = store.start_session(now=SESSION_START)
    event = make_event(SESSION_START + timedelta(seconds=5))
    key = store.write(session_id, event, png_bytes(), png_bytes((0, 0, 0)))

    folder = store.root / session_id
    assert sorted(p.name for p in folder.iterdir()) == sorted([key.metadata_name, key.before_name, key.after_name])
    stored = json.loads((folder / key.metadata_name).read_text())
    assert stored["id"] == str(event.id)


def test_colliding_event_timestamps_get_suffix(store):
    session_id = store.start_session(now=SESSION_START)
    moment = SESSION_START + timedelta(seconds=1)
    first = store.write(session_id, make_event(moment), png_bytes(), png_bytes())
    second = store.write(session_id, make_event(moment), png_bytes(), png_bytes())

    assert first.event_stamp != second.event_stamp
    assert second.event_stamp == first.event_stamp + "-1"
    assert len(store.list_events(session_id, strict=True)) == 2


def test_many_collisions_list_in_write_order(store):
    session_id = store.start_session(now=SESSION_START)
    moment = SESSION_START + timedelta(seconds=1)
    written = [make_event(moment) for _ in range(12)]
    keys = [store.write(session_id, event, png_bytes(), png_bytes()) for event in written]

    records = store.list_events(session_id, strict=True)

    assert [r.event.id for r in records] == [e.id for e in written]
    assert [r.key for r in records] == [k.event_stamp for k in keys]
    assert [k.collision_index for k in keys] == list(range(12))


def test_write_after_end_is_refused(store):
    session_id = store.start_session(now=SESSION_START)
    store.end_session()
    with pytest.raises(SessionSealed):
        store.write(session_id, make_event(SESSION_START), png_bytes(), png_bytes())
    assert list((store.root / session_id).iterdir()) == []


def test_missing_image_is_stored_as_absent(store):
    session_id = store.start_session(now=SESSION_START)
    store.write(session_id, make_event(SESSION_START), png_bytes(), None)
    store.end_session()

    [record] = store.list_events(session_id)
    assert record.before_path is not None
    assert record.after_path is None
    assert not record.is_complete


def test_list_events_in_click_order(store):
    session_id = store.start_session(now=SESSION_START)
    for offset in (30, 10, 20):
        store.write(session_id, make_event(SESSION_START + timedelta(seconds=offset)), png_bytes(), png_bytes())
    store.end_session()

    stamps = [r.event.timestamp for r in store.list_events(session_id)]
    assert stamps == sorted(stamps)


def test_complete_session_has_paired_screenshots(store):
    session_id = record_session(store, 5)
    folder = store.root / session_id
    metadata = [p.name for p in folder.glob("*_metadata.json")]
    assert len(metadata) == 5
    assert len(list(folder.glob("*_before.png"))) == 5
    assert len(list(folder.glob("*_after.png"))) == 5
    assert store.verify_session(session_id) == 5


def test_deleted_image_is_a_data_integrity_error(store):
    session_id = record_session(store, 3)
    [victim] = sorted((store.root / session_id).glob("*_after.png"))[1:2]
    victim.unlink()

    with pytest.raises(DataIntegrityError) as excinfo:
        store.verify_session(session_id)
    assert excinfo.value.missing == [victim.name]
    # Non-strict listing still works
    assert len(store.list_events(session_id)) == 3


def test_corrupt_metadata_is_a_data_integrity_error(store):
    session_id = record_session(store, 1)
    [metadata] = (store.root / session_id).glob("*_metadata.json")
    metadata.write_text("{not json")
    with pytest.raises(DataIntegrityError):
        store.list_events(session_id)


def test_unknown_session(store):
    with pytest.raises(SessionNotFound):
        store.list_events("nope")


def test_enumerate_sessions_newest_first(store):
    older = record_session(store, 2, start=SESSION_START)
    newer = record_session(store, 4, start=SESSION_START + timedelta(hours=2))
    (store.root / "not-a-session").mkdir()

    sessions = store.enumerate_sessions()

    assert [s.id for s in sessions] == [newer, older]
    assert [s.event_count for s in sessions] == [4, 2]
    assert sessions[1].start_time == SESSION_START
