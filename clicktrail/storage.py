"""
Session-scoped artifact store.

Layout under the data root::

    <session-start>_<machine-id>/
        <event-ts>_metadata.json
        <event-ts>_before.png
        <event-ts>_after.png

Timestamps are ISO 8601 in UTC with colons replaced by hyphens so that every
name is path safe. Event timestamps carry milliseconds; a numeric suffix is
appended if two events still collide.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .errors import DataIntegrityError, SessionNotFound, SessionSealed, StorageFailure
from .schemas import ClickEvent, EventRecord, SessionInfo

logger = logging.getLogger(__name__)

METADATA_SUFFIX = "_metadata.json"
BEFORE_SUFFIX = "_before.png"
AFTER_SUFFIX = "_after.png"


def format_timestamp(moment: datetime, precise: bool = False) -> str:
    """ISO 8601 (UTC) with ':' replaced by '-'."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H-%M-%S")
    if precise:
        text += f".{moment.microsecond // 1000:03d}"
    return text + "Z"


def parse_timestamp(text: str) -> datetime:
    """Inverse of :func:`format_timestamp`; raises ValueError on anything else."""
    date_part, sep, time_part = text.partition("T")
    if not sep:
        raise ValueError(f"Not a timestamp: {text!r}")
    restored = f"{date_part}T{time_part.replace('-', ':')}"
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(restored, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"Not a timestamp: {text!r}")


@dataclass(frozen=True)
class SessionArtifactKey:
    """Names the three files of one event inside one session."""

    session_id: str
    event_stamp: str

    @classmethod
    def for_event(cls, session_id: str, event: ClickEvent) -> "SessionArtifactKey":
        return cls(session_id, format_timestamp(event.timestamp, precise=True))

    @classmethod
    def from_metadata_name(cls, session_id: str, filename: str) -> "SessionArtifactKey":
        if not filename.endswith(METADATA_SUFFIX):
            raise ValueError(f"Not a metadata file: {filename}")
        return cls(session_id, filename[: -len(METADATA_SUFFIX)])

    def with_suffix(self, n: int) -> "SessionArtifactKey":
        return SessionArtifactKey(self.session_id, f"{self.event_stamp}-{n}")

    @property
    def collision_index(self) -> int:
        """0 for the first event of a millisecond, n for the ``-n`` suffixed ones."""
        _, sep, tail = self.event_stamp.rpartition("Z-")
        return int(tail) if sep and tail.isdigit() else 0

    @property
    def metadata_name(self) -> str:
        return self.event_stamp + METADATA_SUFFIX

    @property
    def before_name(self) -> str:
        return self.event_stamp + BEFORE_SUFFIX

    @property
    def after_name(self) -> str:
        return self.event_stamp + AFTER_SUFFIX


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "wb") as fh:
        fh.write(data)
    os.replace(tmp, path)


class SessionStore:
    """Owns session folders: start/end, append-only writes, and reads.

    Only the currently open session accepts writes. Ending it takes the same
    lock as ``write`` so an event that has not started writing by then is
    refused with :class:`SessionSealed`.
    """

    def __init__(self, root: Path | str, machine_id: str):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.machine_id = machine_id
        self._lock = threading.Lock()
        self._open_session: Optional[str] = None

    # ─────────────────────────────── lifecycle
    @property
    def active_session_id(self) -> Optional[str]:
        return self._open_session

    def is_open(self, session_id: str) -> bool:
        return self._open_session is not None and self._open_session == session_id

    def start_session(self, now: Optional[datetime] = None) -> str:
        with self._lock:
            if self._open_session is not None:
                raise StorageFailure(f"Session {self._open_session} is still open")

            moment = now or datetime.now(timezone.utc)
            session_id = f"{format_timestamp(moment)}_{self.machine_id}"
            # Two sessions started within the same second get distinct folders
            while (self.root / session_id).exists():
                moment += timedelta(seconds=1)
                session_id = f"{format_timestamp(moment)}_{self.machine_id}"

            try:
                (self.root / session_id).mkdir(parents=True)
            except OSError as exc:
                raise StorageFailure(f"Could not create session folder {session_id}: {exc}") from exc

            self._open_session = session_id
            logger.info(f"Session started: {session_id}")
            return session_id

    def end_session(self) -> Optional[str]:
        with self._lock:
            session_id, self._open_session = self._open_session, None
        if session_id:
            logger.info(f"Session sealed: {session_id}")
        return session_id

    def session_path(self, session_id: str) -> Path:
        path = self.root / session_id
        if not path.is_dir():
            raise SessionNotFound(f"No session named {session_id}")
        return path

    # ─────────────────────────────── writes
    def write(
        self,
        session_id: str,
        event: ClickEvent,
        before: Optional[bytes],
        after: Optional[bytes],
    ) -> SessionArtifactKey:
        """Persist one event. Images may be absent; the metadata may not.

        Images go first and the metadata last, so a metadata file on disk
        always refers to images that were written if they existed.
        """
        if event is None or getattr(event, "id", None) is None:
            raise StorageFailure("Refusing to store an event without an id")

        with self._lock:
            if not self.is_open(session_id):
                raise SessionSealed(f"Session {session_id} is not open for writes")

            directory = self.root / session_id
            key = SessionArtifactKey.for_event(session_id, event)
            n = 1
            while (directory / key.metadata_name).exists():
                key = SessionArtifactKey.for_event(session_id, event).with_suffix(n)
                n += 1

            try:
                if before is not None:
                    _atomic_write(directory / key.before_name, before)
                else:
                    logger.warning(f"Event {event.id}: no before screenshot, storing metadata without it")
                if after is not None:
                    _atomic_write(directory / key.after_name, after)
                else:
                    logger.warning(f"Event {event.id}: no after screenshot, storing metadata without it")
                _atomic_write(directory / key.metadata_name, event.to_json().encode("utf-8"))
            except OSError as exc:
                raise StorageFailure(f"Writing event {event.id} to {session_id} failed: {exc}") from exc

        logger.debug(f"Saved click event {key.event_stamp} in {directory}")
        return key

    # ─────────────────────────────── reads
    def enumerate_sessions(self) -> List[SessionInfo]:
        """All session folders under the root, newest first."""
        sessions = []
        for entry in self.root.iterdir():
            if not entry.is_dir():
                continue
            stamp = entry.name.split("_", 1)[0]
            try:
                started = parse_timestamp(stamp)
            except ValueError:
                logger.debug(f"Skipping non-session folder {entry.name}")
                continue
            count = sum(1 for p in entry.iterdir() if p.name.endswith(METADATA_SUFFIX))
            sessions.append(SessionInfo(id=entry.name, path=entry, start_time=started, event_count=count))
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions

    def list_events(self, session_id: str, strict: bool = False) -> List[EventRecord]:
        """Events of a session in click order.

        With ``strict`` any metadata file lacking a before or after image
        raises :class:`DataIntegrityError`.
        """
        directory = self.session_path(session_id)
        records = []
        for path in directory.iterdir():
            if not path.name.endswith(METADATA_SUFFIX) or path.name.startswith("."):
                continue
            key = SessionArtifactKey.from_metadata_name(session_id, path.name)
            try:
                event = ClickEvent.from_json(path.read_bytes())
            except (OSError, ValidationError) as exc:
                raise DataIntegrityError(f"Unreadable metadata file {path.name}: {exc}") from exc

            before = directory / key.before_name
            after = directory / key.after_name
            records.append(
                EventRecord(
                    key=key.event_stamp,
                    event=event,
                    metadata_path=path,
                    before_path=before if before.is_file() else None,
                    after_path=after if after.is_file() else None,
                )
            )

        # Suffixes compare as numbers, so "-10" comes after "-2"
        records.sort(
            key=lambda r: (r.event.timestamp, SessionArtifactKey(session_id, r.key).collision_index)
        )
        if strict:
            self._check_pairs(session_id, records)
        return records

    def verify_session(self, session_id: str) -> int:
        """Check the before/after pairing of every event; returns the event count."""
        return len(self.list_events(session_id, strict=True))

    @staticmethod
    def _check_pairs(session_id: str, records: List[EventRecord]) -> None:
        missing = []
        for record in records:
            if record.before_path is None:
                missing.append(record.key + BEFORE_SUFFIX)
            if record.after_path is None:
                missing.append(record.key + AFTER_SUFFIX)
        if missing:
            raise DataIntegrityError(
                f"Session {session_id} has {len(missing)} missing screenshot(s): {', '.join(missing)}",
                missing=missing,
            )
