"""
Batch Analysis Orchestrator

Reads a sealed session, splits its events into fixed-size chunks, sends each
chunk (metadata prompt + downsampled screenshots) to the configured LLM, and
aggregates the per-chunk app usage into one report.

Flow: Idle → Scanning → {Building → Sending → Accumulating}* → Aggregating → Done,
with Failed/Cancelled reachable from anywhere. Chunks run strictly one after
another; any failing chunk aborts the run and no partial report is returned.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from PIL import Image

from ..config_manager import ConfigManager
from ..errors import AnalysisCancelled, NoEventsFound
from ..prompts.analysis import BATCH_FOOTER_PROMPT, BATCH_HEADER_PROMPT
from ..schemas import (
    AnalysisEvent,
    AppUsageAnalysis,
    AppUsageEntry,
    BatchAnalysisResult,
    ChunkResult,
    ClickEvent,
    EventRecord,
)
from ..storage import SessionStore
from .llm_client import ImageAttachment, LLMClient

logger = logging.getLogger(__name__)

T = TypeVar("T")
EmitCallback = Callable[[AnalysisEvent], None]
ClientSource = Union[LLMClient, Callable[[], LLMClient]]

SUMMARY_LIMIT = 5


class AnalysisState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CHUNKING = "chunking"
    BUILDING = "building"
    SENDING = "sending"
    PARSING = "parsing"
    ACCUMULATING = "accumulating"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AnalysisOptions:
    chunk_size: int = 10
    send_all_screenshots: bool = False
    max_image_edge: int = 1920
    jpeg_quality: int = 70

    @classmethod
    def from_config(cls, config: ConfigManager) -> "AnalysisOptions":
        section = config.get_section("analysis")
        return cls(
            chunk_size=int(section["chunk_size"]),
            send_all_screenshots=bool(section["send_all_screenshots"]),
            max_image_edge=int(section["max_image_edge"]),
            jpeg_quality=int(section["jpeg_quality"]),
        )


# ─────────────────────────────── pure helpers

def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    """Consecutive slices of ``size``; only the last may be shorter."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def aggregate_usage(entries: Sequence[AppUsageEntry]) -> List[AppUsageEntry]:
    """Sum seconds per exact app name, sorted by descending total.

    Ties keep first-seen order. Applying it to its own output changes nothing.
    """
    grouped: Dict[str, List[float]] = {}
    for entry in entries:
        grouped.setdefault(entry.app_name, []).append(entry.seconds_used)
    totals = [AppUsageEntry(app_name=name, seconds_used=math.fsum(values)) for name, values in grouped.items()]
    # sorted() is stable, so equal totals stay in first-seen order
    return sorted(totals, key=lambda e: -e.seconds_used)


def compress_image(data: bytes, max_edge: int = 1920, quality: int = 70) -> bytes:
    """Downsample so the longest edge is at most ``max_edge`` and re-encode as JPEG."""
    with Image.open(BytesIO(data)) as image:
        if image.mode != "RGB":
            image = image.convert("RGB")
        if max(image.size) > max_edge:
            image.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)
        buffer = BytesIO()
        image.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def format_event_block(index: int, event: ClickEvent, previous: Optional[ClickEvent]) -> str:
    since = ""
    if previous is not None:
        gap = (event.timestamp - previous.timestamp).total_seconds()
        since = f" ({gap:.0f} seconds since previous)"

    local_time = event.timestamp.astimezone()
    unix = int(event.timestamp.timestamp())
    app = event.active_app
    x, y = event.mouse_position
    lines = [
        f"Event {index + 1}{since}:",
        f"- Time: {local_time.strftime('%Y-%m-%d %H:%M:%S %Z')} (Unix: {unix})",
        f"- Active App: {app.name} (bundle: {app.bundle_identifier or 'unknown'})",
        f"- Mouse Position: ({int(x)}, {int(y)})",
    ]
    element = event.clicked_element
    if element is not None:
        lines.append(
            f"- Clicked Element: role={element.role}, title={element.title}, label={element.label}, "
            f"description={element.description}, value={element.value}, type={element.element_type}"
        )
    if event.modifier_flags:
        lines.append(f"- Modifier Keys: {', '.join(event.modifier_flags)}")
    if event.open_windows:
        owners = [w.owner_name for w in event.open_windows[:SUMMARY_LIMIT] if w.owner_name]
        lines.append(f"- Open Windows: {', '.join(owners)}")
    return "\n".join(lines)


def build_chunk_prompt(
    events: Sequence[ClickEvent],
    batch_number: int,
    total_batches: int,
    chunk_size: int = 10,
    send_all_screenshots: bool = False,
) -> str:
    prompt = BATCH_HEADER_PROMPT.format(
        batch_number=batch_number,
        total_batches=total_batches,
        chunk_size=chunk_size,
        screenshot_kind="Before and after screenshots" if send_all_screenshots else "Before-click screenshots",
        screenshot_hint=(
            "Compare before/after screenshots to see what changed."
            if send_all_screenshots
            else "Use the before-click screenshots to see what the user was working on."
        ),
    )
    blocks = [
        format_event_block(i, event, events[i - 1] if i > 0 else None)
        for i, event in enumerate(events)
    ]
    return prompt + "\n" + "\n\n".join(blocks) + "\n" + BATCH_FOOTER_PROMPT


def summarize(entries: Sequence[AppUsageEntry]) -> List[str]:
    lines = [
        f"  {i + 1}. {entry.app_name}: {entry.minutes_used:.1f} min"
        for i, entry in enumerate(entries[:SUMMARY_LIMIT])
    ]
    if len(entries) > SUMMARY_LIMIT:
        lines.append(f"  ... and {len(entries) - SUMMARY_LIMIT} more")
    return lines


# ─────────────────────────────── orchestrator

class BatchAnalysisOrchestrator:
    """Drives one analysis run per call; emits events on an optional channel."""

    def __init__(
        self,
        store: SessionStore,
        client: ClientSource,
        options: Optional[AnalysisOptions] = None,
    ):
        self.store = store
        self._client_source = client
        self.options = options or AnalysisOptions()
        self.state = AnalysisState.IDLE

    def _client(self) -> LLMClient:
        if isinstance(self._client_source, LLMClient):
            return self._client_source
        return self._client_source()

    def _transition(self, state: AnalysisState) -> None:
        logger.debug(f"Analysis state {self.state.value} -> {state.value}")
        self.state = state

    async def analyze_session(
        self,
        session_id: str,
        options: Optional[AnalysisOptions] = None,
        emit: Optional[EmitCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchAnalysisResult:
        """Analyze a whole session.

        Every log line and progress value is passed to ``emit`` as an
        :class:`AnalysisEvent`, followed by exactly one terminal event
        (done, failed or cancelled).

        Raises:
            NoEventsFound, DataIntegrityError, MissingCredential,
            MissingModelSelection, ApiRequestFailed, ResponseDecodeFailure,
            AnalysisCancelled.
        """
        emit = emit or (lambda event: None)
        options = options or self.options

        try:
            result = await self._run(session_id, options, emit, cancel)
        except (AnalysisCancelled, asyncio.CancelledError):
            self._transition(AnalysisState.CANCELLED)
            logger.info(f"Analysis of {session_id} cancelled")
            emit(AnalysisEvent.cancelled())
            raise
        except Exception as exc:
            self._transition(AnalysisState.FAILED)
            logger.error(f"Analysis of {session_id} failed: {type(exc).__name__}: {exc}")
            emit(AnalysisEvent.log(f"ERROR: {exc}"))
            emit(AnalysisEvent.failed(exc))
            raise

        self._transition(AnalysisState.DONE)
        emit(AnalysisEvent.done(result))
        return result

    async def _run(
        self,
        session_id: str,
        options: AnalysisOptions,
        emit: EmitCallback,
        cancel: Optional[asyncio.Event],
    ) -> BatchAnalysisResult:
        def log(message: str) -> None:
            logger.debug(message)
            emit(AnalysisEvent.log(message))

        def check_cancel() -> None:
            if cancel is not None and cancel.is_set():
                raise AnalysisCancelled(f"Analysis of {session_id} cancelled")

        self._transition(AnalysisState.SCANNING)
        log("Scanning session folder...")
        records = await asyncio.to_thread(self.store.list_events, session_id, True)
        log(f"Found {len(records)} events to analyze")
        if not records:
            raise NoEventsFound()
        check_cancel()

        client = self._client()

        self._transition(AnalysisState.CHUNKING)
        chunks = chunk(records, options.chunk_size)
        log(f"Processing {len(chunks)} batches (batch size: {options.chunk_size})")

        all_entries: List[AppUsageEntry] = []
        chunk_results: List[ChunkResult] = []
        for index, batch in enumerate(chunks):
            check_cancel()
            log(f"Processing batch {index + 1}/{len(chunks)}")

            self._transition(AnalysisState.BUILDING)
            images = await asyncio.to_thread(self._load_images, batch, options, log)
            log(f"Loaded {len(batch)} events in batch")
            prompt = build_chunk_prompt(
                [record.event for record in batch],
                index + 1,
                len(chunks),
                options.chunk_size,
                options.send_all_screenshots,
            )
            log(f"Prompt size: {len(prompt)} characters")
            log("=== FULL PROMPT ===")
            log(prompt)
            log("=== END PROMPT ===")
            check_cancel()

            self._transition(AnalysisState.SENDING)
            log(f"Calling LLM API for batch {index + 1}...")
            content = await client.request(prompt, images, log=log)

            self._transition(AnalysisState.PARSING)
            analysis = client.parse(content, AppUsageAnalysis, log=log)

            self._transition(AnalysisState.ACCUMULATING)
            entries = list(analysis.apps)
            all_entries.extend(entries)
            chunk_results.append(ChunkResult(index=index, event_count=len(batch), entries=entries))
            log(f"Batch {index + 1} complete. Found {len(entries)} app(s)")
            for line in summarize(entries):
                log(line)

            emit(AnalysisEvent.progress_update((index + 1) / len(chunks)))

        self._transition(AnalysisState.AGGREGATING)
        log(f"Aggregating results from {len(all_entries)} entries...")
        aggregated = aggregate_usage(all_entries)
        log(f"Final aggregated results: {len(aggregated)} unique apps")
        for line in summarize(aggregated):
            log(line)

        provenance: Dict[str, List[int]] = {}
        for result in chunk_results:
            for entry in result.entries:
                indices = provenance.setdefault(entry.app_name, [])
                if result.index not in indices:
                    indices.append(result.index)

        return BatchAnalysisResult(
            session_id=session_id,
            entries=aggregated,
            chunks=chunk_results,
            provenance=provenance,
        )

    @staticmethod
    def _load_images(
        batch: Sequence[EventRecord],
        options: AnalysisOptions,
        log: Callable[[str], None],
    ) -> List[ImageAttachment]:
        attachments = []
        for i, record in enumerate(batch):
            log(f"Loading metadata: {record.metadata_path.name}")
            kinds = [("before", record.before_path)]
            if options.send_all_screenshots:
                kinds.append(("after", record.after_path))
            for kind, path in kinds:
                original = path.read_bytes()
                compressed = compress_image(original, options.max_image_edge, options.jpeg_quality)
                attachments.append(ImageAttachment(compressed))
                log(
                    f"Added {kind} screenshot for event {i + 1} "
                    f"({len(original) / 1024 / 1024:.2f}MB → {len(compressed) / 1024 / 1024:.2f}MB)"
                )
        return attachments

    async def stream(
        self,
        session_id: str,
        options: Optional[AnalysisOptions] = None,
    ) -> AsyncIterator[AnalysisEvent]:
        """Run an analysis and yield its events until the terminal one.

        Closing the iterator early cancels the run; no result is produced.
        """
        queue: asyncio.Queue = asyncio.Queue()
        cancel = asyncio.Event()
        task = asyncio.create_task(
            self.analyze_session(session_id, options, emit=queue.put_nowait, cancel=cancel)
        )
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    break
        finally:
            if not task.done():
                cancel.set()
                task.cancel()
            # Retrieve the task's outcome; its failure was already delivered as an event
            await asyncio.gather(task, return_exceptions=True)
