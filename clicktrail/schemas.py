# schemas.py

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

###############################################################################
# Click event metadata                                                        #
###############################################################################


class AppDescriptor(BaseModel):
    """A running application as seen at capture time."""

    name: str = Field(..., description="Localized application name")
    bundle_identifier: Optional[str] = Field(None, alias="bundleIdentifier", description="Bundle/package id")
    process_id: int = Field(..., alias="processID", description="Process id snapshot")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class UIElementDescriptor(BaseModel):
    """Accessibility attributes of the element under the cursor; any may be missing."""

    role: Optional[str] = None
    title: Optional[str] = None
    label: Optional[str] = None
    description: Optional[str] = None
    value: Optional[str] = None
    element_type: Optional[str] = Field(None, alias="elementType")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Rect(BaseModel):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    model_config = ConfigDict(frozen=True, ser_json_inf_nan="strings")


class WindowDescriptor(BaseModel):
    """An on-screen window.

    ``bounds`` is written as ``[[x, y], [width, height]]`` and read back from
    the same shape, so the rectangle survives a JSON round-trip unchanged.
    Infinite coordinates are written as the strings ``"Infinity"``/``"-Infinity"``.
    """

    title: Optional[str] = None
    owner_name: Optional[str] = Field(None, alias="ownerName")
    bundle_identifier: Optional[str] = Field(None, alias="bundleIdentifier")
    bounds: Rect = Field(default_factory=Rect)
    layer: int = 0

    model_config = ConfigDict(frozen=True, populate_by_name=True, ser_json_inf_nan="strings")

    @field_validator("bounds", mode="before")
    @classmethod
    def _decode_bounds(cls, value: Any) -> Any:
        if isinstance(value, (Rect, dict)):
            return value
        if (
            isinstance(value, (list, tuple))
            and len(value) == 2
            and all(isinstance(pair, (list, tuple)) and len(pair) == 2 for pair in value)
        ):
            (x, y), (width, height) = value
            return Rect(x=x, y=y, width=width, height=height)
        raise ValueError("Bounds array format is invalid; expected [[x, y], [width, height]]")

    @field_serializer("bounds")
    def _encode_bounds(self, bounds: Rect) -> List[List[float]]:
        return [[bounds.x, bounds.y], [bounds.width, bounds.height]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClickEvent(BaseModel):
    """Everything recorded about one click. Screenshots live next to it on disk."""

    id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=_utcnow)
    mouse_position: Tuple[float, float] = Field(..., alias="mousePosition")
    active_app: AppDescriptor = Field(..., alias="activeApp")
    clicked_element: Optional[UIElementDescriptor] = Field(None, alias="clickedElement")
    open_windows: Tuple[WindowDescriptor, ...] = Field((), alias="openWindows")
    running_apps: Tuple[AppDescriptor, ...] = Field((), alias="runningApps")
    modifier_flags: Tuple[str, ...] = Field((), alias="modifierFlags")

    model_config = ConfigDict(frozen=True, populate_by_name=True, ser_json_inf_nan="strings")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, data: str | bytes) -> "ClickEvent":
        return cls.model_validate_json(data)


###############################################################################
# Sessions                                                                    #
###############################################################################


class SessionInfo(BaseModel):
    id: str
    path: Path
    start_time: datetime
    event_count: int = Field(..., ge=0)

    @property
    def display_name(self) -> str:
        return f"{self.start_time.strftime('%b %d, %Y %H:%M')} ({self.event_count} events)"


class EventRecord(BaseModel):
    """A stored event plus the files it was read from."""

    key: str = Field(..., description="Shared filename prefix of the artifact triple")
    event: ClickEvent
    metadata_path: Path
    before_path: Optional[Path] = None
    after_path: Optional[Path] = None

    @property
    def is_complete(self) -> bool:
        return self.before_path is not None and self.after_path is not None


###############################################################################
# Analysis output                                                             #
###############################################################################


class AppUsageEntry(BaseModel):
    app_name: str = Field(..., alias="appName", description="Application name, or website domain for browsers")
    seconds_used: float = Field(..., alias="secondsUsed", ge=0, description="Estimated seconds spent")

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    @property
    def minutes_used(self) -> float:
        return self.seconds_used / 60.0


class AppUsageAnalysis(BaseModel):
    """Structured output requested from the LLM for one chunk."""

    apps: List[AppUsageEntry] = Field(..., description="Per-application usage for the chunk")

    model_config = ConfigDict(extra="forbid")


class ChunkResult(BaseModel):
    index: int = Field(..., ge=0)
    event_count: int = Field(..., ge=0)
    entries: List[AppUsageEntry]


class BatchAnalysisResult(BaseModel):
    session_id: str
    entries: List[AppUsageEntry] = Field(..., description="Aggregated, sorted by descending seconds")
    chunks: List[ChunkResult] = Field(default_factory=list)
    provenance: Dict[str, List[int]] = Field(
        default_factory=dict, description="appName -> indices of the chunks that reported it"
    )

    @property
    def total_seconds(self) -> float:
        return sum(entry.seconds_used for entry in self.entries)

    @property
    def total_minutes(self) -> float:
        return self.total_seconds / 60.0


APP_USAGE_JSON_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "apps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "appName": {"type": "string"},
                    "secondsUsed": {"type": "number"},
                },
                "required": ["appName", "secondsUsed"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["apps"],
    "additionalProperties": False,
}


def get_schema(json_schema, name: str = "json_output", strict: bool = True):
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "strict": strict,
            "schema": json_schema,
        },
    }


###############################################################################
# Analysis event channel                                                      #
###############################################################################


class AnalysisEventType(str, Enum):
    PROGRESS = "progress"
    LOG = "log"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EVENTS = (AnalysisEventType.DONE, AnalysisEventType.FAILED, AnalysisEventType.CANCELLED)


class AnalysisEvent(BaseModel):
    """One item of the analysis stream: progress, a log line, or a terminal outcome."""

    event: AnalysisEventType
    progress: Optional[float] = Field(None, ge=0, le=1)
    message: Optional[str] = None
    result: Optional[BatchAnalysisResult] = None
    error_type: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    @classmethod
    def progress_update(cls, value: float) -> "AnalysisEvent":
        return cls(event=AnalysisEventType.PROGRESS, progress=value)

    @classmethod
    def log(cls, message: str) -> "AnalysisEvent":
        return cls(event=AnalysisEventType.LOG, message=message)

    @classmethod
    def done(cls, result: BatchAnalysisResult) -> "AnalysisEvent":
        return cls(event=AnalysisEventType.DONE, result=result, progress=1.0)

    @classmethod
    def failed(cls, exc: BaseException) -> "AnalysisEvent":
        return cls(event=AnalysisEventType.FAILED, message=str(exc), error_type=type(exc).__name__)

    @classmethod
    def cancelled(cls) -> "AnalysisEvent":
        return cls(event=AnalysisEventType.CANCELLED, message="Analysis cancelled")

    def to_sse_format(self) -> str:
        """Convert to Server-Sent Events format."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data.pop("event", None)
        lines = [f"event: {self.event.value}", f"data: {json.dumps(data, default=str)}", ""]
        return "\n".join(lines) + "\n"
