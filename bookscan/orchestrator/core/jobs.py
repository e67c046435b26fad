"""
Job model for the OCR processing queue.

A job payload is one of four tagged variants; the kind of a job is derived
from its payload type so there is never a kind/payload mismatch to check.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from bookscan.common.errors import InvalidJobData
from bookscan.frames.types import SUPPORTED_ROTATIONS
from bookscan.ocr.types import DEFAULT_LANGUAGE


class JobKind(str, Enum):
    SINGLE = "single"
    BATCH = "batch"
    VIDEO = "video"
    ARCHIVE = "archive"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


def _require_path(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidJobData(f"{field_name} must be a non-empty path")
    return value.strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class SingleImage:
    image_path: str

    kind = JobKind.SINGLE

    def validate(self) -> None:
        self.image_path = _require_path(self.image_path, "image_path")

    def to_dict(self) -> Dict[str, Any]:
        return {"image_path": self.image_path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SingleImage":
        return cls(image_path=data.get("image_path"))


@dataclass
class ImageBatch:
    image_paths: List[str]

    kind = JobKind.BATCH

    def validate(self) -> None:
        if isinstance(self.image_paths, str) or not isinstance(self.image_paths, (list, tuple)):
            raise InvalidJobData("image_paths must be a list of paths")
        if not self.image_paths:
            raise InvalidJobData("image_paths must contain at least one path")
        self.image_paths = [
            _require_path(path, f"image_paths[{index}]")
            for index, path in enumerate(self.image_paths)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {"image_paths": list(self.image_paths)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageBatch":
        return cls(image_paths=data.get("image_paths"))


@dataclass
class VideoSource:
    """
    A filmed sequence of pages; unset options fall back to settings.

    Without a ``rotation`` the worker detects one or reads the stream metadata.
    """

    video_path: str
    rotation: Optional[int] = None
    detect_rotation: bool = False
    fps: Optional[float] = None
    max_frames: Optional[int] = None
    window_seconds: Optional[float] = None
    min_score: Optional[float] = None

    kind = JobKind.VIDEO

    def validate(self) -> None:
        self.video_path = _require_path(self.video_path, "video_path")
        if self.rotation is not None and self.rotation not in SUPPORTED_ROTATIONS:
            raise InvalidJobData(
                f"rotation must be one of {SUPPORTED_ROTATIONS}, got {self.rotation!r}"
            )
        if self.fps is not None and not (_is_number(self.fps) and self.fps > 0):
            raise InvalidJobData(f"fps must be positive, got {self.fps!r}")
        if self.max_frames is not None and (
            not isinstance(self.max_frames, int) or isinstance(self.max_frames, bool) or self.max_frames < 1
        ):
            raise InvalidJobData(f"max_frames must be at least 1, got {self.max_frames!r}")
        if self.window_seconds is not None and not (
            _is_number(self.window_seconds) and self.window_seconds > 0
        ):
            raise InvalidJobData(
                f"window_seconds must be positive, got {self.window_seconds!r}"
            )
        if self.min_score is not None and not (_is_number(self.min_score) and self.min_score >= 0):
            raise InvalidJobData(f"min_score must not be negative, got {self.min_score!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_path": self.video_path,
            "rotation": self.rotation,
            "detect_rotation": self.detect_rotation,
            "fps": self.fps,
            "max_frames": self.max_frames,
            "window_seconds": self.window_seconds,
            "min_score": self.min_score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VideoSource":
        return cls(
            video_path=data.get("video_path"),
            rotation=data.get("rotation"),
            detect_rotation=bool(data.get("detect_rotation", False)),
            fps=data.get("fps"),
            max_frames=data.get("max_frames"),
            window_seconds=data.get("window_seconds"),
            min_score=data.get("min_score"),
        )


@dataclass
class PageArchive:
    """A zip of photographed pages, read in natural file name order."""

    archive_path: str

    kind = JobKind.ARCHIVE

    def validate(self) -> None:
        self.archive_path = _require_path(self.archive_path, "archive_path")

    def to_dict(self) -> Dict[str, Any]:
        return {"archive_path": self.archive_path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageArchive":
        return cls(archive_path=data.get("archive_path"))


JobPayload = Union[SingleImage, ImageBatch, VideoSource, PageArchive]

PAYLOAD_TYPES = {
    JobKind.SINGLE: SingleImage,
    JobKind.BATCH: ImageBatch,
    JobKind.VIDEO: VideoSource,
    JobKind.ARCHIVE: PageArchive,
}


def parse_kind(kind: Union[JobKind, str]) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError as e:
        valid = ", ".join(k.value for k in JobKind)
        raise InvalidJobData(f"Unknown job kind {kind!r}; expected one of {valid}") from e


def build_payload(kind: Union[JobKind, str], data: Any) -> JobPayload:
    """
    Turn a submitted ``(kind, payload)`` pair into a validated payload.

    Raises:
        InvalidJobData: If the kind is unknown or the payload is malformed
    """
    payload_type = PAYLOAD_TYPES[parse_kind(kind)]
    if isinstance(data, payload_type):
        payload = data
    elif isinstance(data, dict):
        payload = payload_type.from_dict(data)
    else:
        raise InvalidJobData(f"{payload_type.__name__} payload must be a mapping")

    validate_payload(payload)
    return payload


def validate_payload(payload: Any) -> JobPayload:
    if not isinstance(payload, (SingleImage, ImageBatch, VideoSource, PageArchive)):
        raise InvalidJobData(f"Unsupported job payload: {type(payload).__name__}")
    payload.validate()
    return payload


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Job:
    """A unit of queued work; mutated only by the worker that owns it."""

    id: str
    payload: JobPayload
    channel: str
    language: str = DEFAULT_LANGUAGE
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 3
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    available_at: Optional[float] = None
    worker_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        payload: JobPayload,
        channel: str,
        language: Optional[str] = None,
        max_attempts: int = 3,
    ) -> "Job":
        return cls(
            id=uuid4().hex,
            payload=payload,
            channel=channel,
            language=language or DEFAULT_LANGUAGE,
            max_attempts=max_attempts,
        )

    @property
    def kind(self) -> JobKind:
        return self.payload.kind

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload.to_dict(),
            "channel": self.channel,
            "language": self.language,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "result": self.result,
            "failure_reason": self.failure_reason,
            "last_error": self.last_error,
            "created_at": _isoformat(self.created_at),
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "available_at": self.available_at,
            "worker_id": self.worker_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        kind = JobKind(data["kind"])
        return cls(
            id=data["id"],
            payload=PAYLOAD_TYPES[kind].from_dict(data["payload"]),
            channel=data["channel"],
            language=data.get("language") or DEFAULT_LANGUAGE,
            state=JobState(data["state"]),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 3),
            progress=data.get("progress", 0),
            result=data.get("result"),
            failure_reason=data.get("failure_reason"),
            last_error=data.get("last_error"),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            started_at=_parse_datetime(data.get("started_at")),
            finished_at=_parse_datetime(data.get("finished_at")),
            available_at=data.get("available_at"),
            worker_id=data.get("worker_id"),
        )
