from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class MediaType(str, Enum):
    MOVIE = "movie"
    TV = "tv"
    PERSON = "person"


class ImageKind(str, Enum):
    POSTER = "poster"
    BACKDROP = "backdrop"
    PROFILE = "profile"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def in_flight(cls) -> tuple["JobStatus", ...]:
        return (cls.QUEUED, cls.ACTIVE)

    @property
    def is_terminal(self) -> bool:
        return self not in JobStatus.in_flight()


@dataclass(frozen=True, slots=True)
class CacheKey:
    media_type: MediaType
    media_id: int
    image_kind: ImageKind

    def as_string(self) -> str:
        return f"{self.media_type.value}:{self.media_id}:{self.image_kind.value}"


@dataclass(slots=True)
class CacheJob:
    id: str
    media_type: MediaType
    media_id: int
    image_kind: ImageKind
    source_url: str
    status: JobStatus
    enqueued_at: datetime
    progress: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.media_type, self.media_id, self.image_kind)


@dataclass(frozen=True, slots=True)
class QueueStats:
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.active + self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data


@dataclass(slots=True)
class CacheRecord:
    source_url: str
    delivery_url: str
    public_id: str
    cached_at: datetime
    width: Optional[int] = None
    height: Optional[int] = None
    bytes: Optional[int] = None
    format: Optional[str] = None


@dataclass(frozen=True, slots=True)
class UploadResult:
    delivery_url: str
    public_id: str
    width: Optional[int] = None
    height: Optional[int] = None
    bytes: Optional[int] = None
    format: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "UploadResult":
        return cls(
            delivery_url=payload.get("secure_url") or payload["url"],
            public_id=payload["public_id"],
            width=payload.get("width"),
            height=payload.get("height"),
            bytes=payload.get("bytes"),
            format=payload.get("format"),
        )
