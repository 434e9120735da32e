"""Data types passed between the fetcher, cache, coordinator and packager."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Platform(str, Enum):
    PO18 = "po18"
    POPO = "popo"


class WorkStatus(str, Enum):
    ONGOING = "ongoing"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


class UnitOutcome(str, Enum):
    FETCHED = "fetched"
    CACHED = "cached"
    NOT_SUBSCRIBED = "not_subscribed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class OutputFormat(str, Enum):
    TXT = "txt"
    HTML = "html"
    EPUB = "epub"


@dataclass
class Work:
    """Metadata of one serialized title.

    A work whose ``error`` is set is a degraded stub: the detail page
    could not be fetched and only the identity fields are meaningful.
    """

    platform: Platform
    work_id: str
    title: str = ""
    full_title: str = ""
    author: str = ""
    cover: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)
    unit_count: int = 0
    free_units: int = 0
    paid_units: int = 0
    word_count: int = 0
    status: WorkStatus = WorkStatus.UNKNOWN
    latest_unit_name: str = ""
    latest_unit_date: str = ""
    favorites_count: int = 0
    comments_count: int = 0
    monthly_popularity: int = 0
    total_popularity: int = 0
    detail_url: str = ""
    error: Optional[str] = None

    @property
    def is_degraded(self) -> bool:
        return self.error is not None


@dataclass
class Unit:
    """One chapter as listed on the work's unit index.

    ``index`` is only meaningful after all listing pages were merged.
    """

    work_id: str
    unit_id: str
    title: str
    index: int = 0
    is_paid: bool = False
    is_purchased: bool = True
    is_locked: bool = False

    @property
    def is_entitled(self) -> bool:
        return self.is_purchased and not self.is_locked


@dataclass
class UnitContent:
    title: str
    markup: str
    text: str


@dataclass
class CacheEntry:
    work_id: str
    unit_id: str
    title: str
    markup: str
    text: str
    unit_order: int = 0
    updated_at: Optional[str] = None


@dataclass
class AcquiredUnit:
    """The resolved body of one unit within a job, whatever its outcome."""

    index: int
    unit_id: str
    title: str
    markup: str
    text: str
    outcome: UnitOutcome
    error: Optional[str] = None


@dataclass
class Artifact:
    path: str
    size_bytes: int


@dataclass
class Job:
    id: str
    user_id: str
    work_id: str
    platform: Platform
    format: OutputFormat
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_units: int = 0
    title: str = ""
    author: str = ""
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    sink_path: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "work_id": self.work_id,
            "platform": self.platform.value,
            "format": self.format.value,
            "status": self.status.value,
            "progress": self.progress,
            "total_units": self.total_units,
            "title": self.title,
            "author": self.author,
            "file_size": self.file_size,
            "duration": self.duration,
            "sink_path": self.sink_path,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
