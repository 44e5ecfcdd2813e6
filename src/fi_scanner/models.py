"""
Domain Models
=============

Plain dataclasses shared by the scanner, the classification cascade, the
job runner and the notification aggregator.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from enum import Enum

CACHED_SUFFIX = "_cached"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ScheduleType(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class CandidateDocument:
    """A listed object that passed the scanner's key and date filters."""

    project_id: str
    file_name: str
    storage_key: str
    last_modified: dt.datetime
    size: int
    file_type: str


@dataclass(frozen=True)
class ScanStats:
    total_scanned: int
    total_matched: int
    duration: float
    pages: int = 0
    stopped_reason: str = "exhausted"

    @property
    def partial(self) -> bool:
        return self.stopped_reason != "exhausted"


@dataclass(frozen=True)
class Accepted:
    """A document that cleared every stage, with the quote that proves it."""

    quote: str
    confidence: float
    stage: str = "fi-detection"
    detection_method: str = "ai_full_processing"

    @property
    def match(self) -> bool:
        return True

    @property
    def reason(self) -> None:
        return None

    def cached(self) -> "Accepted":
        return replace(self, detection_method=_cached_method(self.detection_method))


@dataclass(frozen=True)
class Rejected:
    """A typed terminal outcome for a document that stopped at some stage."""

    stage: str
    reason: str
    detection_method: str
    confidence: float = 0.0

    @property
    def match(self) -> bool:
        return False

    @property
    def quote(self) -> None:
        return None

    def cached(self) -> "Rejected":
        return replace(self, detection_method=_cached_method(self.detection_method))


ClassificationResult = Accepted | Rejected


def _cached_method(method: str) -> str:
    if method.endswith(CACHED_SUFFIX):
        return method
    return f"{method}{CACHED_SUFFIX}"


@dataclass
class Checkpoint:
    """Resumable progress of a scan job. Indices are zero-based."""

    last_processed_index: int = -1
    last_processed_file: str = ""
    last_processed_key: str = ""
    total_documents: int = 0
    processed_count: int = 0
    matches_found: int = 0
    is_resuming: bool = False
    window_start: dt.datetime | None = None
    window_end: dt.datetime | None = None
    scan_started_at: dt.datetime | None = None
    last_checkpoint_at: dt.datetime | None = None

    @property
    def next_index(self) -> int:
        return self.last_processed_index + 1


@dataclass
class JobStatistics:
    total_scans: int = 0
    documents_processed: int = 0
    total_matches: int = 0
    notifications_sent: int = 0
    last_scan_date: dt.datetime | None = None
    last_match_date: dt.datetime | None = None


@dataclass(frozen=True)
class Subscriber:
    email: str
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]


@dataclass
class ScanJob:
    job_id: str
    name: str
    category: str
    subscribers: list[Subscriber] = field(default_factory=list)
    status: JobStatus = JobStatus.QUEUED
    checkpoint: Checkpoint = field(default_factory=Checkpoint)
    statistics: JobStatistics = field(default_factory=JobStatistics)
    schedule_type: ScheduleType = ScheduleType.DAILY
    lookback_days: int = 1
    auto_notify: bool = True
    target_date: dt.date | None = None
    claimed_by: str | None = None
    lease_expires_at: dt.datetime | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None

    def has_crash_signature(self, prior_status: JobStatus | None = None) -> bool:
        """
        A job left RUNNING with progress recorded was interrupted mid-scan.

        Pass ``prior_status`` (the status read before claiming) when checking a
        job this worker has just claimed, since a claimed job is always RUNNING.
        """
        status = self.status if prior_status is None else prior_status
        return status == JobStatus.RUNNING and self.checkpoint.processed_count > 0

    def needs_resume(self, prior_status: JobStatus | None = None) -> bool:
        if self.checkpoint.is_resuming and self.checkpoint.processed_count > 0:
            return True
        return self.has_crash_signature(prior_status)


@dataclass(frozen=True)
class ProjectMetadata:
    project_id: str
    title: str
    stage: str = "N/A"
    sector: str = "N/A"
    authority: str = "N/A"
    status: str = "N/A"
    url: str | None = None
    is_placeholder: bool = False


@dataclass
class MatchRecord:
    project_id: str
    file_name: str
    storage_key: str
    category: str
    quote: str
    confidence: float
    detection_method: str
    match_id: int | None = None
    metadata: ProjectMetadata | None = None
