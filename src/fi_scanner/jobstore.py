"""
Persistent Job Store
====================

SQLite-backed storage for scan jobs, their embedded checkpoints and the
matches they produce.

The job row is the single source of truth for resume position. Writes that
need to be atomic are expressed as single SQL statements:

- the claim is a conditional ``UPDATE ... WHERE status IN (...)`` and only
  the runner whose statement changed the row owns the job;
- statistics are bumped with ``col = col + ?``;
- matches are inserted with ``INSERT OR IGNORE`` on a natural key so a rerun
  over the same window never produces a second notification.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
import threading
from pathlib import Path
from typing import Iterable

import structlog

from .errors import JobClaimError, JobNotFoundError
from .models import (
    Checkpoint,
    JobStatistics,
    JobStatus,
    MatchRecord,
    ScanJob,
    ScheduleType,
    Subscriber,
)
from .schedule import is_due

log = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scan_jobs (
    job_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT NOT NULL,
    subscribers TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    schedule_type TEXT NOT NULL DEFAULT 'DAILY',
    lookback_days INTEGER NOT NULL DEFAULT 1,
    auto_notify INTEGER NOT NULL DEFAULT 1,
    target_date TEXT,
    last_processed_index INTEGER NOT NULL DEFAULT -1,
    last_processed_file TEXT NOT NULL DEFAULT '',
    last_processed_key TEXT NOT NULL DEFAULT '',
    total_documents INTEGER NOT NULL DEFAULT 0,
    processed_count INTEGER NOT NULL DEFAULT 0,
    matches_found INTEGER NOT NULL DEFAULT 0,
    is_resuming INTEGER NOT NULL DEFAULT 0,
    window_start TEXT,
    window_end TEXT,
    scan_started_at TEXT,
    last_checkpoint_at TEXT,
    total_scans INTEGER NOT NULL DEFAULT 0,
    documents_processed INTEGER NOT NULL DEFAULT 0,
    total_matches INTEGER NOT NULL DEFAULT 0,
    notifications_sent INTEGER NOT NULL DEFAULT 0,
    last_scan_date TEXT,
    last_match_date TEXT,
    claimed_by TEXT,
    lease_expires_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scan_jobs_status ON scan_jobs(status);

CREATE TABLE IF NOT EXISTS job_matches (
    match_id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES scan_jobs(job_id),
    project_id TEXT NOT NULL,
    file_name TEXT NOT NULL,
    storage_key TEXT NOT NULL,
    last_modified TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL,
    quote TEXT NOT NULL,
    confidence REAL NOT NULL,
    detection_method TEXT NOT NULL,
    found_at TEXT NOT NULL,
    notified_at TEXT,
    UNIQUE (job_id, storage_key, last_modified, category)
);
CREATE INDEX IF NOT EXISTS idx_job_matches_pending ON job_matches(job_id, notified_at);
"""

CLAIMABLE_STATUSES = (JobStatus.QUEUED.value, JobStatus.PAUSED.value)

STATISTIC_COLUMNS = {
    "total_scans",
    "documents_processed",
    "total_matches",
    "notifications_sent",
}


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _ts(value: dt.datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> dt.datetime | None:
    return dt.datetime.fromisoformat(value) if value else None


class JobStore:
    """Scan jobs, checkpoints and matches in a single SQLite database."""

    def __init__(self, db_path: Path | str):
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._lock, self._conn:
            return self._conn.execute(sql, tuple(params))

    # --- Jobs ---

    def create_job(
        self,
        job_id: str,
        name: str,
        category: str,
        subscribers: list[Subscriber],
        *,
        schedule_type: ScheduleType = ScheduleType.DAILY,
        lookback_days: int = 1,
        auto_notify: bool = True,
        target_date: dt.date | None = None,
    ) -> ScanJob:
        now = _ts(utcnow())
        self._execute(
            """INSERT INTO scan_jobs
               (job_id, name, category, subscribers, status, schedule_type,
                lookback_days, auto_notify, target_date, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job_id,
                name,
                category,
                json.dumps([{"email": s.email, "name": s.name} for s in subscribers]),
                JobStatus.QUEUED.value,
                ScheduleType(schedule_type).value,
                lookback_days,
                int(auto_notify),
                target_date.isoformat() if target_date else None,
                now,
                now,
            ),
        )
        log.info("Created scan job", job_id=job_id, category=category)
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> ScanJob:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM scan_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        if row is None:
            raise JobNotFoundError(f"Scan job {job_id!r} does not exist")
        return _row_to_job(row)

    def list_jobs(self, status: JobStatus | None = None) -> list[ScanJob]:
        with self._lock:
            if status is None:
                rows = self._conn.execute(
                    "SELECT * FROM scan_jobs ORDER BY created_at"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM scan_jobs WHERE status = ? ORDER BY created_at",
                    (JobStatus(status).value,),
                ).fetchall()
        return [_row_to_job(row) for row in rows]

    def claimable_job_ids(self, now: dt.datetime | None = None) -> list[str]:
        """Jobs a worker may try to claim, oldest update first."""
        now_ts = _ts(now or utcnow())
        with self._lock:
            rows = self._conn.execute(
                """SELECT job_id FROM scan_jobs
                   WHERE status IN (?, ?)
                      OR (status = ? AND (lease_expires_at IS NULL OR lease_expires_at < ?))
                   ORDER BY updated_at""",
                (*CLAIMABLE_STATUSES, JobStatus.RUNNING.value, now_ts),
            ).fetchall()
        return [row["job_id"] for row in rows]

    def claim_job(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
        now: dt.datetime | None = None,
    ) -> bool:
        """
        Atomically flip a job to RUNNING for one worker.

        QUEUED and PAUSED jobs are claimable, as is a RUNNING job whose lease
        has expired (its previous runner died mid-scan).
        """
        now = now or utcnow()
        cursor = self._execute(
            """UPDATE scan_jobs
               SET status = ?, claimed_by = ?, lease_expires_at = ?, updated_at = ?
               WHERE job_id = ?
                 AND (status IN (?, ?)
                      OR (status = ? AND (lease_expires_at IS NULL OR lease_expires_at < ?)))""",
            (
                JobStatus.RUNNING.value,
                worker_id,
                _ts(now + dt.timedelta(seconds=lease_seconds)),
                _ts(now),
                job_id,
                *CLAIMABLE_STATUSES,
                JobStatus.RUNNING.value,
                _ts(now),
            ),
        )
        claimed = cursor.rowcount == 1
        log.info(
            "Claimed scan job" if claimed else "Scan job not claimable",
            job_id=job_id,
            worker_id=worker_id,
        )
        return claimed

    def heartbeat(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
        now: dt.datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        cursor = self._execute(
            """UPDATE scan_jobs SET lease_expires_at = ?, updated_at = ?
               WHERE job_id = ? AND claimed_by = ? AND status = ?""",
            (
                _ts(now + dt.timedelta(seconds=lease_seconds)),
                _ts(now),
                job_id,
                worker_id,
                JobStatus.RUNNING.value,
            ),
        )
        return cursor.rowcount == 1

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: JobStatus | None = None,
        release: bool = True,
        worker_id: str | None = None,
    ) -> bool:
        """
        Change a job's status, optionally only from an ``expected`` status or
        only while ``worker_id`` holds the claim.
        Leaving RUNNING releases the worker claim unless ``release`` is False.
        """
        sql = "UPDATE scan_jobs SET status = ?, updated_at = ?"
        params: list = [JobStatus(status).value, _ts(utcnow())]
        if release and status != JobStatus.RUNNING:
            sql += ", claimed_by = NULL, lease_expires_at = NULL"
        sql += " WHERE job_id = ?"
        params.append(job_id)
        if expected is not None:
            sql += " AND status = ?"
            params.append(JobStatus(expected).value)
        if worker_id is not None:
            sql += " AND claimed_by = ?"
            params.append(worker_id)
        cursor = self._execute(sql, params)
        if cursor.rowcount == 0 and expected is None and worker_id is None:
            raise JobNotFoundError(f"Scan job {job_id!r} does not exist")
        return cursor.rowcount == 1

    def save_checkpoint(
        self,
        job_id: str,
        checkpoint: Checkpoint,
        *,
        worker_id: str | None = None,
    ) -> None:
        """
        Persist a checkpoint. With ``worker_id`` the write only lands while that
        worker holds the claim, otherwise `JobClaimError` is raised.
        """
        checkpoint.last_checkpoint_at = utcnow()
        sql = """UPDATE scan_jobs SET
                 last_processed_index = ?, last_processed_file = ?,
                 last_processed_key = ?, total_documents = ?, processed_count = ?,
                 matches_found = ?, is_resuming = ?, window_start = ?,
                 window_end = ?, scan_started_at = ?, last_checkpoint_at = ?,
                 updated_at = ?
               WHERE job_id = ?"""
        params: list = [
            checkpoint.last_processed_index,
            checkpoint.last_processed_file,
            checkpoint.last_processed_key,
            checkpoint.total_documents,
            checkpoint.processed_count,
            checkpoint.matches_found,
            int(checkpoint.is_resuming),
            _ts(checkpoint.window_start),
            _ts(checkpoint.window_end),
            _ts(checkpoint.scan_started_at),
            _ts(checkpoint.last_checkpoint_at),
            _ts(checkpoint.last_checkpoint_at),
            job_id,
        ]
        if worker_id is not None:
            sql += " AND claimed_by = ?"
            params.append(worker_id)
        cursor = self._execute(sql, params)
        if cursor.rowcount == 0:
            if worker_id is not None:
                raise JobClaimError(f"Worker {worker_id!r} no longer holds scan job {job_id!r}")
            raise JobNotFoundError(f"Scan job {job_id!r} does not exist")

    def increment_statistics(self, job_id: str, **deltas: int) -> None:
        unknown = set(deltas) - STATISTIC_COLUMNS
        if unknown:
            raise ValueError(f"Unknown statistics: {sorted(unknown)}")
        if not deltas:
            return
        assignments = ", ".join(f"{col} = {col} + ?" for col in deltas)
        self._execute(
            f"UPDATE scan_jobs SET {assignments}, updated_at = ? WHERE job_id = ?",
            (*deltas.values(), _ts(utcnow()), job_id),
        )

    def record_scan(
        self,
        job_id: str,
        scanned_at: dt.datetime,
        *,
        matched: bool,
    ) -> None:
        """Count a finished scan and stamp the scan (and match) dates."""
        sql = "UPDATE scan_jobs SET total_scans = total_scans + 1, last_scan_date = ?"
        params: list = [_ts(scanned_at)]
        if matched:
            sql += ", last_match_date = ?"
            params.append(_ts(scanned_at))
        sql += " WHERE job_id = ?"
        params.append(job_id)
        self._execute(sql, params)

    def requeue_due_jobs(self, today: dt.date) -> list[str]:
        """Move COMPLETED jobs whose schedule is due back to QUEUED."""
        requeued = []
        for job in self.list_jobs(JobStatus.COMPLETED):
            if not is_due(job, today):
                continue
            fresh = Checkpoint()
            cursor = self._execute(
                """UPDATE scan_jobs SET status = ?, last_processed_index = ?,
                     last_processed_file = '', last_processed_key = '',
                     total_documents = 0, processed_count = 0, matches_found = 0,
                     is_resuming = 0, window_start = NULL, window_end = NULL,
                     scan_started_at = NULL, updated_at = ?
                   WHERE job_id = ? AND status = ?""",
                (
                    JobStatus.QUEUED.value,
                    fresh.last_processed_index,
                    _ts(utcnow()),
                    job.job_id,
                    JobStatus.COMPLETED.value,
                ),
            )
            if cursor.rowcount == 1:
                requeued.append(job.job_id)
        if requeued:
            log.info("Requeued scheduled jobs", job_ids=requeued, today=today.isoformat())
        return requeued

    def requeue_job(self, job_id: str) -> bool:
        """Put a FAILED or PAUSED job back in the queue, keeping its checkpoint."""
        cursor = self._execute(
            """UPDATE scan_jobs SET status = ?, claimed_by = NULL,
                 lease_expires_at = NULL, updated_at = ?
               WHERE job_id = ? AND status IN (?, ?)""",
            (
                JobStatus.QUEUED.value,
                _ts(utcnow()),
                job_id,
                JobStatus.FAILED.value,
                JobStatus.PAUSED.value,
            ),
        )
        return cursor.rowcount == 1

    # --- Matches ---

    def add_match(
        self,
        job_id: str,
        match: MatchRecord,
        last_modified: dt.datetime | None = None,
    ) -> bool:
        """Persist a match. Returns False when it was already recorded."""
        cursor = self._execute(
            """INSERT OR IGNORE INTO job_matches
               (job_id, project_id, file_name, storage_key, last_modified, category,
                quote, confidence, detection_method, found_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job_id,
                match.project_id,
                match.file_name,
                match.storage_key,
                _ts(last_modified) or "",
                match.category,
                match.quote,
                match.confidence,
                match.detection_method,
                _ts(utcnow()),
            ),
        )
        if cursor.rowcount == 1:
            match.match_id = cursor.lastrowid
            return True
        return False

    def pending_matches(self, job_id: str) -> list[MatchRecord]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM job_matches
                   WHERE job_id = ? AND notified_at IS NULL
                   ORDER BY match_id""",
                (job_id,),
            ).fetchall()
        return [
            MatchRecord(
                project_id=row["project_id"],
                file_name=row["file_name"],
                storage_key=row["storage_key"],
                category=row["category"],
                quote=row["quote"],
                confidence=row["confidence"],
                detection_method=row["detection_method"],
                match_id=row["match_id"],
            )
            for row in rows
        ]

    def mark_matches_notified(
        self,
        match_ids: Iterable[int],
        when: dt.datetime | None = None,
    ) -> int:
        ids = [i for i in match_ids if i is not None]
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        cursor = self._execute(
            f"UPDATE job_matches SET notified_at = ? WHERE match_id IN ({placeholders})",
            (_ts(when or utcnow()), *ids),
        )
        return cursor.rowcount


def _row_to_job(row: sqlite3.Row) -> ScanJob:
    subscribers = [
        Subscriber(email=item.get("email", ""), name=item.get("name", ""))
        for item in json.loads(row["subscribers"] or "[]")
        if item.get("email")
    ]
    checkpoint = Checkpoint(
        last_processed_index=row["last_processed_index"],
        last_processed_file=row["last_processed_file"],
        last_processed_key=row["last_processed_key"],
        total_documents=row["total_documents"],
        processed_count=row["processed_count"],
        matches_found=row["matches_found"],
        is_resuming=bool(row["is_resuming"]),
        window_start=_parse_ts(row["window_start"]),
        window_end=_parse_ts(row["window_end"]),
        scan_started_at=_parse_ts(row["scan_started_at"]),
        last_checkpoint_at=_parse_ts(row["last_checkpoint_at"]),
    )
    statistics = JobStatistics(
        total_scans=row["total_scans"],
        documents_processed=row["documents_processed"],
        total_matches=row["total_matches"],
        notifications_sent=row["notifications_sent"],
        last_scan_date=_parse_ts(row["last_scan_date"]),
        last_match_date=_parse_ts(row["last_match_date"]),
    )
    return ScanJob(
        job_id=row["job_id"],
        name=row["name"],
        category=row["category"],
        subscribers=subscribers,
        status=JobStatus(row["status"]),
        checkpoint=checkpoint,
        statistics=statistics,
        schedule_type=ScheduleType(row["schedule_type"]),
        lookback_days=row["lookback_days"],
        auto_notify=bool(row["auto_notify"]),
        target_date=dt.date.fromisoformat(row["target_date"]) if row["target_date"] else None,
        claimed_by=row["claimed_by"],
        lease_expires_at=_parse_ts(row["lease_expires_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )
