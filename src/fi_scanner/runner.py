"""
Checkpointed Job Runner
=======================

Drives one scan job from claim to a terminal state:

    QUEUED/PAUSED -> (claim) -> RUNNING -> COMPLETED | PAUSED | FAILED

Resume
------
A job resumes instead of starting over when its checkpoint says so
(``is_resuming`` with progress recorded) or when it was left RUNNING with
progress recorded (its previous runner died). The scan window is stored in
the checkpoint, and documents are visited in storage-key order, so the
listing restarts right after ``last_processed_key`` and indices continue from
``last_processed_index + 1``.

Per-document loop
-----------------
After document *i* the checkpoint records ``last_processed_index = i``. It is
saved after every document during the warm-up, then every
``CHECKPOINT_INTERVAL`` documents. After each save the memory guard samples
resident memory; above the ceiling the job pauses before the next document is
fetched. Every ``PROGRESS_INTERVAL`` documents pending matches are flushed and
subscribers receive a progress update.

The claim's lease is renewed before every document and on every save. A
runner that finds another worker holding the job stops at once and leaves
the job's state to the new owner.

Failures
--------
A document that cannot be processed fails the job with ``is_resuming`` set.
The checkpoint still points at the last document that succeeded, so the
failing document is retried on resume rather than skipped.
"""

from __future__ import annotations

import datetime as dt
import os
import socket
import time
from typing import Callable

import structlog

from .cascade import ClassificationCascade
from .config import Settings
from .errors import (
    DocumentProcessingError,
    JobClaimError,
    ScanPaused,
    UnreadableDocumentError,
)
from .extraction import TextExtractor
from .jobstore import JobStore, utcnow
from .memory import MemoryGuard
from .models import (
    CandidateDocument,
    Checkpoint,
    ClassificationResult,
    JobStatus,
    MatchRecord,
    Rejected,
    ScanJob,
)
from .notifications import NotificationAggregator
from .scanner import ObjectStoreScanner
from .schedule import scan_window
from .store import ObjectStoreClient

log = structlog.get_logger(__name__)

STAGE_EXTRACTION_ERROR = "extraction-error"
STAGE_INSUFFICIENT_TEXT = "insufficient-text"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class CheckpointedJobRunner:
    """Runs scan jobs one at a time, persisting resumable progress."""

    def __init__(
        self,
        *,
        store: JobStore,
        scanner: ObjectStoreScanner,
        object_client: ObjectStoreClient,
        extractor: TextExtractor,
        cascade: ClassificationCascade,
        aggregator: NotificationAggregator,
        settings: Settings,
        memory_guard: MemoryGuard | None = None,
        worker_id: str | None = None,
        now: Callable[[], dt.datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.scanner = scanner
        self.object_client = object_client
        self.extractor = extractor
        self.cascade = cascade
        self.aggregator = aggregator
        self.settings = settings
        self.memory_guard = memory_guard or MemoryGuard(settings.memory_ceiling_bytes)
        self.worker_id = worker_id or default_worker_id()
        self._now = now
        self._sleep = sleep
        self._unsaved_processed = 0

    # --- Entry point ---

    def run(self, job_id: str) -> ScanJob:
        """
        Claim and run a job. Returns the job in its final state.

        Raises `JobClaimError` when another runner holds the job or takes it
        over mid-scan, and re-raises the underlying error after marking the
        job FAILED.
        """
        previous = self.store.get_job(job_id)
        if not self.store.claim_job(job_id, self.worker_id, self.settings.JOB_LEASE_SECONDS):
            raise JobClaimError(f"Scan job {job_id!r} is not claimable ({previous.status.value})")

        job = self.store.get_job(job_id)
        log.info(
            "Running scan job",
            job_id=job_id,
            category=job.category,
            previous_status=previous.status.value,
            worker_id=self.worker_id,
        )
        self._unsaved_processed = 0

        try:
            job.checkpoint = self._load_or_init(job, previous.status)
            stats = self.scanner.stream_since(
                job.checkpoint.window_start,
                job.checkpoint.window_end,
                lambda document: self._on_document(job, document),
                max_objects=self.settings.SCAN_MAX_OBJECTS,
                timeout_seconds=self.settings.SCAN_TIMEOUT_SECONDS,
                start_after=job.checkpoint.last_processed_key or None,
            )
            if stats.partial:
                self._pause(job, reason=f"scan stopped early ({stats.stopped_reason})")
            else:
                self._complete(job)
        except JobClaimError:
            # Another worker owns the job now; leave its state alone.
            log.warning("Lost claim on scan job; stopping", job_id=job_id, worker_id=self.worker_id)
            raise
        except ScanPaused as e:
            self._pause(job, reason=str(e))
        except Exception as e:
            self._fail(job, e)
            raise
        return self.store.get_job(job_id)

    # --- State transitions ---

    def _load_or_init(self, job: ScanJob, prior_status: JobStatus) -> Checkpoint:
        checkpoint = job.checkpoint
        if job.needs_resume(prior_status) and checkpoint.window_start and checkpoint.window_end:
            log.info(
                "Resuming scan job",
                job_id=job.job_id,
                next_index=checkpoint.next_index,
                last_processed_file=checkpoint.last_processed_file,
                processed_count=checkpoint.processed_count,
                total_documents=checkpoint.total_documents,
            )
            if checkpoint.total_documents == 0:
                checkpoint.total_documents = checkpoint.processed_count + self.scanner.count_since(
                    checkpoint.window_start,
                    checkpoint.window_end,
                    start_after=checkpoint.last_processed_key or None,
                )
            checkpoint.is_resuming = True
            self.store.save_checkpoint(job.job_id, checkpoint, worker_id=self.worker_id)
            return checkpoint

        now = self._now()
        start, end = scan_window(job.lookback_days, now.date(), job.target_date)
        checkpoint = Checkpoint(
            window_start=start,
            window_end=end,
            scan_started_at=now,
        )
        checkpoint.total_documents = self.scanner.count_since(start, end)
        self.store.save_checkpoint(job.job_id, checkpoint, worker_id=self.worker_id)
        log.info(
            "Starting fresh scan",
            job_id=job.job_id,
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            total_documents=checkpoint.total_documents,
        )
        return checkpoint

    def _renew_lease(self, job: ScanJob) -> None:
        if not self.store.heartbeat(job.job_id, self.worker_id, self.settings.JOB_LEASE_SECONDS):
            raise JobClaimError(f"Worker {self.worker_id!r} lost the claim on scan job {job.job_id!r}")

    def _persist(self, job: ScanJob) -> None:
        self.store.save_checkpoint(job.job_id, job.checkpoint, worker_id=self.worker_id)
        if self._unsaved_processed:
            self.store.increment_statistics(
                job.job_id, documents_processed=self._unsaved_processed
            )
            self._unsaved_processed = 0
        self._renew_lease(job)

    def _pause(self, job: ScanJob, reason: str) -> None:
        job.checkpoint.is_resuming = True
        self._persist(job)
        self.store.set_status(job.job_id, JobStatus.PAUSED, worker_id=self.worker_id)
        log.warning(
            "Scan job paused",
            job_id=job.job_id,
            reason=reason,
            last_processed_index=job.checkpoint.last_processed_index,
            processed_count=job.checkpoint.processed_count,
        )

    def _fail(self, job: ScanJob, error: Exception) -> None:
        job.checkpoint.is_resuming = True
        self._persist(job)
        self.store.set_status(job.job_id, JobStatus.FAILED, worker_id=self.worker_id)
        log.error(
            "Scan job failed",
            job_id=job.job_id,
            error=str(error),
            error_type=type(error).__name__,
            last_processed_index=job.checkpoint.last_processed_index,
        )

    def _complete(self, job: ScanJob) -> None:
        checkpoint = job.checkpoint
        checkpoint.is_resuming = False
        checkpoint.total_documents = max(checkpoint.total_documents, checkpoint.processed_count)
        self._persist(job)
        self.store.record_scan(job.job_id, self._now(), matched=checkpoint.matches_found > 0)
        completed = self.store.set_status(
            job.job_id, JobStatus.COMPLETED, expected=JobStatus.RUNNING, worker_id=self.worker_id
        )
        if not completed:
            raise JobClaimError(f"Worker {self.worker_id!r} lost the claim on scan job {job.job_id!r}")
        log.info(
            "Scan job completed",
            job_id=job.job_id,
            processed_count=checkpoint.processed_count,
            matches_found=checkpoint.matches_found,
            detection_methods=dict(self.cascade.stage_counts),
        )
        self._flush(job)

    def _flush(self, job: ScanJob) -> None:
        try:
            self.aggregator.flush(self.store.get_job(job.job_id))
        except Exception:
            # Matches stay pending and go out with the next flush.
            log.exception("Notification flush failed", job_id=job.job_id)

    # --- Per-document loop ---

    def _should_checkpoint(self, processed_count: int) -> bool:
        if processed_count <= self.settings.CHECKPOINT_WARMUP:
            return True
        return processed_count % self.settings.CHECKPOINT_INTERVAL == 0

    def _on_document(self, job: ScanJob, document: CandidateDocument) -> bool:
        checkpoint = job.checkpoint
        if checkpoint.last_processed_key and document.storage_key <= checkpoint.last_processed_key:
            return False
        self._renew_lease(job)
        index = checkpoint.next_index

        try:
            result = self._process_document(job, document)
        except Exception as e:
            raise DocumentProcessingError(
                f"Failed to process {document.storage_key}: {e}",
                index=index,
                storage_key=document.storage_key,
            ) from e

        if result.match:
            record = MatchRecord(
                project_id=document.project_id,
                file_name=document.file_name,
                storage_key=document.storage_key,
                category=job.category,
                quote=result.quote,
                confidence=result.confidence,
                detection_method=result.detection_method,
            )
            if self.store.add_match(job.job_id, record, document.last_modified):
                checkpoint.matches_found += 1
                self.store.increment_statistics(job.job_id, total_matches=1)

        checkpoint.last_processed_index = index
        checkpoint.last_processed_file = document.file_name
        checkpoint.last_processed_key = document.storage_key
        checkpoint.processed_count += 1
        checkpoint.total_documents = max(checkpoint.total_documents, checkpoint.processed_count)
        self._unsaved_processed += 1

        if self._should_checkpoint(checkpoint.processed_count):
            self._persist(job)
            exceeded, rss = self.memory_guard.exceeded()
            if exceeded:
                raise ScanPaused(rss, self.memory_guard.ceiling_bytes)

        if checkpoint.processed_count % self.settings.PROGRESS_INTERVAL == 0:
            self._milestone(job)

        if self.settings.DOCUMENT_PACING_SECONDS > 0:
            self._sleep(self.settings.DOCUMENT_PACING_SECONDS)
        return result.match

    def _milestone(self, job: ScanJob) -> None:
        log.info(
            "Scan progress milestone",
            job_id=job.job_id,
            processed_count=job.checkpoint.processed_count,
            total_documents=job.checkpoint.total_documents,
            matches_found=job.checkpoint.matches_found,
        )
        self._persist(job)
        self._flush(job)
        self.aggregator.send_progress(job, job.checkpoint)

    def _process_document(self, job: ScanJob, document: CandidateDocument) -> ClassificationResult:
        rejected = self.cascade.screen_file_name(document.file_name)
        if rejected is not None:
            return rejected

        body = self.object_client.read_object(document.storage_key)
        try:
            extracted = self.extractor.extract(document, body)
        except UnreadableDocumentError as e:
            log.warning("Unreadable document", file_name=document.file_name, error=str(e))
            return Rejected(
                stage=STAGE_EXTRACTION_ERROR,
                reason=str(e),
                detection_method="extraction_error",
                confidence=1.0,
            )

        if len(extracted.text.strip()) < self.settings.MIN_TEXT_CHARS:
            return Rejected(
                stage=STAGE_INSUFFICIENT_TEXT,
                reason=f"only {len(extracted.text.strip())} characters of text",
                detection_method="insufficient_text",
                confidence=1.0,
            )

        return self.cascade.classify(
            document.file_name,
            extracted.text,
            job.category,
            page_count=extracted.page_count,
            full_length=extracted.full_length,
        )
