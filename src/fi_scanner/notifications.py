"""
Notification Aggregation
========================

Turns persisted matches into one delivery per subscriber.

For a flush the aggregator:

1. fetches project metadata once per distinct project, however many jobs,
   categories or subscribers share it;
2. drops matches whose metadata is a placeholder or whose quote does not pass
   the evidence gate;
3. groups what is left by subscriber and sends each subscriber a single batch;
4. records the outcome per subscriber, so one failed delivery never blocks
   the others.

Matches that reached at least one subscriber are marked notified. Matches
dropped for missing metadata, or whose every delivery failed, stay pending
and are picked up by the next flush.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, Protocol

import requests
import structlog

from .config import Settings
from .evidence import validate_evidence
from .jobstore import JobStore
from .metadata import ProjectMetadataClient, is_placeholder
from .models import Checkpoint, MatchRecord, ProjectMetadata, ScanJob, Subscriber

log = structlog.get_logger(__name__)


@dataclass
class NotificationBatch:
    subscriber: Subscriber
    matches: list[MatchRecord]
    job_names: list[str] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "type": "fi_matches",
            "recipient": {
                "email": self.subscriber.email,
                "name": self.subscriber.display_name,
            },
            "jobs": self.job_names,
            "match_count": len(self.matches),
            "matches": [
                {
                    "project_id": m.project_id,
                    "project_title": m.metadata.title if m.metadata else None,
                    "project_url": m.metadata.url if m.metadata else None,
                    "stage": m.metadata.stage if m.metadata else None,
                    "sector": m.metadata.sector if m.metadata else None,
                    "authority": m.metadata.authority if m.metadata else None,
                    "file_name": m.file_name,
                    "storage_key": m.storage_key,
                    "category": m.category,
                    "quote": m.quote,
                    "confidence": m.confidence,
                    "detection_method": m.detection_method,
                }
                for m in self.matches
            ],
        }


class DeliveryChannel(Protocol):
    def send(self, batch: NotificationBatch) -> bool: ...

    def send_progress(self, subscriber: Subscriber, progress: dict) -> bool: ...


class WebhookDeliveryChannel:
    """Posts batches as JSON to a webhook (e.g. a mail relay)."""

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        if not settings.NOTIFY_WEBHOOK_URL:
            raise ValueError("NOTIFY_WEBHOOK_URL is required for webhook delivery")
        self.url = settings.NOTIFY_WEBHOOK_URL
        self.timeout = settings.REQUEST_TIMEOUT
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def _post(self, payload: dict, recipient: str) -> bool:
        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            log.warning("Webhook delivery failed", recipient=recipient, error=str(e))
            return False
        return True

    def send(self, batch: NotificationBatch) -> bool:
        return self._post(batch.to_payload(), batch.subscriber.email)

    def send_progress(self, subscriber: Subscriber, progress: dict) -> bool:
        payload = {
            "type": "scan_progress",
            "recipient": {"email": subscriber.email, "name": subscriber.display_name},
            **progress,
        }
        return self._post(payload, subscriber.email)


class LogDeliveryChannel:
    """Writes batches to the log. Used when no webhook is configured."""

    def send(self, batch: NotificationBatch) -> bool:
        log.info(
            "Notification batch",
            recipient=batch.subscriber.email,
            match_count=len(batch.matches),
            projects=sorted({m.project_id for m in batch.matches}),
        )
        return True

    def send_progress(self, subscriber: Subscriber, progress: dict) -> bool:
        log.info("Scan progress", recipient=subscriber.email, **progress)
        return True


@dataclass
class DeliveryReport:
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    delivered_match_ids: set[int] = field(default_factory=set)
    dropped: int = 0

    @property
    def notifications_sent(self) -> int:
        return len(self.sent)


class NotificationAggregator:
    """Groups matches per subscriber and hands one batch each to the channel."""

    def __init__(
        self,
        metadata_client: ProjectMetadataClient,
        channel: DeliveryChannel,
        settings: Settings,
        store: JobStore | None = None,
    ):
        self.metadata_client = metadata_client
        self.channel = channel
        self.settings = settings
        self.store = store

    def _attach_metadata(self, matches: Iterable[MatchRecord]) -> None:
        by_project: dict[str, ProjectMetadata] = {}
        for match in matches:
            if match.project_id not in by_project:
                by_project[match.project_id] = self.metadata_client.get(match.project_id)
            match.metadata = by_project[match.project_id]

    def _deliverable(self, match: MatchRecord) -> bool:
        if is_placeholder(match.metadata):
            log.info(
                "Dropping match without project metadata",
                project_id=match.project_id,
                file_name=match.file_name,
            )
            return False
        check = validate_evidence(match.quote, match.category, self.settings.EVIDENCE_WINDOW_CHARS)
        if not check.valid:
            log.warning(
                "Dropping match with invalid evidence",
                project_id=match.project_id,
                file_name=match.file_name,
                reason=check.reason,
            )
            return False
        return True

    def deliver(self, job_matches: Iterable[tuple[ScanJob, list[MatchRecord]]]) -> DeliveryReport:
        """Deliver matches from one or more jobs, one batch per subscriber."""
        pairs = [(job, list(matches)) for job, matches in job_matches]
        all_matches = [m for _, matches in pairs for m in matches]
        self._attach_metadata(all_matches)

        report = DeliveryReport()
        batches: dict[str, NotificationBatch] = {}
        for job, matches in pairs:
            keep = []
            for match in matches:
                if self._deliverable(match):
                    keep.append(match)
                else:
                    report.dropped += 1
            if not keep:
                continue
            for subscriber in job.subscribers:
                batch = batches.get(subscriber.email.lower())
                if batch is None:
                    batch = NotificationBatch(subscriber=subscriber, matches=[])
                    batches[subscriber.email.lower()] = batch
                batch.matches.extend(keep)
                if job.name not in batch.job_names:
                    batch.job_names.append(job.name)

        for email, batch in batches.items():
            try:
                ok = self.channel.send(batch)
            except Exception:
                log.exception("Delivery raised", recipient=email)
                ok = False
            if ok:
                report.sent.append(email)
                report.delivered_match_ids.update(
                    m.match_id for m in batch.matches if m.match_id is not None
                )
            else:
                report.failed.append(email)

        log.info(
            "Notification cycle finished",
            sent=len(report.sent),
            failed=len(report.failed),
            dropped=report.dropped,
        )
        return report

    def flush(self, job: ScanJob) -> DeliveryReport:
        """Deliver a job's pending matches and mark the delivered ones."""
        if self.store is None:
            raise RuntimeError("flush requires a job store")
        pending = self.store.pending_matches(job.job_id)
        if not pending:
            return DeliveryReport()
        if not job.auto_notify:
            log.info("Auto-notify disabled; matches left pending", job_id=job.job_id, pending=len(pending))
            return DeliveryReport()
        report = self.deliver([(job, pending)])
        self.store.mark_matches_notified(report.delivered_match_ids, dt.datetime.now(dt.timezone.utc))
        if report.notifications_sent:
            self.store.increment_statistics(job.job_id, notifications_sent=report.notifications_sent)
        return report

    def send_progress(self, job: ScanJob, checkpoint: Checkpoint) -> int:
        """Send a progress update to every subscriber; returns the number sent."""
        progress = {
            "job_id": job.job_id,
            "job_name": job.name,
            "category": job.category,
            "processed": checkpoint.processed_count,
            "total": checkpoint.total_documents,
            "matches": checkpoint.matches_found,
        }
        sent = 0
        for subscriber in job.subscribers:
            try:
                if self.channel.send_progress(subscriber, progress):
                    sent += 1
            except Exception:
                log.exception("Progress delivery raised", recipient=subscriber.email)
        return sent
