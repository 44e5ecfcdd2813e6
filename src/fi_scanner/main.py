"""
Planning FI Scanner Worker
==========================

Entry point for the scan worker. It builds every component once, injects
them into the job runner, and then polls the job store: due COMPLETED jobs
are requeued, and at most one claimable job is run per poll.
"""

from __future__ import annotations

import datetime as dt

import structlog

from .cache import ResultCache
from .cascade import ClassificationCascade
from .classifier import SemanticClassifier
from .config import Settings, setup_libraries
from .daemon_loop import run_polling_loop
from .errors import JobClaimError
from .extraction import TextExtractor
from .jobstore import JobStore
from .logging_config import configure_logging
from .metadata import ProjectMetadataClient
from .notifications import LogDeliveryChannel, NotificationAggregator, WebhookDeliveryChannel
from .runner import CheckpointedJobRunner
from .scanner import ObjectStoreScanner
from .store import ObjectStoreClient


def build_runner(settings: Settings, store: JobStore) -> CheckpointedJobRunner:
    """Wire the scan pipeline from settings."""
    object_client = ObjectStoreClient(settings)
    metadata_client = ProjectMetadataClient(settings)
    if settings.NOTIFY_WEBHOOK_URL:
        channel = WebhookDeliveryChannel(settings)
    else:
        channel = LogDeliveryChannel()
    cascade = ClassificationCascade(
        SemanticClassifier(settings),
        ResultCache(settings.RESULT_CACHE_SIZE, settings.CACHE_PREFIX_CHARS),
        settings,
    )
    return CheckpointedJobRunner(
        store=store,
        scanner=ObjectStoreScanner(object_client, settings),
        object_client=object_client,
        extractor=TextExtractor(settings),
        cascade=cascade,
        aggregator=NotificationAggregator(metadata_client, channel, settings, store),
        settings=settings,
    )


def main() -> None:
    """Main loop for the scan worker."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
        setup_libraries(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return

    store = JobStore(settings.JOB_DB_PATH)
    runner = build_runner(settings, store)

    log.info(
        "Starting scan worker",
        bucket=settings.S3_BUCKET_NAME,
        prefix=settings.S3_PREFIX,
        poll_interval=settings.POLL_INTERVAL,
        llm_provider=settings.LLM_PROVIDER,
        classify_model=settings.CLASSIFY_MODEL,
        memory_ceiling_mb=round(settings.memory_ceiling_bytes / 1024 / 1024, 1),
        worker_id=runner.worker_id,
        webhook=bool(settings.NOTIFY_WEBHOOK_URL),
    )
    if not settings.METADATA_API_URL:
        log.warning("METADATA_API_URL is not set; matches will stay pending")

    def requeue_due() -> None:
        store.requeue_due_jobs(dt.datetime.now(dt.timezone.utc).date())

    def run_job(job_id: str) -> None:
        try:
            runner.run(job_id)
        except JobClaimError as e:
            log.info("Skipping job", job_id=job_id, reason=str(e))

    try:
        run_polling_loop(
            daemon_name="fi-scanner",
            fetch_work=lambda: store.claimable_job_ids()[:1],
            process_item=run_job,
            before_each_poll=requeue_due,
            poll_interval_seconds=settings.POLL_INTERVAL,
        )
    finally:
        runner.aggregator.metadata_client.close()
        store.close()


if __name__ == "__main__":
    main()
