"""
Daemon Loop Utilities
=====================

The scanner worker is a long-running process with a simple control flow:

- Poll for work on an interval.
- If work is found, process it: one unit at a time, never in parallel.
- Keep running forever (until SIGINT / Ctrl-C).

Processing is sequential. A scan job holds at most one document in
memory and talks to the classifier one call at a time, so a worker's peak
memory and request rate stay bounded. Scale out by running more workers; the
job claim keeps them off each other's jobs.
"""

from __future__ import annotations

import time
from typing import Callable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def run_polling_loop(
    *,
    daemon_name: str,
    fetch_work: Callable[[], list[T]],
    process_item: Callable[[T], None],
    poll_interval_seconds: int,
    before_each_poll: Callable[[], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Run an infinite polling loop, processing fetched items one by one.

    - Items are fetched once per loop iteration.
    - Exceptions raised while processing one item are logged and do not stop
      the daemon.

    Args:
        daemon_name:
            Name used in log messages.
        fetch_work:
            A function returning the next batch of work items.
        process_item:
            Processes a single work item. Exceptions are caught and logged.
        poll_interval_seconds:
            How long to sleep between polling iterations.
        before_each_poll:
            Optional hook invoked before every fetch (e.g. to requeue due jobs).
        sleep:
            Injectable sleep function (primarily for tests).
    """
    poll_interval_seconds = max(1, int(poll_interval_seconds))

    was_idle = False
    while True:
        try:
            if before_each_poll is not None:
                before_each_poll()
            items = fetch_work()
            if not items:
                if not was_idle:
                    log.info("No work found; waiting", daemon=daemon_name)
                was_idle = True
                sleep(poll_interval_seconds)
                continue

            was_idle = False
            log.info("Processing work", daemon=daemon_name, item_count=len(items))
            for item in items:
                try:
                    process_item(item)
                except Exception:
                    # Log and continue. The runner has already recorded the
                    # job's failure state.
                    log.exception("Work item failed", daemon=daemon_name, item=str(item))

            sleep(poll_interval_seconds)
        except KeyboardInterrupt:
            log.info("Ctrl-C received; exiting", daemon=daemon_name)
            break
        except Exception:
            log.exception(
                "Unexpected error in daemon loop; sleeping",
                daemon=daemon_name,
                poll_interval_seconds=poll_interval_seconds,
            )
            sleep(poll_interval_seconds)
