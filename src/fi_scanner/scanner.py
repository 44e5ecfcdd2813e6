"""
Object Store Scanner
====================

Streams candidate documents out of the object store listing without ever
holding more than one listing page in memory.

For every listed object the scanner:

1. filters on ``LastModified`` inside the inclusive ``[start, end]`` window,
2. derives ``project_id`` and ``file_name`` from the key path
   (``<prefix><project_id>/.../<file_name>``),
3. drops sentinel names and non-target extensions,
4. hands the resulting `CandidateDocument` to ``on_document`` and waits for it
   to return before looking at the next object.

Step 4 is the backpressure mechanism: the consumer (the job runner) decides
the pace, and any exception it raises stops the scan immediately.

Keys are listed in ascending lexicographic order. That order is the stable
sort key the job runner checkpoints, and ``start_after`` resumes a scan from
the last key it completed.
"""

from __future__ import annotations

import datetime as dt
import time
from typing import Callable, Iterator

import structlog

from .config import Settings
from .models import CandidateDocument, ScanStats
from .store import ObjectStoreClient

log = structlog.get_logger(__name__)

SENTINEL_FILE_NAMES = {"docfiles.txt"}

FILE_TYPES = {
    "pdf": "pdf",
    "doc": "document",
    "docx": "document",
    "xls": "spreadsheet",
    "xlsx": "spreadsheet",
    "jpg": "image",
    "jpeg": "image",
    "png": "image",
    "zip": "archive",
    "dwg": "cad",
    "dxf": "cad",
}

OnDocument = Callable[[CandidateDocument], object]


def file_type(file_name: str) -> str:
    """Map a file name to a coarse document type."""
    if not file_name:
        return "unknown"
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return FILE_TYPES.get(ext, "other")


def parse_key(key: str, prefix: str) -> tuple[str, str] | None:
    """
    Split a storage key into ``(project_id, file_name)``.

    Returns None for keys outside the prefix, folder markers, and keys that do
    not have at least a project directory and a file under it.
    """
    if prefix and not key.startswith(prefix):
        return None
    parts = key[len(prefix):].split("/")
    if len(parts) < 2:
        return None
    project_id, file_name = parts[0], parts[-1]
    if not project_id or not file_name:
        return None
    return project_id, file_name


def is_target_file(file_name: str, extensions: list[str]) -> bool:
    lowered = file_name.lower()
    if lowered.startswith(".") or "." not in lowered:
        return False
    if lowered in SENTINEL_FILE_NAMES:
        return False
    return any(lowered.endswith(ext) for ext in extensions)


class ObjectStoreScanner:
    """Paginated, constant-memory scan of the planning document bucket."""

    def __init__(
        self,
        client: ObjectStoreClient,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.settings = settings
        self._clock = clock

    def _candidate(
        self,
        obj: dict,
        start: dt.datetime,
        end: dt.datetime,
    ) -> CandidateDocument | None:
        last_modified = obj.get("LastModified")
        if last_modified is None or not (start <= last_modified <= end):
            return None
        key = obj.get("Key", "")
        parsed = parse_key(key, self.client.prefix)
        if parsed is None:
            return None
        project_id, file_name = parsed
        if not is_target_file(file_name, self.settings.TARGET_EXTENSIONS):
            return None
        return CandidateDocument(
            project_id=project_id,
            file_name=file_name,
            storage_key=key,
            last_modified=last_modified,
            size=int(obj.get("Size", 0)),
            file_type=file_type(file_name),
        )

    def _pages(self, start_after: str | None) -> Iterator[list[dict]]:
        token = None
        while True:
            response = self.client.list_page(
                continuation_token=token,
                start_after=start_after,
            )
            yield response.get("Contents") or []
            token = response.get("NextContinuationToken")
            if not token:
                return

    def stream_since(
        self,
        start: dt.datetime,
        end: dt.datetime,
        on_document: OnDocument,
        *,
        max_objects: int | None = None,
        timeout_seconds: float | None = None,
        start_after: str | None = None,
    ) -> ScanStats:
        """
        Stream every candidate document modified within ``[start, end]``.

        ``max_objects`` bounds the number of listed objects examined and
        ``timeout_seconds`` bounds elapsed time. Hitting either returns partial
        stats with ``stopped_reason`` set; it is not an error.
        """
        started = self._clock()
        scanned = 0
        matched = 0
        pages = 0
        stopped_reason = "exhausted"

        log.info(
            "Starting object store scan",
            start=start.isoformat(),
            end=end.isoformat(),
            start_after=start_after,
            max_objects=max_objects,
            timeout_seconds=timeout_seconds,
        )

        for contents in self._pages(start_after):
            pages += 1
            for obj in contents:
                if max_objects is not None and scanned >= max_objects:
                    stopped_reason = "max_objects"
                    break
                if timeout_seconds is not None and self._clock() - started > timeout_seconds:
                    stopped_reason = "timeout"
                    break
                scanned += 1
                document = self._candidate(obj, start, end)
                if document is None:
                    continue
                matched += 1
                on_document(document)
            if stopped_reason != "exhausted":
                break

        stats = ScanStats(
            total_scanned=scanned,
            total_matched=matched,
            duration=self._clock() - started,
            pages=pages,
            stopped_reason=stopped_reason,
        )
        log_method = log.warning if stats.partial else log.info
        log_method(
            "Object store scan finished",
            total_scanned=stats.total_scanned,
            total_matched=stats.total_matched,
            pages=stats.pages,
            duration=round(stats.duration, 2),
            stopped_reason=stats.stopped_reason,
        )
        return stats

    def count_since(
        self,
        start: dt.datetime,
        end: dt.datetime,
        *,
        start_after: str | None = None,
    ) -> int:
        """Count candidate documents in the window using the same filter."""
        total = 0
        for contents in self._pages(start_after):
            for obj in contents:
                if self._candidate(obj, start, end) is not None:
                    total += 1
        log.info("Counted candidate documents", total=total, start_after=start_after)
        return total
