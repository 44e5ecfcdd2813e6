"""
Project Metadata Client
=======================

Looks up display metadata (title, stage, sector, authority) for a planning
project. Lookups never raise: any failure, an unsuccessful payload, or an
empty result returns a placeholder record, which the notification
aggregator filters out.

Successful lookups are cached per project with a time-to-live and a bounded
size; placeholders are not cached, so a transient failure is retried on the
next lookup.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable

import requests
import structlog

from .config import Settings
from .models import ProjectMetadata
from .utils import RetryPolicy, retry, retry_on

log = structlog.get_logger(__name__)

PLACEHOLDER_TITLE = "Title unavailable"
PLACEHOLDER_TITLES = {
    PLACEHOLDER_TITLE.lower(),
    "error loading data",
    "untitled project",
    "unknown",
    "n/a",
    "",
}


def placeholder(project_id: str) -> ProjectMetadata:
    return ProjectMetadata(project_id=project_id, title=PLACEHOLDER_TITLE, is_placeholder=True)


def is_placeholder(metadata: ProjectMetadata | None) -> bool:
    if metadata is None or metadata.is_placeholder:
        return True
    return metadata.title.strip().lower() in PLACEHOLDER_TITLES


class ProjectMetadataClient:
    """Cached client for the external project metadata service."""

    def __init__(
        self,
        settings: Settings,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self._session = session or requests.Session()
        self._clock = clock
        self._lock = threading.RLock()
        self._cache: OrderedDict[str, tuple[float, ProjectMetadata]] = OrderedDict()
        self.retry_policy = RetryPolicy.from_settings(
            settings, retry_on(requests.exceptions.ConnectionError, requests.exceptions.Timeout)
        )

    def close(self) -> None:
        self._session.close()

    @retry()
    def _get(self, *args, **kwargs) -> requests.Response:
        """A retriable version of session.get."""
        return self._session.get(*args, **kwargs)

    def get(self, project_id: str) -> ProjectMetadata:
        cached = self._cached(project_id)
        if cached is not None:
            return cached

        metadata = self._fetch(project_id)
        if not metadata.is_placeholder:
            self._store(project_id, metadata)
        return metadata

    def _cached(self, project_id: str) -> ProjectMetadata | None:
        with self._lock:
            entry = self._cache.get(project_id)
            if entry is None:
                return None
            stored_at, metadata = entry
            if self._clock() - stored_at > self.settings.METADATA_CACHE_TTL_SECONDS:
                del self._cache[project_id]
                return None
            return metadata

    def _store(self, project_id: str, metadata: ProjectMetadata) -> None:
        with self._lock:
            self._cache.pop(project_id, None)
            while len(self._cache) >= max(1, self.settings.METADATA_CACHE_SIZE):
                self._cache.popitem(last=False)
            self._cache[project_id] = (self._clock(), metadata)

    def _fetch(self, project_id: str) -> ProjectMetadata:
        if not self.settings.METADATA_API_URL:
            log.warning("Metadata service not configured", project_id=project_id)
            return placeholder(project_id)

        params = {"planning_id": project_id}
        if self.settings.METADATA_API_KEY:
            params["api_key"] = self.settings.METADATA_API_KEY
        try:
            response = self._get(
                self.settings.METADATA_API_URL,
                params=params,
                timeout=self.settings.REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            log.warning("Metadata lookup failed", project_id=project_id, error=str(e))
            return placeholder(project_id)

        if not isinstance(data, dict) or data.get("success") is False:
            log.warning("Metadata service returned an unsuccessful payload", project_id=project_id)
            return placeholder(project_id)

        rows = (data.get("data") or {}).get("rows") if isinstance(data.get("data"), dict) else None
        if not rows or not isinstance(rows, list):
            log.warning("Metadata service returned no rows", project_id=project_id)
            return placeholder(project_id)

        row = rows[0]
        if not isinstance(row, dict):
            log.warning("Metadata service returned a malformed row", project_id=project_id)
            return placeholder(project_id)
        title = str(row.get("planning_title") or "").strip()
        path = row.get("planning_path_url")
        metadata = ProjectMetadata(
            project_id=project_id,
            title=title or PLACEHOLDER_TITLE,
            stage=row.get("planning_stage") or "N/A",
            sector=row.get("planning_category") or "N/A",
            authority=row.get("planning_authority") or "N/A",
            status=row.get("planning_status") or "N/A",
            url=f"{self.settings.PROJECT_URL_PREFIX}{path}" if path else None,
            is_placeholder=not title,
        )
        log.debug("Retrieved project metadata", project_id=project_id, title=metadata.title)
        return metadata
