"""
Error taxonomy
==============

Stage rejections inside the classification cascade are returned as values.
The exceptions below are reserved for infrastructure failures and for the
deliberate self-pause of a running job.
"""

from __future__ import annotations


class ScannerError(Exception):
    """Base class for all errors raised by the scanner."""


class MalformedResponseError(ScannerError):
    """The classifier answered, but not in the shape the contract requires."""


class ClassifierUnavailableError(ScannerError):
    """The classifier could not be reached after every retry was spent."""


class JobNotFoundError(ScannerError):
    """No scan job exists under the requested id."""


class JobClaimError(ScannerError):
    """Another runner holds the job, or it is not in a claimable state."""


class DocumentProcessingError(ScannerError):
    """An unrecoverable failure while processing a single document."""

    def __init__(self, message: str, *, index: int, storage_key: str):
        super().__init__(message)
        self.index = index
        self.storage_key = storage_key


class ScanPaused(ScannerError):
    """Raised out of the document callback when the memory breaker trips."""

    def __init__(self, rss_bytes: int, ceiling_bytes: int):
        super().__init__(
            f"Resident memory {rss_bytes / 1024 / 1024:.1f}MB exceeded "
            f"ceiling {ceiling_bytes / 1024 / 1024:.1f}MB"
        )
        self.rss_bytes = rss_bytes
        self.ceiling_bytes = ceiling_bytes


class UnreadableDocumentError(ScannerError):
    """The document body is corrupt, encrypted, or not in the declared format."""
