"""
Planning further-information request scanner.

This package contains:

- the object store scanner (paginated, constant-memory listing)
- the classification cascade, its result cache and evidence gate
- the checkpointed job runner and its SQLite job store
- the notification aggregator and delivery channels
- the long-running worker entrypoint
"""

from .cache import ResultCache
from .cascade import ClassificationCascade
from .models import Accepted, ClassificationResult, Rejected
from .notifications import NotificationAggregator
from .runner import CheckpointedJobRunner
from .scanner import ObjectStoreScanner

__all__ = [
    "Accepted",
    "CheckpointedJobRunner",
    "ClassificationCascade",
    "ClassificationResult",
    "NotificationAggregator",
    "ObjectStoreScanner",
    "Rejected",
    "ResultCache",
]
