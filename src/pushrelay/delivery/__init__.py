"""Delivery reliability layer.

Each component owns one concern (duplicate suppression, batching,
retry, attempt logging, maintenance) and the
:class:`DeliveryOrchestrator` applies them in order.
"""

from pushrelay.delivery.attempt_log import AttemptLogger
from pushrelay.delivery.batching import (
    BatchingAggregator,
    BatchingStoppedError,
    summarize_batch,
)
from pushrelay.delivery.dedup import (
    DuplicateKey,
    DuplicateSuppressionCache,
    build_duplicate_key,
)
from pushrelay.delivery.maintenance import MaintenanceWorker
from pushrelay.delivery.orchestrator import AttemptOutcome, DeliveryOrchestrator
from pushrelay.delivery.retry import RetryEntry, RetryScheduler
from pushrelay.delivery.store import NotificationStore, StoreError

__all__ = [
    "AttemptLogger",
    "AttemptOutcome",
    "BatchingAggregator",
    "BatchingStoppedError",
    "DeliveryOrchestrator",
    "DuplicateKey",
    "DuplicateSuppressionCache",
    "MaintenanceWorker",
    "NotificationStore",
    "RetryEntry",
    "RetryScheduler",
    "StoreError",
    "build_duplicate_key",
    "summarize_batch",
]
