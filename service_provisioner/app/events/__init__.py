"""
Ledger event intake: sources, checkpoints and the observer.
"""

from .checkpoint import CheckpointStore, InMemoryCheckpointStore, RedisCheckpointStore
from .kafka_source import KafkaEventSource
from .observer import RECONCILED_KINDS, EventObserver
from .source import EventSource, InProcessLedgerSource, LedgerPollingSource

__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "RedisCheckpointStore",
    "EventSource",
    "LedgerPollingSource",
    "InProcessLedgerSource",
    "KafkaEventSource",
    "EventObserver",
    "RECONCILED_KINDS",
]
