"""Batch execution of client operations"""

from .executor import BatchExecutor, BatchOutcome
from .operations import BatchOperations, EntityCriteria
from .options import PROFILES, BatchOptions, OperationProfile, resolve_options
from .payload import (
    BatchPayload,
    KeyedPayload,
    Partition,
    SequencePayload,
    resolve_payload,
)
from .progress import ProgressSink, TqdmProgress

__all__ = [
    "BatchExecutor",
    "BatchOperations",
    "BatchOptions",
    "BatchOutcome",
    "BatchPayload",
    "EntityCriteria",
    "KeyedPayload",
    "OperationProfile",
    "PROFILES",
    "Partition",
    "ProgressSink",
    "SequencePayload",
    "TqdmProgress",
    "resolve_options",
    "resolve_payload",
]
