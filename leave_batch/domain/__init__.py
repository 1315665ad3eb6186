"""
leave_batch.domain -- Pure types and value objects for the grant jobs.

ZERO I/O.  All types are frozen dataclasses.
"""

from leave_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchJob,
    BatchJobStatus,
    BatchRunResult,
)

__all__ = [
    "BatchItemResult",
    "BatchItemStatus",
    "BatchJob",
    "BatchJobStatus",
    "BatchRunResult",
]
