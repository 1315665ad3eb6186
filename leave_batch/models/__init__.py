"""
leave_batch.models -- ORM models for grant job run records.

Architecture: leave_batch/models.  Imports from leave_kernel.db.base only.
"""

from leave_batch.models.batch import BatchItemModel, BatchJobModel

__all__ = [
    "BatchItemModel",
    "BatchJobModel",
]
