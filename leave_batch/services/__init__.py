"""leave_batch.services -- the grant job executor."""

from leave_batch.services.executor import BatchExecutor

__all__ = ["BatchExecutor"]
