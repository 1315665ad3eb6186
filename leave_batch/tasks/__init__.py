"""
leave_batch.tasks -- Task protocol, registry, and the grant task implementations.
"""

from leave_batch.tasks.base import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    TaskRegistry,
)
from leave_batch.tasks.grant_tasks import (
    AttendanceAwardTask,
    FiscalAnnualGrantTask,
    MonthlyGrantTask,
)

__all__ = [
    "AttendanceAwardTask",
    "BatchItemInput",
    "BatchTask",
    "BatchTaskResult",
    "FiscalAnnualGrantTask",
    "MonthlyGrantTask",
    "TaskRegistry",
]
