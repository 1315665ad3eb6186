"""
Idempotency key generation utilities.

Grant jobs and batch runs are safe to re-invoke because every row they write
carries a deterministic key with a unique constraint behind it.
"""

from datetime import date
from uuid import UUID


def grant_idempotency_key(
    subject_id: UUID | str,
    grant_type: str,
    period: date | str,
) -> str:
    """
    Key for a scheduled grant.

    Format: subject_id:grant_type:period

    ``period`` is the granted date for monthly and fiscal-annual grants and
    the evaluated quarter label for attendance awards.

    Example:
        >>> grant_idempotency_key(uuid, "monthly", date(2024, 3, 15))
        "550e8400-e29b-41d4-a716-446655440000:monthly:2024-03-15"
    """
    period_text = period.isoformat() if isinstance(period, date) else period
    return f"{subject_id}:{grant_type}:{period_text}"


def job_idempotency_key(task_type: str, business_date: date, attempt: int) -> str:
    """
    Key for one batch run.

    Format: task_type:business_date:attempt
    """
    return f"{task_type}:{business_date.isoformat()}:{attempt}"

