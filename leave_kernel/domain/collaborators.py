"""
Collaborator protocols (``leave_kernel.domain.collaborators``).

The kernel consumes three external collaborators through these protocols:

* ``SubjectDirectory`` -- employees: hire date, employment status, and
  attendance counts.  Read-only.
* ``NotificationDispatcher`` -- told about step activation, final approval,
  rejection and cancellation.  Fire-and-forget: delivery failures never
  reach the engine.
* ``PrivilegeDirectory`` -- privilege levels for administrative ledger
  adjustments.

Implementations live outside the kernel (``leave_services.directory`` and
``leave_services.notifications``).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from typing import Protocol, runtime_checkable
from uuid import UUID

from leave_kernel.domain.approval import Notification


@dataclass(frozen=True)
class SubjectRecord:
    """An employee as the ledger needs to see them."""

    subject_id: UUID
    hire_date: date
    active: bool = True
    name: str | None = None


@dataclass(frozen=True)
class AttendanceSummary:
    """Attendance counts over an inclusive date range."""

    worked_days: int
    late_days: int


@runtime_checkable
class SubjectDirectory(Protocol):
    def list_active_subjects(self) -> Sequence[SubjectRecord]: ...

    def get_subject(self, subject_id: UUID) -> SubjectRecord | None: ...

    def attendance_summary(
        self, subject_id: UUID, start: date, end: date,
    ) -> AttendanceSummary: ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    def dispatch(self, notification: Notification) -> None: ...


@runtime_checkable
class PrivilegeDirectory(Protocol):
    def privilege_level(self, actor_id: UUID) -> int: ...
