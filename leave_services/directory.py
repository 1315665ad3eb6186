"""
In-memory subject directory.

Satisfies both ``SubjectDirectory`` and ``PrivilegeDirectory``.  Used by
the CLI (loaded from a YAML roster) and by tests.  The HR system that owns
employees and attendance in production plugs in through the same protocols.

Roster format::

    subjects:
      - id: 6f1c...            # UUID
        name: Kim
        hire_date: 2024-03-15
        active: true
        privilege_level: 1
        late_days: [2024-04-02]
        worked_days: [2024-04-01, 2024-04-02]
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import date
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from leave_kernel.domain.collaborators import AttendanceSummary, SubjectRecord
from leave_kernel.exceptions import SubjectNotFoundError


class StaticSubjectDirectory:
    """Subjects, daily attendance and privilege levels held in memory.

    Reads are safe from the grant job worker threads.
    """

    def __init__(self, subjects: Iterable[SubjectRecord] = ()) -> None:
        self._lock = threading.Lock()
        self._subjects: dict[UUID, SubjectRecord] = {}
        self._worked: dict[UUID, set[date]] = {}
        self._late: dict[UUID, set[date]] = {}
        self._privileges: dict[UUID, int] = {}
        for subject in subjects:
            self.add_subject(subject)

    # Mutation (setup only)

    def add_subject(self, subject: SubjectRecord, privilege_level: int = 0) -> None:
        with self._lock:
            self._subjects[subject.subject_id] = subject
            self._worked.setdefault(subject.subject_id, set())
            self._late.setdefault(subject.subject_id, set())
            self._privileges.setdefault(subject.subject_id, privilege_level)

    def record_attendance(self, subject_id: UUID, day: date, late: bool = False) -> None:
        """Mark ``day`` as worked, and as a late arrival when ``late``."""
        with self._lock:
            if subject_id not in self._subjects:
                raise SubjectNotFoundError(str(subject_id))
            self._worked[subject_id].add(day)
            if late:
                self._late[subject_id].add(day)

    def set_privilege_level(self, actor_id: UUID, level: int) -> None:
        with self._lock:
            self._privileges[actor_id] = level

    # SubjectDirectory

    def list_active_subjects(self) -> tuple[SubjectRecord, ...]:
        with self._lock:
            return tuple(s for s in self._subjects.values() if s.active)

    def get_subject(self, subject_id: UUID) -> SubjectRecord | None:
        with self._lock:
            return self._subjects.get(subject_id)

    def attendance_summary(
        self, subject_id: UUID, start: date, end: date,
    ) -> AttendanceSummary:
        """Worked and late days within ``start``..``end`` inclusive.

        Raises:
            SubjectNotFoundError: Unknown subject.
        """
        with self._lock:
            if subject_id not in self._subjects:
                raise SubjectNotFoundError(str(subject_id))
            worked = sum(1 for d in self._worked[subject_id] if start <= d <= end)
            late = sum(1 for d in self._late[subject_id] if start <= d <= end)
        return AttendanceSummary(worked_days=worked, late_days=late)

    # PrivilegeDirectory

    def privilege_level(self, actor_id: UUID) -> int:
        with self._lock:
            return self._privileges.get(actor_id, 0)

    # Loading

    @classmethod
    def from_yaml(cls, path: Path) -> StaticSubjectDirectory:
        """Load a roster file.

        Raises:
            FileNotFoundError: Missing file.
            KeyError: Entry without ``id`` or ``hire_date``.
            ValueError: Malformed id or date.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        directory = cls()
        for entry in data.get("subjects", []) or []:
            directory._load_entry(entry)
        return directory

    def _load_entry(self, entry: dict[str, Any]) -> None:
        subject = SubjectRecord(
            subject_id=UUID(str(entry["id"])),
            hire_date=_as_date(entry["hire_date"]),
            active=bool(entry.get("active", True)),
            name=entry.get("name"),
        )
        self.add_subject(subject, privilege_level=int(entry.get("privilege_level", 0)))
        late = {_as_date(d) for d in entry.get("late_days", []) or []}
        for day in entry.get("worked_days", []) or []:
            worked = _as_date(day)
            self.record_attendance(subject.subject_id, worked, late=worked in late)
        for day in late:
            self.record_attendance(subject.subject_id, day, late=True)


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))
