"""
BatchTask protocol, supporting types, and TaskRegistry.

Contract:
    ``BatchTask`` defines the interface every grant task must implement.
    ``TaskRegistry`` stores registered tasks keyed by ``task_type``.
    ``leave_batch.orchestrator.default_task_registry()`` loads the grant tasks.

Architecture:
    leave_batch/tasks.  Imports kernel domain types and the ledger only for
    annotations.

Invariants enforced:
    - One task per ``task_type`` string.
    - ``evaluate_item`` reads the subject directory and nothing else; it runs
      on worker threads and must not touch the session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

from leave_kernel.exceptions import TaskNotRegisteredError

from leave_batch.domain.types import BatchItemStatus

if TYPE_CHECKING:
    from leave_kernel.domain.collaborators import SubjectDirectory
    from leave_kernel.domain.entitlement import EntitlementDecision
    from leave_kernel.services.ledger_service import LedgerService


# =============================================================================
# Supporting DTOs
# =============================================================================


@dataclass(frozen=True)
class BatchItemInput:
    """Input for one subject.

    Created by ``BatchTask.prepare_items()``.
    """

    item_index: int
    item_key: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def subject_id(self) -> UUID:
        return UUID(self.item_key)


@dataclass(frozen=True)
class BatchTaskResult:
    """Result returned by ``BatchTask.execute_item()``.

    The executor uses this to build ``BatchItemResult`` DTOs.
    """

    status: BatchItemStatus
    result_data: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None


# =============================================================================
# BatchTask Protocol
# =============================================================================


@runtime_checkable
class BatchTask(Protocol):
    """Protocol for grant task implementations.

    Contract:
        - ``task_type``: unique string key registered in TaskRegistry.
        - ``description``: human-readable label for logs and audit.
        - ``prepare_items()``: lists the subjects to evaluate.
        - ``evaluate_item()``: decides eligibility for ONE subject.  Runs in
          a worker thread; directory reads only.
        - ``execute_item()``: turns the decision into a grant, within a
          SAVEPOINT owned by the executor.

    Non-goals:
        - Does NOT manage transactions -- the executor owns SAVEPOINTs.
    """

    @property
    def task_type(self) -> str: ...

    @property
    def description(self) -> str: ...

    def prepare_items(
        self,
        directory: SubjectDirectory,
        business_date: date,
    ) -> tuple[BatchItemInput, ...]:
        """List the subjects for this run, one BatchItemInput each."""
        ...

    def evaluate_item(
        self,
        item: BatchItemInput,
        directory: SubjectDirectory,
        business_date: date,
    ) -> EntitlementDecision:
        """Decide whether and how much to grant one subject."""
        ...

    def execute_item(
        self,
        item: BatchItemInput,
        decision: EntitlementDecision,
        ledger: LedgerService,
        actor_id: UUID,
    ) -> BatchTaskResult:
        """Issue the grant for an eligible decision (SAVEPOINT active)."""
        ...


# =============================================================================
# TaskRegistry
# =============================================================================


class TaskRegistry:
    """Registry mapping task_type strings to BatchTask implementations.

    Contract:
        - ``register()`` adds a task; raises ValueError on duplicate.
        - ``get()`` retrieves by task_type; raises TaskNotRegisteredError.
        - ``list_tasks()`` returns all registered task_type strings.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, BatchTask] = {}

    def register(self, task: BatchTask) -> None:
        """Register a task implementation.

        Raises:
            ValueError: If a task with the same task_type is already registered.
        """
        if task.task_type in self._tasks:
            raise ValueError(
                f"Task type '{task.task_type}' is already registered"
            )
        self._tasks[task.task_type] = task

    def get(self, task_type: str) -> BatchTask:
        """Retrieve a registered task by task_type.

        Raises:
            TaskNotRegisteredError: If no task is registered for task_type.
        """
        try:
            return self._tasks[task_type]
        except KeyError:
            raise TaskNotRegisteredError(task_type, self.list_tasks()) from None

    def list_tasks(self) -> tuple[str, ...]:
        """Return all registered task_type strings, sorted."""
        return tuple(sorted(self._tasks.keys()))

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._tasks
