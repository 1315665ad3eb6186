"""
leave_services -- Package init and public API.

Responsibility:
    Caller-facing composition over the kernel: the DocumentGateway facade
    plus in-memory adapters for the subject directory and notification
    dispatch.

Architecture position:
    Services -- outermost layer.

    Dependency direction:
        leave_services/ -> leave_kernel/  (allowed)
        leave_kernel/   -> leave_services/ (FORBIDDEN)

Invariants enforced:
    - Layer isolation: leave_kernel never imports from this package.
    - Each gateway call owns its transaction; notifications leave only
      after commit.
"""

from leave_services.directory import StaticSubjectDirectory
from leave_services.gateway import DocumentGateway, to_approver_spec
from leave_services.notifications import (
    LoggingNotificationDispatcher,
    RecordingNotificationDispatcher,
)

__all__ = [
    "DocumentGateway",
    "LoggingNotificationDispatcher",
    "RecordingNotificationDispatcher",
    "StaticSubjectDirectory",
    "to_approver_spec",
]
