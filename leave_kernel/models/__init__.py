"""ORM models for the leave kernel."""

from leave_kernel.models.approval import (
    ApprovalStepModel,
    DocumentModel,
    StepAuditModel,
)
from leave_kernel.models.audit_event import AuditAction, AuditEvent
from leave_kernel.models.ledger import (
    BalanceModel,
    DeductionModel,
    GrantModel,
    UsageModel,
)

__all__ = [
    "ApprovalStepModel",
    "AuditAction",
    "AuditEvent",
    "BalanceModel",
    "DeductionModel",
    "DocumentModel",
    "GrantModel",
    "StepAuditModel",
    "UsageModel",
]
