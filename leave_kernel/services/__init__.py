"""Kernel services: the approval engine, the ledger, audit and sequences."""

from leave_kernel.services.approval_service import ApprovalEngine
from leave_kernel.services.auditor_service import AuditorService, AuditTrace
from leave_kernel.services.ledger_service import LedgerService
from leave_kernel.services.sequence_service import SequenceService

__all__ = [
    "ApprovalEngine",
    "AuditorService",
    "AuditTrace",
    "LedgerService",
    "SequenceService",
]
