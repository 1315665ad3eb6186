"""
Leave Kernel

The approval workflow and leave-balance ledger:
- Sequential, multi-approver document approval with agreement and delegation
- Expiration-aware FIFO consumption of leave grants
- Idempotent, append-only postings
- Full auditability via hash chain
"""

__version__ = "0.1.0"
