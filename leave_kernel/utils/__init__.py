"""Utility modules for the leave kernel."""

from leave_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_event,
    hash_payload,
)
from leave_kernel.utils.idempotency import (
    grant_idempotency_key,
    job_idempotency_key,
)

__all__ = [
    "canonicalize_json",
    "hash_audit_event",
    "hash_payload",
    "grant_idempotency_key",
    "job_idempotency_key",
]
