"""
leave_batch -- Grant Issuer batch jobs.

Runs the scheduled entitlement jobs (monthly anniversary grants, fiscal-year
proration, quarterly attendance awards) through a uniform executor:
persisted run records, eligibility evaluation in a worker pool, and grant
insertion with per-subject SAVEPOINT isolation.

Architecture:
    leave_batch/ is a top-level package.  Nothing in leave_kernel imports
    from leave_batch.  Entry points live in ``leave_batch.orchestrator``.

Invariants:
    - SAVEPOINT isolation per subject: one failure never aborts the run.
    - Run records are keyed by (task_type, business_date, attempt).
    - At most one RUNNING attempt per (task_type, business_date).
    - Grants carry deterministic idempotency keys, so reruns skip them.
    - One summary audit event per run.
"""
