"""
Typed Exception Hierarchy for the Leave Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the approval engine and the ledger must react to failures
precisely: a double approval means "refresh and re-decide", an insufficient
balance means "reconcile administratively", a missing privilege means "deny".
Matching on message strings is fragile, so every failure has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (document_id, step_order, amounts...)

Example:
    try:
        engine.approve(document_id, actor_id)
    except PreconditionFailed as e:
        api_response(code=e.code, entity=e.entity_id, expected=e.expected)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from LeaveKernelError:

    LeaveKernelError (base)
    |
    +-- AuthorizationError
    |
    +-- PreconditionFailed
    |
    +-- DocumentError
    |   +-- DocumentNotFoundError
    |   +-- UnknownDocumentTypeError
    |   +-- InvalidApprovalLineError
    |
    +-- LedgerError
    |   +-- InsufficientBalanceError
    |
    +-- DataIntegrityError
    |   +-- SubjectNotFoundError
    |   +-- MalformedGrantError
    |   +-- InvalidAmountError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- BatchError
        +-- BatchAlreadyRunningError
        +-- BatchJobNotFoundError
        +-- TaskNotRegisteredError

===============================================================================
ERROR CODE REFERENCE
===============================================================================

Code                      | Exception                   | When Raised
--------------------------|-----------------------------|------------------------------
AUTHORIZATION_DENIED      | AuthorizationError          | No pending step for actor,
                          |                             | insufficient privilege
PRECONDITION_FAILED       | PreconditionFailed          | Step/document no longer in
                          |                             | the expected state
DOCUMENT_NOT_FOUND        | DocumentNotFoundError       | Unknown document id
UNKNOWN_DOCUMENT_TYPE     | UnknownDocumentTypeError    | Type missing from config
INVALID_APPROVAL_LINE     | InvalidApprovalLineError    | Empty or inconsistent line
INSUFFICIENT_BALANCE      | InsufficientBalanceError    | Ledger cannot cover amount
INVALID_AMOUNT            | InvalidAmountError          | Non-positive, float, or not a
                          |                             | multiple of the day quantum
DATA_INTEGRITY            | DataIntegrityError          | Missing subject, bad grant
IMMUTABILITY_VIOLATION    | ImmutabilityViolationError  | Update/delete of append-only row
AUDIT_CHAIN_BROKEN        | AuditChainBrokenError       | Hash chain mismatch
BATCH_ALREADY_RUNNING     | BatchAlreadyRunningError    | Overlapping job invocation

===============================================================================
"""


class LeaveKernelError(Exception):
    """
    Base exception for all leave kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "LEAVE_KERNEL_ERROR"


# Authorization and state preconditions


class AuthorizationError(LeaveKernelError):
    """Actor holds no pending step on the document, or lacks privilege."""

    code: str = "AUTHORIZATION_DENIED"

    def __init__(self, actor_id: str, action: str, reason: str):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not {action}: {reason}")


class PreconditionFailed(LeaveKernelError):
    """A step or document is no longer in the state the caller expected.

    The caller must re-fetch and re-decide; the engine never retries.
    """

    code: str = "PRECONDITION_FAILED"

    def __init__(self, entity_id: str, expected: str, actual: str):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Precondition failed for {entity_id}: "
            f"expected {expected}, found {actual}"
        )


# Document-related exceptions


class DocumentError(LeaveKernelError):
    """Base exception for document-related errors."""

    code: str = "DOCUMENT_ERROR"


class DocumentNotFoundError(DocumentError):
    """Document does not exist."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class UnknownDocumentTypeError(DocumentError):
    """Document type is not configured."""

    code: str = "UNKNOWN_DOCUMENT_TYPE"

    def __init__(self, document_type: str, known_types: tuple[str, ...] = ()):
        self.document_type = document_type
        self.known_types = known_types
        super().__init__(
            f"Unknown document type '{document_type}'. "
            f"Known: {', '.join(known_types) or '(none)'}"
        )


class InvalidApprovalLineError(DocumentError):
    """The submitted approver line cannot be turned into steps."""

    code: str = "INVALID_APPROVAL_LINE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid approval line: {reason}")


# Ledger-related exceptions


class LedgerError(LeaveKernelError):
    """Base exception for ledger errors."""

    code: str = "LEDGER_ERROR"


class InsufficientBalanceError(LedgerError):
    """Non-expired grants cannot cover the requested deduction."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(self, subject_id: str, requested: str, available: str):
        self.subject_id = subject_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient leave balance for subject {subject_id}: "
            f"requested {requested}, available {available}"
        )


# Data integrity


class DataIntegrityError(LeaveKernelError):
    """Input data is structurally wrong for this unit of work.

    Fatal for the unit of work that raised it; batch jobs record it against
    the subject and carry on with the rest.
    """

    code: str = "DATA_INTEGRITY"

    def __init__(self, message: str):
        super().__init__(message)


class SubjectNotFoundError(DataIntegrityError):
    """Subject id is unknown to the subject directory."""

    code: str = "SUBJECT_NOT_FOUND"

    def __init__(self, subject_id: str):
        self.subject_id = subject_id
        super().__init__(f"Subject not found: {subject_id}")


class MalformedGrantError(DataIntegrityError):
    """Grant violates amount > 0 or expiration >= granted date."""

    code: str = "MALFORMED_GRANT"

    def __init__(self, subject_id: str, reason: str):
        self.subject_id = subject_id
        self.reason = reason
        super().__init__(f"Malformed grant for subject {subject_id}: {reason}")


class InvalidAmountError(DataIntegrityError):
    """Day amount is not a positive multiple of the day quantum."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: str, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid day amount {amount}: {reason}")


# Immutability


class ImmutabilityError(LeaveKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit


class AuditError(LeaveKernelError):
    """Base exception for audit trail errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Batch processing


class BatchError(LeaveKernelError):
    """Base exception for grant batch job errors."""

    code: str = "BATCH_ERROR"


class BatchAlreadyRunningError(BatchError):
    """A run for the same task and business date is still RUNNING."""

    code: str = "BATCH_ALREADY_RUNNING"

    def __init__(self, task_type: str, business_date: str):
        self.task_type = task_type
        self.business_date = business_date
        super().__init__(
            f"Batch job {task_type} for {business_date} is already running"
        )


class BatchJobNotFoundError(BatchError):
    """Batch job id does not exist."""

    code: str = "BATCH_JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Batch job not found: {job_id}")


class TaskNotRegisteredError(BatchError):
    """No batch task is registered under the requested type."""

    code: str = "TASK_NOT_REGISTERED"

    def __init__(self, task_type: str, available: tuple[str, ...] = ()):
        self.task_type = task_type
        self.available = available
        super().__init__(
            f"No task registered for type '{task_type}'. "
            f"Available: {list(available)}"
        )
