"""
Pytest fixtures for the leave ledger test suite.

Provides:
- An in-memory SQLite database per test (StaticPool, real SAVEPOINTs)
- Kernel services bound to a single session
- An in-memory subject directory and a recording notification dispatcher
- A DocumentGateway and a BatchOrchestrator wired to the same database

Sessions from the ``session`` fixture and the gateway/orchestrator share
one SQLite connection; a test uses one or the other, never both at once.
"""

import json
import logging
from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest

import leave_batch.models  # noqa: F401  registers batch tables
from leave_batch.orchestrator import BatchOrchestrator
from leave_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from leave_kernel.domain.approval import ApproverSpec
from leave_kernel.domain.clock import DeterministicClock
from leave_kernel.domain.collaborators import SubjectRecord
from leave_kernel.domain.ledger import GrantType
from leave_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from leave_kernel.services.approval_service import ApprovalEngine
from leave_kernel.services.auditor_service import AuditorService
from leave_kernel.services.ledger_service import LedgerService
from leave_services.directory import StaticSubjectDirectory
from leave_services.gateway import DocumentGateway
from leave_services.notifications import RecordingNotificationDispatcher

# Test actor ID for administrative operations
TEST_ACTOR_ID = UUID("00000000-0000-4000-8000-00000000a11c")

BUSINESS_DATE = date(2025, 3, 10)

DOCUMENT_TYPES = {
    "annual_leave": True,
    "half_day_leave": True,
    "business_trip": False,
    "expense": False,
}


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture leave_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger):
            ledger.deduct(...)
            assert any(r["message"] == "deduction_posted" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    handler.setLevel(logging.DEBUG)
    root = logging.getLogger("leave_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_engine():
    """Fresh in-memory database with every table created."""
    engine = init_engine_from_url("sqlite://")
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """A session for service-level tests; rolled back at teardown."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock():
    return DeterministicClock.at_date(BUSINESS_DATE)


# =============================================================================
# Kernel services
# =============================================================================


@pytest.fixture
def auditor(session, clock):
    return AuditorService(session, clock)


@pytest.fixture
def ledger(session, auditor, clock):
    return LedgerService(session, auditor, clock)


@pytest.fixture
def approval_engine(session, auditor, ledger, clock):
    return ApprovalEngine(
        session, auditor, ledger, clock=clock, document_types=DOCUMENT_TYPES,
    )


@pytest.fixture
def issue_grant(ledger, clock):
    """Issue a MANUAL grant expiring ``expires_in`` days after the business date."""

    def _issue(
        subject_id: UUID,
        amount: str | int | Decimal,
        expires_in: int = 300,
        grant_type: GrantType = GrantType.MANUAL,
        granted_date: date | None = None,
    ):
        today = clock.today()
        return ledger.issue_grant(
            subject_id=subject_id,
            grant_type=grant_type,
            amount=amount,
            granted_date=granted_date or today,
            expiration_date=today + timedelta(days=expires_in),
            actor_id=TEST_ACTOR_ID,
        ).grant

    return _issue


@pytest.fixture
def line():
    """Build an approver line from (approver_id, order) pairs."""

    def _line(*entries: tuple[UUID, int]) -> list[ApproverSpec]:
        return [ApproverSpec(approver_id=a, order=o) for a, o in entries]

    return _line


# =============================================================================
# Collaborators and composition roots
# =============================================================================


@pytest.fixture
def directory():
    return StaticSubjectDirectory()


@pytest.fixture
def add_subject(directory):
    """Register a subject and return its id."""

    def _add(hire_date: date, active: bool = True, privilege_level: int = 0) -> UUID:
        subject = SubjectRecord(subject_id=uuid4(), hire_date=hire_date, active=active)
        directory.add_subject(subject, privilege_level=privilege_level)
        return subject.subject_id

    return _add


@pytest.fixture
def notifier():
    return RecordingNotificationDispatcher()


@pytest.fixture
def gateway(session_factory, notifier, directory, clock):
    return DocumentGateway(
        session_factory=session_factory,
        dispatcher=notifier,
        privileges=directory,
        document_types=DOCUMENT_TYPES,
        clock=clock,
    )


@pytest.fixture
def orchestrator(session_factory, directory, clock):
    return BatchOrchestrator(session_factory, directory, clock=clock, max_workers=4)
