"""
LeaveConfig schema.

Defines the typed shape of the YAML configuration.  The loader parses
``defaults.yaml`` (or an override file) into these frozen dataclasses;
``leave_config.get_active_config()`` is the single runtime entry point.

The kernel never sees these types: services and batch jobs receive plain
values (document type mapping, policies, limits) through constructors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite://"
    echo: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentTypeConfig:
    """One approvable document type."""

    name: str
    consumes_entitlement: bool = False
    description: str = ""


@dataclass(frozen=True)
class ApprovalConfig:
    document_types: tuple[DocumentTypeConfig, ...] = ()

    def entitlement_map(self) -> dict[str, bool]:
        """Document type name -> whether final approval deducts leave."""
        return {t.name: t.consumes_entitlement for t in self.document_types}


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

MANUAL_GRANT_VALIDITIES = ("end_of_year", "one_year")


@dataclass(frozen=True)
class LedgerConfig:
    day_quantum: Decimal = Decimal("0.5")
    expiring_soon_days: int = 30
    manual_adjustment_min_level: int = 5
    manual_grant_validity: str = "end_of_year"  # one of MANUAL_GRANT_VALIDITIES


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonthlyEntitlementConfig:
    days: Decimal = Decimal("1")
    max_late_arrivals: int = 2
    min_tenure_months: int = 1
    max_tenure_months: int = 12


@dataclass(frozen=True)
class FiscalAnnualEntitlementConfig:
    base_days: int = 15
    days_in_year: int = 365


@dataclass(frozen=True)
class AttendanceAwardEntitlementConfig:
    days: Decimal = Decimal("1")
    max_late_arrivals: int = 0
    min_worked_days: int = 1


@dataclass(frozen=True)
class OvertimeAwardEntitlementConfig:
    validity_years: int = 1


@dataclass(frozen=True)
class EntitlementsConfig:
    monthly: MonthlyEntitlementConfig = field(default_factory=MonthlyEntitlementConfig)
    fiscal_annual: FiscalAnnualEntitlementConfig = field(
        default_factory=FiscalAnnualEntitlementConfig,
    )
    attendance_award: AttendanceAwardEntitlementConfig = field(
        default_factory=AttendanceAwardEntitlementConfig,
    )
    overtime_award: OvertimeAwardEntitlementConfig = field(
        default_factory=OvertimeAwardEntitlementConfig,
    )


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchConfig:
    batch_size: int = 50
    max_workers: int = 8


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LeaveConfig:
    """The complete, validated configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    entitlements: EntitlementsConfig = field(default_factory=EntitlementsConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    source: str | None = None  # Path the configuration was loaded from
    checksum: str | None = None  # SHA-256 of the parsed source document
