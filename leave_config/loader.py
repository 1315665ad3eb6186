"""
Configuration Loader (``leave_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the typed
``leave_config.schema`` dataclasses.  Runtime callers go through
``leave_config.get_active_config()``, which adds environment overrides.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  No dependency on the kernel,
the batch package or the gateway.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` naming the offending
  key; unknown sections are rejected rather than ignored.
* Day amounts are parsed to ``Decimal`` from their text form, never through
  binary floating point.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from leave_config.schema import (
    MANUAL_GRANT_VALIDITIES,
    ApprovalConfig,
    AttendanceAwardEntitlementConfig,
    BatchConfig,
    DatabaseConfig,
    DocumentTypeConfig,
    EntitlementsConfig,
    FiscalAnnualEntitlementConfig,
    LeaveConfig,
    LedgerConfig,
    LoggingConfig,
    MonthlyEntitlementConfig,
    OvertimeAwardEntitlementConfig,
)

_SECTIONS = frozenset(
    {"database", "logging", "approval", "ledger", "entitlements", "batch"}
)
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def parse_decimal(value: Any, key: str) -> Decimal:
    """Parse a day amount.  YAML floats go through ``str`` first."""
    if isinstance(value, bool):
        raise ValueError(f"{key}: expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key}: expected a number, got {value!r}") from None


def _positive_int(data: dict[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{path}.{key}: expected a positive integer, got {value!r}")
    return value


def _non_negative_int(data: dict[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{path}.{key}: expected an integer >= 0, got {value!r}")
    return value


def _on_grid(amount: Decimal, quantum: Decimal, key: str) -> Decimal:
    if amount <= 0 or amount % quantum != 0:
        raise ValueError(f"{key}: {amount} is not a positive multiple of {quantum}")
    return amount


def parse_database(data: dict[str, Any]) -> DatabaseConfig:
    return DatabaseConfig(
        url=str(data.get("url", DatabaseConfig.url)),
        echo=bool(data.get("echo", False)),
    )


def parse_logging(data: dict[str, Any]) -> LoggingConfig:
    level = str(data.get("level", LoggingConfig.level)).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level: unknown level {level!r}")
    return LoggingConfig(level=level)


def parse_approval(data: dict[str, Any]) -> ApprovalConfig:
    """
    Parse the approval section.

    ``document_types`` is a mapping of type name to its settings::

        document_types:
          annual_leave: {consumes_entitlement: true}
          business_trip: {consumes_entitlement: false}
    """
    raw_types = data.get("document_types", {}) or {}
    if not isinstance(raw_types, dict):
        raise ValueError("approval.document_types: expected a mapping")
    types = tuple(
        DocumentTypeConfig(
            name=str(name),
            consumes_entitlement=bool((settings or {}).get("consumes_entitlement", False)),
            description=str((settings or {}).get("description", "")),
        )
        for name, settings in sorted(raw_types.items())
    )
    return ApprovalConfig(document_types=types)


def parse_ledger(data: dict[str, Any]) -> LedgerConfig:
    quantum = parse_decimal(data.get("day_quantum", "0.5"), "ledger.day_quantum")
    if quantum <= 0:
        raise ValueError("ledger.day_quantum: must be positive")
    validity = str(data.get("manual_grant_validity", LedgerConfig.manual_grant_validity))
    if validity not in MANUAL_GRANT_VALIDITIES:
        raise ValueError(
            f"ledger.manual_grant_validity: expected one of "
            f"{MANUAL_GRANT_VALIDITIES}, got {validity!r}"
        )
    return LedgerConfig(
        day_quantum=quantum,
        expiring_soon_days=_non_negative_int(data, "expiring_soon_days", 30, "ledger"),
        manual_adjustment_min_level=_non_negative_int(
            data, "manual_adjustment_min_level", 5, "ledger",
        ),
        manual_grant_validity=validity,
    )


def parse_entitlements(data: dict[str, Any], quantum: Decimal) -> EntitlementsConfig:
    monthly = data.get("monthly", {}) or {}
    fiscal = data.get("fiscal_annual", {}) or {}
    attendance = data.get("attendance_award", {}) or {}
    overtime = data.get("overtime_award", {}) or {}

    monthly_cfg = MonthlyEntitlementConfig(
        days=_on_grid(
            parse_decimal(monthly.get("days", "1"), "entitlements.monthly.days"),
            quantum, "entitlements.monthly.days",
        ),
        max_late_arrivals=_non_negative_int(
            monthly, "max_late_arrivals", 2, "entitlements.monthly",
        ),
        min_tenure_months=_positive_int(
            monthly, "min_tenure_months", 1, "entitlements.monthly",
        ),
        max_tenure_months=_positive_int(
            monthly, "max_tenure_months", 12, "entitlements.monthly",
        ),
    )
    if monthly_cfg.min_tenure_months > monthly_cfg.max_tenure_months:
        raise ValueError("entitlements.monthly: min_tenure_months > max_tenure_months")

    return EntitlementsConfig(
        monthly=monthly_cfg,
        fiscal_annual=FiscalAnnualEntitlementConfig(
            base_days=_positive_int(fiscal, "base_days", 15, "entitlements.fiscal_annual"),
            days_in_year=_positive_int(
                fiscal, "days_in_year", 365, "entitlements.fiscal_annual",
            ),
        ),
        attendance_award=AttendanceAwardEntitlementConfig(
            days=_on_grid(
                parse_decimal(
                    attendance.get("days", "1"), "entitlements.attendance_award.days",
                ),
                quantum, "entitlements.attendance_award.days",
            ),
            max_late_arrivals=_non_negative_int(
                attendance, "max_late_arrivals", 0, "entitlements.attendance_award",
            ),
            min_worked_days=_positive_int(
                attendance, "min_worked_days", 1, "entitlements.attendance_award",
            ),
        ),
        overtime_award=OvertimeAwardEntitlementConfig(
            validity_years=_positive_int(
                overtime, "validity_years", 1, "entitlements.overtime_award",
            ),
        ),
    )


def parse_batch(data: dict[str, Any]) -> BatchConfig:
    return BatchConfig(
        batch_size=_positive_int(data, "batch_size", 50, "batch"),
        max_workers=_positive_int(data, "max_workers", 8, "batch"),
    )


def parse_config(data: dict[str, Any], source: str | None = None) -> LeaveConfig:
    """
    Parse a whole configuration document.

    Raises:
        ValueError: unknown section or invalid value.
    """
    unknown = set(data) - _SECTIONS
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {sorted(unknown)}")

    ledger = parse_ledger(data.get("ledger", {}) or {})
    return LeaveConfig(
        database=parse_database(data.get("database", {}) or {}),
        logging=parse_logging(data.get("logging", {}) or {}),
        approval=parse_approval(data.get("approval", {}) or {}),
        ledger=ledger,
        entitlements=parse_entitlements(
            data.get("entitlements", {}) or {}, ledger.day_quantum,
        ),
        batch=parse_batch(data.get("batch", {}) or {}),
        source=source,
        checksum=compute_checksum(data),
    )


def load_config(path: Path) -> LeaveConfig:
    """Load and parse one configuration file."""
    return parse_config(load_yaml_file(path), source=str(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
