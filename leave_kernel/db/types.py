"""
Module: leave_kernel.db.types
Responsibility: The day-amount helpers.  Every model and service uses the
    same representation for leave days so that arithmetic never drifts.
Architecture position: Kernel > DB.  May be imported by models/, domain/ and
    services/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere.  Day amounts are Decimal, stored as Numeric(12, 2).
    - Granularity: every amount that enters the ledger is a multiple of
      DAY_QUANTUM (half a day).

Failure modes:
    - InvalidAmountError from to_days() on floats, booleans, non-numeric
      strings, and values off the half-day grid.
"""

from decimal import Decimal, InvalidOperation

from leave_kernel.exceptions import InvalidAmountError

DAY_QUANTUM = Decimal("0.5")


def to_days(value: object, *, allow_zero: bool = False) -> Decimal:
    """
    Normalize a day amount to a Decimal on the half-day grid.

    Accepts Decimal, int and numeric strings.  Floats are rejected outright:
    a float that looks like 0.5 has already lost the guarantee.

    Raises:
        InvalidAmountError: if the value is not a non-negative (or positive,
            unless ``allow_zero``) multiple of DAY_QUANTUM.
    """
    if isinstance(value, (bool, float)):
        raise InvalidAmountError(repr(value), "floats and booleans are not day amounts")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmountError(repr(value), "not a number") from None

    if not amount.is_finite():
        raise InvalidAmountError(str(amount), "not a finite number")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmountError(str(amount), "must be positive")
    if amount % DAY_QUANTUM != 0:
        raise InvalidAmountError(str(amount), f"must be a multiple of {DAY_QUANTUM}")
    return amount.quantize(Decimal("0.01"))

