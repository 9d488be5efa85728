"""Shared constants and interfaces for the duels platform.

All modules import from here to avoid circular dependencies.
"""

import os
from decimal import Decimal
from enum import Enum

# --- Token Units ---

TOKEN_DECIMALS = int(os.environ.get("DUELS_TOKEN_DECIMALS", "18"))
UNITS_PER_TOKEN = 10**TOKEN_DECIMALS


def to_units(amount: str | Decimal | int) -> int:
    """Convert a human token amount ("5.2") to integer base units."""
    try:
        value = Decimal(str(amount)) * UNITS_PER_TOKEN
    except ArithmeticError:  # InvalidOperation, Overflow
        raise ValueError(f"Invalid token amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid token amount: {amount!r}")
    if value != value.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {TOKEN_DECIMALS} decimals")
    if value < 0:
        raise ValueError(f"Amount cannot be negative: {amount}")
    return int(value)


def from_units(units: int | str) -> Decimal:
    """Convert base units back to a human token amount."""
    return Decimal(str(units)) / UNITS_PER_TOKEN


# --- Game Constants ---

# Smallest stake either side may put down (deployment-fixed, base units)
MIN_AMOUNT = int(os.environ.get("DUELS_MIN_AMOUNT", str(to_units("2"))))

# Time a guest has to join after creation; afterwards the owner may reclaim
JOIN_WINDOW = int(os.environ.get("DUELS_JOIN_WINDOW", "43200"))  # 12 hours

# Guest stake must fall inside [70%, 130%] of the host stake
JOIN_LOWER_PERCENT = 70
JOIN_UPPER_PERCENT = 130

# Platform fee: FEE_RATE / FEE_DENOMINATOR of the pool, floored
FEE_RATE = int(os.environ.get("DUELS_FEE_RATE", "5"))
FEE_DENOMINATOR = int(os.environ.get("DUELS_FEE_DENOMINATOR", "100"))

# Platform owner (administrator + fee recipient) -- set via DUELS_OWNER
OWNER_ACCOUNT = os.environ.get("DUELS_OWNER", "")

# Absent identity on a duel record (no guest yet, no winner yet)
NO_ACCOUNT = ""


# --- State Machine ---

class DuelStatus(Enum):
    AWAITING_GUEST = "awaiting_guest"
    WITHDRAW_AVAILABLE = "withdraw_available"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"  # reclaimed by the owner, host stake returned


# Valid state transitions: current_state -> set of valid next states
STATUS_TRANSITIONS = {
    DuelStatus.AWAITING_GUEST: {DuelStatus.WITHDRAW_AVAILABLE, DuelStatus.EXPIRED},
    DuelStatus.WITHDRAW_AVAILABLE: {DuelStatus.WITHDRAWN},
    DuelStatus.WITHDRAWN: set(),
    DuelStatus.EXPIRED: set(),
}

TERMINAL_STATUSES = {s for s, nxt in STATUS_TRANSITIONS.items() if not nxt}
