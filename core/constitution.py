"""
CDFi CONSTITUTION - Fixed rules of the subscription engine

Everything here is immutable at runtime: fixed-point precisions, default
economics, vesting presets and the error taxonomy every contract raises.
Owner-mutable values (price, discount, supply cap) start from these defaults
but live in SubscriptionConfig.
"""

from dataclasses import dataclass
from typing import Final


# ============================================================
# ERRORS
# ============================================================

class EngineError(Exception):
    """Base class for every failure raised by an engine entry point."""
    pass


class Unauthorized(EngineError):
    """Caller lacks owner privilege. Never retried."""

    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"OwnableUnauthorizedAccount({caller})")


class Revert(EngineError):
    """Business-logic precondition failed. Carries the exact reason string."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InvalidAddress(Revert):
    pass


class NonexistentToken(Revert):
    """Lookup of a subscription token id that was never minted."""

    def __init__(self, token_id: int):
        self.token_id = token_id
        super().__init__(f"ERC721NonexistentToken({token_id})")


# ============================================================
# FIXED ECONOMICS
# ============================================================

@dataclass(frozen=True)
class EngineLaws:
    """Frozen dataclass = truly immutable at runtime."""

    # --- PRECISION ---
    USD_DECIMALS: Final[int] = 18               # Subscription price and stablecoins
    FEED_DECIMALS: Final[int] = 8               # Working precision of native USD price
    NATIVE_DECIMALS: Final[int] = 18
    Q96: Final[int] = 2 ** 96                   # Uniswap V3 sqrtPriceX96 fixed point

    # --- DEFAULTS (owner can change) ---
    DEFAULT_SUB_PRICE_USD: Final[int] = 400 * 10 ** 18
    DEFAULT_MAX_SUPPLY: Final[int] = 10_000
    DEFAULT_CDFI_DISCOUNT: Final[int] = 0

    # --- BOUNDS ---
    DISCOUNT_CEILING: Final[int] = 100          # Discount must stay strictly below

    # --- EVENT LOG ---
    MAX_EVENTS: Final[int] = 10_000             # In-memory event log cap


LAWS = EngineLaws()

ZERO_ADDRESS: Final[str] = "0x0000000000000000000000000000000000000000"

# Reason strings surfaced verbatim to callers
REASON_FEED_NOT_SET = "Price feed not set"
REASON_INVALID_PRICE = "Invalid price"
REASON_STALE_PRICE = "Stale price"
REASON_NO_POOL = "Pool does not exist."
REASON_POOL_PRICE = "Pool price unavailable"
REASON_INVALID_STABLE = "Invalid stable address"
REASON_STABLE_AMOUNT = "Stable amount should be equal subscription price!"
REASON_NATIVE_VALUE = "Native value should be equal or bigger subscription price!"
REASON_MAX_SUPPLY = "Max supply reached"
REASON_TOKEN_MINTED = "Token already minted"
REASON_TOKEN_ID_RANGE = "Token id exceeds max supply"
REASON_REFUND_FAILED = "Failed to send excess amount"
REASON_SUPPLY_BELOW_MINTED = "New max supply must be greater than minted count"
REASON_DISCOUNT_CEILING = "Discount must be less than 100"
REASON_DISCOUNT_NEGATIVE = "Discount must not be negative"
REASON_PRICE_NEGATIVE = "Price must not be negative"
REASON_NO_ETHER = "No ether left to withdraw"
REASON_VESTING_STARTED = "Vesting already started!"
REASON_UNDER_CLIFF = "Vesting under cliff!"


# ============================================================
# VESTING PRESETS
# ============================================================

@dataclass(frozen=True)
class VestingTerms:
    """Schedule parameters shared by every VestingSchedule instance."""
    name: str
    cliff_seconds: int
    duration_seconds: int


TEAM_VESTING = VestingTerms(
    name="team",
    cliff_seconds=0,
    duration_seconds=365 * 24 * 3600,
)

LIQUIDITY_VESTING = VestingTerms(
    name="liquidity",
    cliff_seconds=29 * 60,
    duration_seconds=90 * 24 * 3600,
)

VESTING_PRESETS: Final[dict[str, VestingTerms]] = {
    TEAM_VESTING.name: TEAM_VESTING,
    LIQUIDITY_VESTING.name: LIQUIDITY_VESTING,
}
