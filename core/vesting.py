"""
Vesting Schedule - Time-gated linear release of a token balance

One design, two deployments (see constitution.VESTING_PRESETS):
- team:      no cliff, linear over 365 days
- liquidity: 29-minute cliff, linear over 90 days

Lifecycle:
    NOT_STARTED --start_vesting()--> VESTING --(time passes)--> FULLY_VESTED

The terminal phase is reached passively. Claims stay valid in every phase
after the cliff and are idempotent: a second claim in the same block
transfers 0 (and still emits TokenClaimed).

The vested allocation is whatever the contract holds plus what it already
released, so top-ups during the schedule vest on the same curve.
"""

import logging
from enum import Enum
from typing import Optional

from .constitution import (
    REASON_UNDER_CLIFF,
    REASON_VESTING_STARTED,
    Revert,
    VestingTerms,
)
from .ledger import Ledger, Ownable, to_checksum

logger = logging.getLogger("cdfi.vesting")


class VestingPhase(Enum):
    NOT_STARTED = "not_started"
    VESTING = "vesting"
    FULLY_VESTED = "fully_vested"


class VestingSchedule(Ownable):
    """
    Holds tokens for a beneficiary and releases them linearly.

    Only the owner starts the clock and triggers claims; tokens always go to
    the beneficiary wallet.
    """

    _STATE = Ownable._STATE + ("token_address", "beneficiary", "start_time", "claimed")

    def __init__(self, ledger: Ledger, token_address: str, beneficiary: str,
                 owner: str, terms: VestingTerms, address: Optional[str] = None):
        super().__init__(ledger, owner, address)
        if terms.duration_seconds <= 0:
            raise ValueError("vesting duration must be positive")
        if terms.cliff_seconds < 0 or terms.cliff_seconds > terms.duration_seconds:
            raise ValueError("cliff must be within the vesting duration")
        self.terms = terms
        self.token_address = to_checksum(token_address)
        self.beneficiary = to_checksum(beneficiary)
        self.start_time: int = 0
        self.claimed: int = 0

    # ============================================================
    # READS
    # ============================================================

    @property
    def phase(self) -> VestingPhase:
        if self.start_time == 0:
            return VestingPhase.NOT_STARTED
        if self.ledger.timestamp < self.start_time + self.terms.duration_seconds:
            return VestingPhase.VESTING
        return VestingPhase.FULLY_VESTED

    @property
    def cliff_time(self) -> int:
        return self.start_time + self.terms.cliff_seconds if self.start_time else 0

    @property
    def end_time(self) -> int:
        return self.start_time + self.terms.duration_seconds if self.start_time else 0

    def token_balance(self) -> int:
        return self.ledger.token_at(self.token_address).balance_of(self.address)

    def vested_amount(self) -> int:
        """Total released-or-releasable so far. 0 before start."""
        if self.start_time == 0:
            return 0
        # Held plus already released; top-ups join the same curve.
        allocation = self.token_balance() + self.claimed
        elapsed = self.ledger.timestamp - self.start_time
        if elapsed >= self.terms.duration_seconds:
            return allocation
        return allocation * elapsed // self.terms.duration_seconds

    def releasable(self) -> int:
        return max(0, self.vested_amount() - self.claimed)

    def get_status(self) -> dict:
        return {
            "name": self.terms.name,
            "address": self.address,
            "token_address": self.token_address,
            "beneficiary": self.beneficiary,
            "phase": self.phase.value,
            "start_time": self.start_time,
            "cliff_time": self.cliff_time,
            "end_time": self.end_time,
            "claimed": str(self.claimed),
            "vested": str(self.vested_amount()),
        }

    # ============================================================
    # OWNER ACTIONS
    # ============================================================

    def start_vesting(self, caller: str) -> int:
        self._only_owner(caller)
        if self.start_time != 0:
            raise Revert(REASON_VESTING_STARTED)
        with self.ledger.transaction():
            self.start_time = self.ledger.timestamp
            self.emit("VestingStarted", startTime=self.start_time)
        logger.info(f"VESTING STARTED [{self.terms.name}] at {self.start_time}")
        return self.start_time

    def withdraw_vested_tokens(self, caller: str) -> int:
        """Release everything vested and not yet claimed to the beneficiary."""
        self._only_owner(caller)
        if self.start_time == 0 or self.ledger.timestamp < self.cliff_time:
            raise Revert(REASON_UNDER_CLIFF)
        with self.ledger.transaction():
            amount = self.releasable()
            if amount > 0:
                self.ledger.token_at(self.token_address).transfer(self.address, self.beneficiary, amount)
                self.claimed += amount
            self.emit("TokenClaimed", beneficiary=self.beneficiary, amount=amount)
        logger.info(
            f"VESTING CLAIM [{self.terms.name}]: {amount} → {self.beneficiary[:10]}... "
            f"| claimed total {self.claimed}"
        )
        return amount

    def set_token_address(self, caller: str, token_address: str) -> str:
        self._only_owner(caller)
        token_address = to_checksum(token_address)
        with self.ledger.transaction():
            self.token_address = token_address
            self.emit("TokenAddressSetted", address=token_address)
        logger.info(f"Vesting [{self.terms.name}] token → {token_address}")
        return token_address

    def set_team_wallet(self, caller: str, wallet: str) -> str:
        self._only_owner(caller)
        wallet = to_checksum(wallet)
        with self.ledger.transaction():
            self.beneficiary = wallet
            self.emit("TeamWalletChanged", address=wallet)
        logger.info(f"Vesting [{self.terms.name}] beneficiary → {wallet}")
        return wallet
