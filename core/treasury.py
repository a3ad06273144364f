"""
Treasury Controller - Owner-only money and config management

Proceeds of every rail accumulate at the issuer contract's address:
- withdraw():       sweep USDT, USDC and CDFi to a receiver (zero sweeps still emit)
- withdraw_ether(): sweep the native balance (fails when empty)

The owner also rebinds accepted token addresses and tunes price, discount,
supply cap and the optional feed staleness bound. Every call is owner-gated
and atomic.
"""

import logging
from typing import Optional

from .constitution import (
    LAWS,
    REASON_DISCOUNT_CEILING,
    REASON_DISCOUNT_NEGATIVE,
    REASON_NO_ETHER,
    REASON_PRICE_NEGATIVE,
    REASON_SUPPLY_BELOW_MINTED,
    Revert,
)
from .ledger import Token, is_zero, to_checksum

logger = logging.getLogger("cdfi.treasury")

# (config attribute, event label) in sweep order
_SWEPT_TOKENS = (
    ("usdt_address", "USDT"),
    ("usdc_address", "USDC"),
    ("cdfi_address", "CDFi"),
)


class TreasuryController:
    """Facet of the issuer contract; `contract` is the SubscriptionIssuer."""

    def __init__(self, contract):
        self.contract = contract

    @property
    def ledger(self):
        return self.contract.ledger

    # ============================================================
    # READS
    # ============================================================

    def balances(self) -> dict[str, int]:
        """Current treasury holdings per asset (tokens not deployed read as 0)."""
        cfg = self.contract.config
        result = {"native": self.ledger.balance(self.contract.address)}
        for attr, label in _SWEPT_TOKENS:
            address = getattr(cfg, attr)
            contract = self.ledger.contracts.get(address) if not is_zero(address) else None
            result[label] = contract.balance_of(self.contract.address) if isinstance(contract, Token) else 0
        return result

    # ============================================================
    # WITHDRAWALS
    # ============================================================

    def withdraw(self, caller: str, receiver: str) -> dict[str, int]:
        """Sweep every stablecoin and CDFi balance to receiver."""
        self.contract._only_owner(caller)
        receiver = to_checksum(receiver)
        swept = {}
        with self.ledger.transaction():
            for attr, label in _SWEPT_TOKENS:
                token = self.ledger.token_at(getattr(self.contract.config, attr))
                amount = token.balance_of(self.contract.address)
                if amount > 0:
                    token.transfer(self.contract.address, receiver, amount)
                self.contract.emit(f"{label}Withdrawn", receiver=receiver, amount=amount)
                swept[label] = amount
        logger.info(f"WITHDRAWN to {receiver[:10]}...: {swept}")
        return swept

    def withdraw_ether(self, caller: str, receiver: str) -> int:
        self.contract._only_owner(caller)
        receiver = to_checksum(receiver)
        with self.ledger.transaction():
            amount = self.ledger.balance(self.contract.address)
            if amount == 0:
                raise Revert(REASON_NO_ETHER)
            self.ledger.transfer_native(self.contract.address, receiver, amount)
            self.contract.emit("NativeWithdrawn", receiver=receiver, amount=amount)
        logger.info(f"NATIVE WITHDRAWN: {amount} wei to {receiver[:10]}...")
        return amount

    # ============================================================
    # ADDRESS REBINDING
    # ============================================================

    def _change_address(self, caller: str, attr: str, event: str, address: str) -> str:
        self.contract._only_owner(caller)
        address = to_checksum(address)
        with self.ledger.transaction():
            setattr(self.contract.config, attr, address)
            self.contract.emit(event, address=address)
        logger.info(f"{event}: {address}")
        return address

    def change_usdt_address(self, caller: str, address: str) -> str:
        return self._change_address(caller, "usdt_address", "AddressUSDTChanged", address)

    def change_usdc_address(self, caller: str, address: str) -> str:
        return self._change_address(caller, "usdc_address", "AddressUSDCChanged", address)

    def change_cdfi_address(self, caller: str, address: str) -> str:
        return self._change_address(caller, "cdfi_address", "AddressCDFiChanged", address)

    # ============================================================
    # ECONOMICS
    # ============================================================

    def set_max_supply(self, caller: str, new_max: int):
        self.contract._only_owner(caller)
        if new_max <= self.contract.minted_count:
            raise Revert(REASON_SUPPLY_BELOW_MINTED)
        with self.ledger.transaction():
            self.contract.config.max_supply = new_max
            self.contract.emit("MaxSupplyChanged", amount=new_max)
        logger.info(f"Max supply → {new_max}")

    def set_cdfi_discount(self, caller: str, percent: int):
        self.contract._only_owner(caller)
        if percent >= LAWS.DISCOUNT_CEILING:
            raise Revert(REASON_DISCOUNT_CEILING)
        if percent < 0:
            raise Revert(REASON_DISCOUNT_NEGATIVE)
        with self.ledger.transaction():
            self.contract.config.cdfi_discount_percent = percent
            self.contract.emit("CDFiDiscountChanged", percent=percent)
        logger.info(f"CDFi discount → {percent}%")

    def set_sub_price(self, caller: str, price_usd: int):
        self.contract._only_owner(caller)
        if price_usd < 0:
            raise Revert(REASON_PRICE_NEGATIVE)
        with self.ledger.transaction():
            self.contract.config.subscription_price_usd = price_usd
            self.contract.emit("PriceChanged", amount=price_usd)
        logger.info(f"Subscription price → {price_usd / 10 ** LAWS.USD_DECIMALS:.2f} USD")

    def set_max_feed_age(self, caller: str, seconds: Optional[int]):
        """Bound feed staleness; None restores the unguarded default."""
        self.contract._only_owner(caller)
        if seconds is not None and seconds <= 0:
            raise Revert("Max feed age must be positive")
        with self.ledger.transaction():
            self.contract.config.max_feed_age = seconds
            self.contract.emit("MaxFeedAgeChanged", seconds=seconds)
        logger.info(f"Max feed age → {seconds if seconds is not None else 'unguarded'}")
