"""
Subscription Issuer - Three payment rails, one mint

A buyer pays for a subscription token with:
1. Native currency: priced via the bound USD price feed, overpayment refunded
2. CDFi: priced via the bound Uniswap V3 pool, sold at a discount
3. USDT / USDC: exactly the USD price, 1:1

Every purchase is one atomic ledger transaction:
  supply-cap check → token id → payment → mint → SubscriptionPurchased

The only thing allowed to fail without undoing the purchase is the native
overpayment refund: it emits Failed("Failed to send excess amount") and is
reported on the returned PurchaseResult.

Token ids: pass None to get the next free sequential id. A caller-chosen id
is accepted for compatibility; it must be unused and below max_supply.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .constitution import (
    LAWS,
    REASON_DISCOUNT_CEILING,
    REASON_MAX_SUPPLY,
    REASON_NATIVE_VALUE,
    REASON_PRICE_NEGATIVE,
    REASON_REFUND_FAILED,
    REASON_TOKEN_ID_RANGE,
    REASON_TOKEN_MINTED,
    Revert,
)
from .config import SubscriptionConfig
from .ledger import Ledger, Ownable, SubscriptionRegistry, to_checksum
from .oracles import (
    LedgerOracleSource,
    NativePriceResolver,
    OracleSource,
    PoolPriceResolver,
    PriceOracleRegistry,
    StablecoinValidator,
)
from .treasury import TreasuryController

logger = logging.getLogger("cdfi.subscription")


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class PurchaseResult:
    """Outcome of a successful purchase. Failed purchases raise instead."""
    token_id: int
    buyer: str
    asset: str                  # "native" | "cdfi" | "stable"
    asset_address: str          # "" for native
    amount_paid: int            # Kept by the treasury
    refunded: int = 0
    refund_error: str = ""      # Set when the excess could not be returned

    @property
    def refund_failed(self) -> bool:
        return bool(self.refund_error)

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "buyer": self.buyer,
            "asset": self.asset,
            "asset_address": self.asset_address,
            "amount_paid": str(self.amount_paid),
            "refunded": str(self.refunded),
            "refund_error": self.refund_error,
            "refund_failed": self.refund_failed,
        }


# ============================================================
# ISSUER
# ============================================================

class SubscriptionIssuer(Ownable):
    """
    Sells subscription tokens and holds the proceeds.

    Facets (all read this contract's config at call time):
        oracles   PriceOracleRegistry    feed / pool bindings
        native    NativePriceResolver    USD per native unit
        pool      PoolPriceResolver      CDFi per subscription
        stables   StablecoinValidator    USDT / USDC checks
        treasury  TreasuryController     withdrawals + owner setters
    """

    _STATE = Ownable._STATE + ("config", "minted_count", "_next_id")

    def __init__(
        self,
        ledger: Ledger,
        owner: str,
        usdt_address: str,
        usdc_address: str,
        cdfi_address: str,
        name: str = "CDFiSubscription",
        symbol: str = "CDS",
        source: Optional[OracleSource] = None,
        subscription_price_usd: int = LAWS.DEFAULT_SUB_PRICE_USD,
        max_supply: int = LAWS.DEFAULT_MAX_SUPPLY,
        cdfi_discount_percent: int = LAWS.DEFAULT_CDFI_DISCOUNT,
        max_feed_age: Optional[int] = None,
        address: Optional[str] = None,
    ):
        super().__init__(ledger, owner, address)
        if not 0 <= cdfi_discount_percent < LAWS.DISCOUNT_CEILING:
            raise Revert(REASON_DISCOUNT_CEILING)
        if max_supply <= 0:
            raise Revert("Max supply must be positive")
        if subscription_price_usd < 0:
            raise Revert(REASON_PRICE_NEGATIVE)

        self.config = SubscriptionConfig(
            usdt_address=to_checksum(usdt_address),
            usdc_address=to_checksum(usdc_address),
            cdfi_address=to_checksum(cdfi_address),
            subscription_price_usd=subscription_price_usd,
            cdfi_discount_percent=cdfi_discount_percent,
            max_supply=max_supply,
            max_feed_age=max_feed_age,
        )
        self.minted_count: int = 0
        self._next_id: int = 0

        self.registry = SubscriptionRegistry(ledger, name, symbol, minter=self.address)
        self.source = source if source is not None else LedgerOracleSource(ledger)
        self.oracles = PriceOracleRegistry(self)
        self.native = NativePriceResolver(self, self.source)
        self.pool = PoolPriceResolver(self, self.source, self.native)
        self.stables = StablecoinValidator(self)
        self.treasury = TreasuryController(self)

        logger.info(
            f"Issuer deployed at {self.address[:10]}... | owner={self.owner[:10]}... | "
            f"chain={ledger.chain_id} | max_supply={max_supply}"
        )

    # ============================================================
    # READS
    # ============================================================

    def get_native_price(self) -> int:
        return self.native.get_native_price()

    def get_price_in_cdfi(self) -> int:
        return self.pool.get_price_in_cdfi()

    def required_native(self) -> int:
        return self.native.required_native()

    def price_feed_addresses(self, chain_id: int) -> str:
        return self.oracles.price_feed_address(chain_id)

    def v3_pool_addresses(self, chain_id: int) -> str:
        return self.oracles.pool_address(chain_id)

    def owner_of(self, token_id: int) -> str:
        return self.registry.owner_of(token_id)

    def token_uri(self, token_id: int) -> str:
        return self.registry.token_uri(token_id)

    def get_additional_uri(self, token_id: int) -> str:
        return self.registry.additional_uri(token_id)

    def get_status(self) -> dict:
        return {
            "address": self.address,
            "owner": self.owner,
            "chain_id": self.ledger.chain_id,
            "minted_count": self.minted_count,
            "config": self.config.to_dict(),
            "treasury": {k: str(v) for k, v in self.treasury.balances().items()},
        }

    # ============================================================
    # MINT PIPELINE
    # ============================================================

    def _claim_token_id(self, token_id: Optional[int]) -> int:
        max_supply = self.config.max_supply
        if self.minted_count >= max_supply:
            raise Revert(REASON_MAX_SUPPLY)

        if token_id is None:
            while self.registry.exists(self._next_id):
                self._next_id += 1
            token_id = self._next_id

        if token_id < 0 or token_id >= max_supply:
            raise Revert(REASON_TOKEN_ID_RANGE)
        if self.registry.exists(token_id):
            raise Revert(REASON_TOKEN_MINTED)
        return token_id

    def _mint(self, buyer: str, token_id: int, uri: str, additional_uri: str):
        self.registry.mint(self.address, buyer, token_id, uri, additional_uri)
        self.minted_count += 1
        if token_id == self._next_id:
            self._next_id += 1

    def _record(self, result: PurchaseResult) -> PurchaseResult:
        self.emit(
            "SubscriptionPurchased",
            buyer=result.buyer,
            tokenId=result.token_id,
            asset=result.asset,
            amount=result.amount_paid,
        )
        logger.info(
            f"SUBSCRIPTION #{result.token_id} → {result.buyer[:10]}... "
            f"[{result.asset}] paid={result.amount_paid} "
            f"| minted {self.minted_count}/{self.config.max_supply}"
        )
        return result

    # ============================================================
    # PURCHASE ENTRY POINTS
    # ============================================================

    def deposit_native(self, caller: str, value: int):
        """Plain native transfer into the treasury (no subscription)."""
        self.ledger.transfer_native(caller, self.address, value)
        logger.info(f"Native deposit {value} from {caller[:10]}...")

    def buy_sub_with_native(self, caller: str, token_id: Optional[int], uri: str,
                            additional_uri: str = "", *, value: int) -> PurchaseResult:
        """
        Pay with native currency. value must cover required_native() wei;
        anything above that is sent back. A refused refund does not revert.
        """
        buyer = to_checksum(caller)
        with self.ledger.transaction():
            token_id = self._claim_token_id(token_id)
            required = self.native.required_native()
            if value < required:
                raise Revert(REASON_NATIVE_VALUE)

            self.ledger.transfer_native(buyer, self.address, value)

            refunded, refund_error = 0, ""
            excess = value - required
            if excess > 0:
                if self.ledger.send_native(self.address, buyer, excess):
                    refunded = excess
                else:
                    refund_error = REASON_REFUND_FAILED
                    self.emit("Failed", reason=REASON_REFUND_FAILED)
                    logger.warning(f"REFUND FAILED: {excess} wei to {buyer[:10]}... kept by treasury")

            self._mint(buyer, token_id, uri, additional_uri)
            return self._record(PurchaseResult(
                token_id=token_id,
                buyer=buyer,
                asset="native",
                asset_address="",
                amount_paid=value - refunded,
                refunded=refunded,
                refund_error=refund_error,
            ))

    def buy_sub_with_cdfi(self, caller: str, token_id: Optional[int], uri: str,
                          additional_uri: str = "") -> PurchaseResult:
        """Pay with CDFi. The buyer must have approved this contract for the amount."""
        buyer = to_checksum(caller)
        with self.ledger.transaction():
            token_id = self._claim_token_id(token_id)
            required = self.pool.get_price_in_cdfi()

            cdfi = self.ledger.token_at(self.config.cdfi_address)
            cdfi.transfer_from(self.address, buyer, self.address, required)

            self._mint(buyer, token_id, uri, additional_uri)
            return self._record(PurchaseResult(
                token_id=token_id,
                buyer=buyer,
                asset="cdfi",
                asset_address=cdfi.address,
                amount_paid=required,
            ))

    def buy_sub_with_stable(self, caller: str, stable_address: str, amount: int,
                            token_id: Optional[int], uri: str,
                            additional_uri: str = "") -> PurchaseResult:
        """Pay exactly the USD price in USDT or USDC."""
        buyer = to_checksum(caller)
        with self.ledger.transaction():
            token_id = self._claim_token_id(token_id)
            stable = self.stables.validate_stable_payment(stable_address, amount)

            self.ledger.token_at(stable).transfer_from(self.address, buyer, self.address, amount)

            self._mint(buyer, token_id, uri, additional_uri)
            return self._record(PurchaseResult(
                token_id=token_id,
                buyer=buyer,
                asset="stable",
                asset_address=stable,
                amount_paid=amount,
            ))
