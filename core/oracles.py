"""
Oracles - USD pricing for every payment rail

- PriceOracleRegistry: chain id → price feed / liquidity pool bindings
- NativePriceResolver: native currency USD price from a Chainlink-style feed
- PoolPriceResolver: CDFi amount for one subscription from a Uniswap V3 pool
- StablecoinValidator: whitelist + exact-amount check for USDT / USDC

Resolvers are facets of the issuer contract: they read its SubscriptionConfig
at call time and never cache prices across transactions.

Feeds and pools are looked up by address through an OracleSource:
- LedgerOracleSource: contracts deployed on the in-process ledger
- Web3OracleSource (core/chain.py): live contracts over JSON-RPC
"""

import math
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .constitution import (
    LAWS,
    REASON_FEED_NOT_SET,
    REASON_INVALID_PRICE,
    REASON_INVALID_STABLE,
    REASON_NO_POOL,
    REASON_POOL_PRICE,
    REASON_STABLE_AMOUNT,
    REASON_STALE_PRICE,
    ZERO_ADDRESS,
    InvalidAddress,
    Revert,
)
from .config import ChainPriceBinding
from .ledger import Contract, Ledger, is_zero, to_checksum

logger = logging.getLogger("cdfi.oracles")


# ============================================================
# COLLABORATOR SHAPES
# ============================================================

@dataclass
class RoundData:
    """One Chainlink latestRoundData() reading."""
    round_id: int
    answer: int
    started_at: int
    updated_at: int
    answered_in_round: int


@dataclass
class Slot0:
    """The parts of UniswapV3Pool.slot0() the engine reads."""
    sqrt_price_x96: int
    tick: int = 0


class PriceFeed(Protocol):
    def latest_round_data(self) -> RoundData: ...
    def decimals(self) -> int: ...


class LiquidityPool(Protocol):
    def slot0(self) -> Slot0: ...
    def token0(self) -> str: ...
    def token1(self) -> str: ...


class OracleSource(Protocol):
    def feed_at(self, address: str) -> PriceFeed: ...
    def pool_at(self, address: str) -> LiquidityPool: ...


class LedgerOracleSource:
    """Resolve feeds and pools deployed on the in-process ledger."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def _lookup(self, address: str, kind: str):
        contract = self.ledger.contracts.get(to_checksum(address))
        if contract is None:
            raise Revert(f"No {kind} deployed at {address}")
        return contract

    def feed_at(self, address: str) -> PriceFeed:
        return self._lookup(address, "price feed")

    def pool_at(self, address: str) -> LiquidityPool:
        return self._lookup(address, "pool")


# ============================================================
# IN-PROCESS FEED & POOL
# ============================================================

class StaticPriceFeed(Contract):
    """Aggregator holding a pushed answer. Each update opens a new round."""

    _STATE = ("_round",)

    def __init__(self, ledger: Ledger, answer: int, decimals: int = LAWS.FEED_DECIMALS,
                 updated_at: Optional[int] = None, address: Optional[str] = None):
        super().__init__(ledger, address)
        self._decimals = decimals
        ts = ledger.timestamp if updated_at is None else updated_at
        self._round = RoundData(1, answer, ts, ts, 1)

    def decimals(self) -> int:
        return self._decimals

    def latest_round_data(self) -> RoundData:
        return self._round

    def update(self, answer: int, updated_at: Optional[int] = None) -> RoundData:
        ts = self.ledger.timestamp if updated_at is None else updated_at
        rid = self._round.round_id + 1
        self._round = RoundData(rid, answer, ts, ts, rid)
        return self._round


def sqrt_price_x96_for(token1_per_token0_num: int, token1_per_token0_den: int = 1) -> int:
    """sqrtPriceX96 for a raw price ratio token1/token0 = num/den."""
    return math.isqrt(token1_per_token0_num * 2 ** 192 // token1_per_token0_den)


class StaticPool(Contract):
    """Two-token pool whose spot price is set directly."""

    _STATE = ("_slot0",)

    def __init__(self, ledger: Ledger, token0: str, token1: str,
                 sqrt_price_x96: int = 0, address: Optional[str] = None):
        super().__init__(ledger, address)
        self._token0 = to_checksum(token0)
        self._token1 = to_checksum(token1)
        self._slot0 = Slot0(sqrt_price_x96=sqrt_price_x96)

    def slot0(self) -> Slot0:
        return self._slot0

    def token0(self) -> str:
        return self._token0

    def token1(self) -> str:
        return self._token1

    def set_sqrt_price(self, sqrt_price_x96: int):
        self._slot0 = Slot0(sqrt_price_x96=sqrt_price_x96, tick=self._slot0.tick)


# ============================================================
# REGISTRY
# ============================================================

class PriceOracleRegistry:
    """Owner-only bindings of chain id to price feed and pool addresses."""

    def __init__(self, contract):
        self.contract = contract

    def _binding_for_write(self, chain_id: int) -> ChainPriceBinding:
        bindings = self.contract.config.bindings
        if chain_id not in bindings:
            bindings[chain_id] = ChainPriceBinding()
        return bindings[chain_id]

    def update_chainlink_price_feed(self, caller: str, chain_id: int, feed_address: str):
        self.contract._only_owner(caller)
        feed_address = to_checksum(feed_address)
        self._binding_for_write(int(chain_id)).price_feed_address = feed_address
        # Emitted even when the address is unchanged
        self.contract.emit("PriceFeedChanged", chainId=int(chain_id), address=feed_address)
        logger.info(f"Price feed for chain {chain_id} → {feed_address}")

    def update_v3_pools(self, caller: str, chain_id: int, pool_address: str):
        self.contract._only_owner(caller)
        pool_address = to_checksum(pool_address)
        self._binding_for_write(int(chain_id)).pool_address = pool_address
        self.contract.emit("PoolChanged", chainId=int(chain_id), address=pool_address)
        logger.info(f"V3 pool for chain {chain_id} → {pool_address}")

    def price_feed_address(self, chain_id: int) -> str:
        return self.contract.config.binding(int(chain_id)).price_feed_address or ZERO_ADDRESS

    def pool_address(self, chain_id: int) -> str:
        return self.contract.config.binding(int(chain_id)).pool_address or ZERO_ADDRESS


# ============================================================
# RESOLVERS
# ============================================================

class NativePriceResolver:
    """
    USD per native unit at FEED_DECIMALS precision.

    No staleness window unless config.max_feed_age is set: any positive
    reading from the bound feed is accepted.
    """

    def __init__(self, contract, source: OracleSource):
        self.contract = contract
        self.source = source

    def get_native_price(self) -> int:
        ledger = self.contract.ledger
        cfg = self.contract.config
        feed_address = cfg.binding(ledger.chain_id).price_feed_address
        if is_zero(feed_address):
            raise Revert(REASON_FEED_NOT_SET)

        feed = self.source.feed_at(feed_address)
        reading = feed.latest_round_data()
        if reading.answer <= 0:
            logger.warning(f"Feed {feed_address[:10]}... returned non-positive answer {reading.answer}")
            raise Revert(REASON_INVALID_PRICE)

        if cfg.max_feed_age is not None and ledger.timestamp - reading.updated_at > cfg.max_feed_age:
            logger.warning(
                f"Feed {feed_address[:10]}... stale: updated {ledger.timestamp - reading.updated_at}s ago"
            )
            raise Revert(REASON_STALE_PRICE)

        decimals = feed.decimals()
        price = reading.answer
        if decimals > LAWS.FEED_DECIMALS:
            price //= 10 ** (decimals - LAWS.FEED_DECIMALS)
        elif decimals < LAWS.FEED_DECIMALS:
            price *= 10 ** (LAWS.FEED_DECIMALS - decimals)

        logger.debug(f"Native price (chain {ledger.chain_id}): {price} (round {reading.round_id})")
        return price

    def required_native(self, price_usd: Optional[int] = None) -> int:
        """Native amount (wei) owed for price_usd (default: the subscription price)."""
        if price_usd is None:
            price_usd = self.contract.config.subscription_price_usd
        # Lift the 8-decimal feed price to the 18-decimal USD scale before dividing
        scaled = self.get_native_price() * 10 ** (LAWS.USD_DECIMALS - LAWS.FEED_DECIMALS)
        return price_usd * 10 ** LAWS.NATIVE_DECIMALS // scaled


class PoolPriceResolver:
    """
    CDFi owed for one subscription, discounted.

    required = price_usd / native_price * rate * (100 - discount) / 100
    where rate is CDFi per unit of the pool's other asset. When that asset is
    an accepted stablecoin it is already USD and the native leg is skipped.
    Integer division truncates; dust is lost to the buyer's favor.
    """

    def __init__(self, contract, source: OracleSource, native: NativePriceResolver):
        self.contract = contract
        self.source = source
        self.native = native

    def _pool(self) -> LiquidityPool:
        ledger = self.contract.ledger
        pool_address = self.contract.config.binding(ledger.chain_id).pool_address
        if is_zero(pool_address):
            raise Revert(REASON_NO_POOL)
        return self.source.pool_at(pool_address)

    def get_price_in_cdfi(self) -> int:
        cfg = self.contract.config
        pool = self._pool()
        token0 = to_checksum(pool.token0())
        token1 = to_checksum(pool.token1())
        cdfi = to_checksum(cfg.cdfi_address)

        sqrt_price = pool.slot0().sqrt_price_x96
        # price of token0 in token1 = sqrt^2 / 2^192
        price_num, price_den = sqrt_price * sqrt_price, LAWS.Q96 * LAWS.Q96

        if cdfi == token1:
            paired, rate_num, rate_den = token0, price_num, price_den
        elif cdfi == token0:
            if price_num == 0:
                raise Revert(REASON_POOL_PRICE)
            paired, rate_num, rate_den = token1, price_den, price_num
        else:
            raise Revert("Pool does not hold CDFi")

        if paired in {to_checksum(a) for a in cfg.accepted_stables()}:
            base = cfg.subscription_price_usd
        else:
            base = self.native.required_native()

        keep = 100 - cfg.cdfi_discount_percent
        required = base * rate_num * keep // (rate_den * 100)
        logger.debug(f"CDFi price: {required} (discount {cfg.cdfi_discount_percent}%, paired {paired[:10]}...)")
        return required


class StablecoinValidator:
    """USDT / USDC accepted 1:1 to USD, exact amount only (18-decimal accounting)."""

    def __init__(self, contract):
        self.contract = contract

    def validate_stable_payment(self, token_address: str, amount: int) -> str:
        cfg = self.contract.config
        try:
            token = to_checksum(token_address)
        except InvalidAddress:
            raise Revert(REASON_INVALID_STABLE) from None
        if token not in {to_checksum(a) for a in cfg.accepted_stables()}:
            raise Revert(REASON_INVALID_STABLE)
        if amount != cfg.subscription_price_usd:
            raise Revert(REASON_STABLE_AMOUNT)
        return token
