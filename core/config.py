"""
Engine configuration, read from the environment.

main.py calls load_dotenv() before EngineConfig.from_env(), so a local .env
file works the same as exported variables.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from .constitution import LAWS

logger = logging.getLogger("cdfi.config")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer, using {default}")
        return default


@dataclass
class EngineConfig:
    chain_id: int = 31337
    owner_address: str = ""
    usdt_address: str = ""
    usdc_address: str = ""
    cdfi_address: str = ""
    sub_price_usd: int = LAWS.DEFAULT_SUB_PRICE_USD    # 18-decimal fixed point
    max_supply: int = LAWS.DEFAULT_MAX_SUPPLY
    cdfi_discount: int = LAWS.DEFAULT_CDFI_DISCOUNT
    price_feed_address: str = ""
    pool_address: str = ""
    rpc_url: str = ""                                  # Set = read feed/pool on-chain
    max_feed_age: Optional[int] = None                 # Seconds; None = unguarded
    team_wallet: str = ""
    liquidity_wallet: str = ""
    vesting_token_address: str = ""
    dev_native_price: int = 3000 * 10 ** LAWS.FEED_DECIMALS   # In-process feed when no RPC
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build config from environment variables. SUB_PRICE_USD is whole dollars."""
        price_dollars = _env_int("SUB_PRICE_USD", None)
        native_dollars = _env_int("NATIVE_USD_PRICE", 3000)
        return cls(
            chain_id=_env_int("CHAIN_ID", 31337),
            owner_address=os.getenv("OWNER_ADDRESS", ""),
            usdt_address=os.getenv("USDT_ADDRESS", ""),
            usdc_address=os.getenv("USDC_ADDRESS", ""),
            cdfi_address=os.getenv("CDFI_ADDRESS", ""),
            sub_price_usd=(
                price_dollars * 10 ** LAWS.USD_DECIMALS
                if price_dollars is not None else LAWS.DEFAULT_SUB_PRICE_USD
            ),
            max_supply=_env_int("MAX_SUPPLY", LAWS.DEFAULT_MAX_SUPPLY),
            cdfi_discount=_env_int("CDFI_DISCOUNT", LAWS.DEFAULT_CDFI_DISCOUNT),
            price_feed_address=os.getenv("PRICE_FEED_ADDRESS", ""),
            pool_address=os.getenv("POOL_ADDRESS", ""),
            rpc_url=os.getenv("RPC_URL", ""),
            max_feed_age=_env_int("MAX_FEED_AGE", None),
            team_wallet=os.getenv("TEAM_WALLET", ""),
            liquidity_wallet=os.getenv("LIQUIDITY_WALLET", ""),
            vesting_token_address=os.getenv("VESTING_TOKEN_ADDRESS", ""),
            dev_native_price=native_dollars * 10 ** LAWS.FEED_DECIMALS,
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_env_int("API_PORT", 8000),
        )

    def to_dict(self) -> dict:
        """Safe-to-publish view (no secrets live here, RPC URL may embed a key)."""
        return {
            "chain_id": self.chain_id,
            "owner_address": self.owner_address,
            "sub_price_usd": str(self.sub_price_usd),
            "max_supply": self.max_supply,
            "cdfi_discount": self.cdfi_discount,
            "on_chain_oracles": bool(self.rpc_url),
            "max_feed_age": self.max_feed_age,
        }


# ============================================================
# ON-CHAIN CONFIG (owner-mutable singleton held by the issuer)
# ============================================================

@dataclass
class ChainPriceBinding:
    """Oracle references for one chain id. Empty string = unset."""
    price_feed_address: str = ""
    pool_address: str = ""


@dataclass
class SubscriptionConfig:
    usdt_address: str
    usdc_address: str
    cdfi_address: str
    subscription_price_usd: int = LAWS.DEFAULT_SUB_PRICE_USD
    cdfi_discount_percent: int = LAWS.DEFAULT_CDFI_DISCOUNT
    max_supply: int = LAWS.DEFAULT_MAX_SUPPLY
    max_feed_age: Optional[int] = None
    bindings: dict = field(default_factory=dict)   # chain_id -> ChainPriceBinding

    def binding(self, chain_id: int) -> ChainPriceBinding:
        return self.bindings.get(chain_id) or ChainPriceBinding()

    def accepted_stables(self) -> tuple:
        return tuple(a for a in (self.usdt_address, self.usdc_address) if a)

    def to_dict(self) -> dict:
        return {
            "usdt_address": self.usdt_address,
            "usdc_address": self.usdc_address,
            "cdfi_address": self.cdfi_address,
            "subscription_price_usd": str(self.subscription_price_usd),
            "cdfi_discount_percent": self.cdfi_discount_percent,
            "max_supply": self.max_supply,
            "max_feed_age": self.max_feed_age,
            "bindings": {
                str(chain_id): {
                    "price_feed_address": b.price_feed_address,
                    "pool_address": b.pool_address,
                }
                for chain_id, b in self.bindings.items()
            },
        }
