"""
CDFi subscription engine - main entry point

Deploys the issuer and both vesting schedules onto a ledger, wires the
oracles, and starts the API server.
One file to understand how everything connects.

Usage:
    python main.py              # Start the API
    RPC_URL=... python main.py  # Price from live Chainlink feed / Uniswap pool

Oracle modes:
- RPC_URL set:   PRICE_FEED_ADDRESS / POOL_ADDRESS are read on-chain
- RPC_URL unset: an in-process feed (NATIVE_USD_PRICE) and a USDT/CDFi pool
                 at 10 CDFi per USDT are deployed on the ledger
                 and POST /dev/fund is enabled to credit test accounts
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Optional

import uvicorn
from dotenv import load_dotenv

from core.config import EngineConfig
from core.constitution import LAWS, LIQUIDITY_VESTING, TEAM_VESTING
from core.chain import Web3OracleSource
from core.ledger import Ledger, Token
from core.oracles import LedgerOracleSource, StaticPool, StaticPriceFeed, sqrt_price_x96_for
from core.subscription import SubscriptionIssuer
from core.vesting import VestingSchedule
from api.server import create_app

logger = logging.getLogger("cdfi.main")


# ============================================================
# LOGGING
# ============================================================

class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        return True


def setup_logging():
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    mask = _SecretMaskingFilter()
    for handler in logging.root.handlers:
        handler.addFilter(mask)


# ============================================================
# WIRING
# ============================================================

@dataclass
class Engine:
    ledger: Ledger
    issuer: SubscriptionIssuer
    vestings: dict
    tokens: dict
    on_chain: bool = False


def _deploy_token(ledger: Ledger, name: str, symbol: str, address: str) -> Token:
    return Token(ledger, name, symbol, address=address or None)


def build_engine(cfg: EngineConfig, ledger: Optional[Ledger] = None) -> Engine:
    """Deploy every contract described by cfg onto ledger (fresh one by default)."""
    ledger = ledger or Ledger(chain_id=cfg.chain_id)
    owner = cfg.owner_address or ledger.new_address("owner")
    if not cfg.owner_address:
        logger.warning(f"OWNER_ADDRESS not set — generated owner {owner}")

    tokens = {
        "USDT": _deploy_token(ledger, "Tether USD", "USDT", cfg.usdt_address),
        "USDC": _deploy_token(ledger, "USD Coin", "USDC", cfg.usdc_address),
        "CDFi": _deploy_token(ledger, "CDFi", "CDFi", cfg.cdfi_address),
    }

    source = LedgerOracleSource(ledger)
    on_chain = False
    if cfg.rpc_url:
        web3_source = Web3OracleSource()
        if web3_source.initialize(cfg.chain_id, cfg.rpc_url):
            source, on_chain = web3_source, True
        else:
            logger.warning("RPC unavailable — falling back to in-process oracles")

    issuer = SubscriptionIssuer(
        ledger,
        owner=owner,
        usdt_address=tokens["USDT"].address,
        usdc_address=tokens["USDC"].address,
        cdfi_address=tokens["CDFi"].address,
        source=source,
        subscription_price_usd=cfg.sub_price_usd,
        max_supply=cfg.max_supply,
        cdfi_discount_percent=cfg.cdfi_discount,
        max_feed_age=cfg.max_feed_age,
    )

    if on_chain:
        if cfg.price_feed_address:
            issuer.oracles.update_chainlink_price_feed(owner, cfg.chain_id, cfg.price_feed_address)
        if cfg.pool_address:
            issuer.oracles.update_v3_pools(owner, cfg.chain_id, cfg.pool_address)
    else:
        feed = StaticPriceFeed(ledger, cfg.dev_native_price, address=cfg.price_feed_address or None)
        pool = StaticPool(
            ledger,
            token0=tokens["USDT"].address,
            token1=tokens["CDFi"].address,
            sqrt_price_x96=sqrt_price_x96_for(10),
            address=cfg.pool_address or None,
        )
        issuer.oracles.update_chainlink_price_feed(owner, cfg.chain_id, feed.address)
        issuer.oracles.update_v3_pools(owner, cfg.chain_id, pool.address)

    vesting_token = cfg.vesting_token_address or tokens["CDFi"].address
    vestings = {
        TEAM_VESTING.name: VestingSchedule(
            ledger, vesting_token, cfg.team_wallet or owner, owner, TEAM_VESTING,
        ),
        LIQUIDITY_VESTING.name: VestingSchedule(
            ledger, vesting_token, cfg.liquidity_wallet or owner, owner, LIQUIDITY_VESTING,
        ),
    }

    logger.info(
        f"Engine ready: chain={cfg.chain_id} | issuer={issuer.address} | "
        f"price=${cfg.sub_price_usd / 10 ** LAWS.USD_DECIMALS:.2f} | "
        f"oracles={'web3' if on_chain else 'in-process'}"
    )
    return Engine(ledger=ledger, issuer=issuer, vestings=vestings, tokens=tokens, on_chain=on_chain)


def create_cdfi_app(cfg: Optional[EngineConfig] = None):
    cfg = cfg or EngineConfig.from_env()
    engine = build_engine(cfg)
    return create_app(engine.issuer, engine.vestings, dev_faucet=not engine.on_chain)


def main():
    load_dotenv()
    setup_logging()
    cfg = EngineConfig.from_env()
    app = create_cdfi_app(cfg)
    uvicorn.run(app, host=cfg.api_host, port=cfg.api_port, log_level="info")


if __name__ == "__main__":
    main()
