"""
Chain Reader - Live oracle reads over JSON-RPC

Lets the engine price subscriptions from real deployed contracts instead of
in-process feeds:
- Chainlink AggregatorV3 feeds (latestRoundData, decimals)
- Uniswap V3 pools (slot0, token0, token1)

Design:
- Embedded minimal ABI: only the functions we call, no compiled JSON needed
- Read-only: no keys, no signing, no gas
- Contract handles cached per address; readings are never cached
- RPC failure surfaces as a Revert so the calling transaction rolls back
"""

import os
import logging
from typing import Optional

from web3 import Web3

from .constitution import Revert
from .ledger import to_checksum
from .oracles import RoundData, Slot0

logger = logging.getLogger("cdfi.chain")


# ============================================================
# CHAIN DEFAULTS
# ============================================================

CHAIN_DEFAULTS = {
    1: {"name": "ethereum", "rpc": "https://eth.llamarpc.com", "native_symbol": "ETH"},
    56: {"name": "bsc", "rpc": "https://bsc-dataseed.binance.org", "native_symbol": "BNB"},
    137: {"name": "polygon", "rpc": "https://polygon-rpc.com", "native_symbol": "MATIC"},
    8453: {"name": "base", "rpc": "https://mainnet.base.org", "native_symbol": "ETH"},
    31337: {"name": "hardhat", "rpc": "http://localhost:8545", "native_symbol": "ETH"},
}


# ============================================================
# MINIMAL ABI
# ============================================================

AGGREGATOR_V3_ABI = [
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]

UNISWAP_V3_POOL_ABI = [
    # slot0() → (sqrtPriceX96, tick, observationIndex, observationCardinality,
    #            observationCardinalityNext, feeProtocol, unlocked)
    {
        "inputs": [],
        "name": "slot0",
        "outputs": [
            {"name": "sqrtPriceX96", "type": "uint160"},
            {"name": "tick", "type": "int24"},
            {"name": "observationIndex", "type": "uint16"},
            {"name": "observationCardinality", "type": "uint16"},
            {"name": "observationCardinalityNext", "type": "uint16"},
            {"name": "feeProtocol", "type": "uint8"},
            {"name": "unlocked", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token1",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]


# ============================================================
# READERS
# ============================================================

class Web3PriceFeed:
    """AggregatorV3Interface over RPC."""

    def __init__(self, w3: Web3, address: str):
        self.address = to_checksum(address)
        self._contract = w3.eth.contract(address=self.address, abi=AGGREGATOR_V3_ABI)
        self._decimals: Optional[int] = None

    def latest_round_data(self) -> RoundData:
        try:
            round_id, answer, started_at, updated_at, answered_in = (
                self._contract.functions.latestRoundData().call()
            )
        except Exception as e:
            logger.warning(f"latestRoundData failed on {self.address[:10]}...: {e}")
            raise Revert(f"Price feed read failed: {type(e).__name__}") from e
        return RoundData(round_id, answer, started_at, updated_at, answered_in)

    def decimals(self) -> int:
        if self._decimals is None:
            try:
                self._decimals = self._contract.functions.decimals().call()
            except Exception as e:
                logger.warning(f"decimals() failed on {self.address[:10]}...: {e}")
                raise Revert(f"Price feed read failed: {type(e).__name__}") from e
        return self._decimals


class Web3Pool:
    """UniswapV3Pool state over RPC."""

    def __init__(self, w3: Web3, address: str):
        self.address = to_checksum(address)
        self._contract = w3.eth.contract(address=self.address, abi=UNISWAP_V3_POOL_ABI)
        self._tokens: dict[str, str] = {}

    def slot0(self) -> Slot0:
        try:
            result = self._contract.functions.slot0().call()
        except Exception as e:
            logger.warning(f"slot0 failed on {self.address[:10]}...: {e}")
            raise Revert(f"Pool read failed: {type(e).__name__}") from e
        return Slot0(sqrt_price_x96=result[0], tick=result[1])

    def _token(self, name: str) -> str:
        # Pool tokens are immutable, safe to cache
        if name not in self._tokens:
            try:
                self._tokens[name] = getattr(self._contract.functions, name)().call()
            except Exception as e:
                logger.warning(f"{name}() failed on {self.address[:10]}...: {e}")
                raise Revert(f"Pool read failed: {type(e).__name__}") from e
        return self._tokens[name]

    def token0(self) -> str:
        return self._token("token0")

    def token1(self) -> str:
        return self._token("token1")


class Web3OracleSource:
    """
    OracleSource backed by a live chain.

    Usage:
        source = Web3OracleSource()
        if source.initialize(chain_id=8453):
            issuer = SubscriptionIssuer(..., source=source)
    """

    def __init__(self):
        self._initialized: bool = False
        self._w3: Optional[Web3] = None
        self._rpc_url: str = ""
        self._feeds: dict[str, Web3PriceFeed] = {}
        self._pools: dict[str, Web3Pool] = {}

    def initialize(self, chain_id: int, rpc_url: str = "") -> bool:
        """Connect to RPC. Env {NAME}_RPC_URL overrides the chain default."""
        defaults = CHAIN_DEFAULTS.get(chain_id, {})
        if not rpc_url:
            env_key = f"{defaults.get('name', str(chain_id)).upper()}_RPC_URL"
            rpc_url = os.getenv(env_key, defaults.get("rpc", ""))
        if not rpc_url:
            logger.warning(f"No RPC URL for chain {chain_id} — on-chain oracles disabled")
            return False

        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        if not w3.is_connected():
            logger.warning(f"Cannot connect to RPC for chain {chain_id} — on-chain oracles disabled")
            return False

        self._w3 = w3
        self._rpc_url = rpc_url
        self._initialized = True
        logger.info(f"Chain reader connected: chain {chain_id} ({defaults.get('name', 'custom')})")
        return True

    def _require_w3(self) -> Web3:
        if not self._initialized or self._w3 is None:
            raise Revert("Chain reader not initialized")
        return self._w3

    def feed_at(self, address: str) -> Web3PriceFeed:
        addr = to_checksum(address)
        if addr not in self._feeds:
            self._feeds[addr] = Web3PriceFeed(self._require_w3(), addr)
        return self._feeds[addr]

    def pool_at(self, address: str) -> Web3Pool:
        addr = to_checksum(address)
        if addr not in self._pools:
            self._pools[addr] = Web3Pool(self._require_w3(), addr)
        return self._pools[addr]

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "feeds_cached": len(self._feeds),
            "pools_cached": len(self._pools),
        }
