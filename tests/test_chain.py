#!/usr/bin/env python3
"""
Chain Reader Tests

Tests for live oracle reads with web3 mocked out:
- Feed and pool readers decode contract calls
- RPC failures surface as Revert
- Oracle source initialization and caching
"""

import pytest
from unittest.mock import MagicMock, patch

from core.chain import Web3OracleSource, Web3Pool, Web3PriceFeed
from core.constitution import Revert
from core.ledger import Ledger, to_checksum
from core.oracles import sqrt_price_x96_for
from core.subscription import SubscriptionIssuer
from tests.conftest import DUMMY_ADDRESS, GENESIS, NATIVE_PRICE

FEED = "0x5f4ec3df9cbd43714fe2740f5e3616155c5b8419"
POOL = "0x11b815efb8f581194ae79006d24e0d814b7697f6"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"


def fake_w3(functions: dict) -> MagicMock:
    """Web3 double whose contract functions return the given values (or raise them)."""
    w3 = MagicMock()
    contract = w3.eth.contract.return_value
    for name, value in functions.items():
        call = getattr(contract.functions, name).return_value.call
        if isinstance(value, Exception):
            call.side_effect = value
        else:
            call.return_value = value
    return w3


class TestWeb3PriceFeed:
    """Tests for the AggregatorV3 reader"""

    def test_latest_round_data(self):
        w3 = fake_w3({"latestRoundData": (7, NATIVE_PRICE, GENESIS, GENESIS, 7), "decimals": 8})
        feed = Web3PriceFeed(w3, FEED)

        reading = feed.latest_round_data()
        assert reading.round_id == 7
        assert reading.answer == NATIVE_PRICE
        assert reading.updated_at == GENESIS
        assert feed.decimals() == 8
        assert feed.address == to_checksum(FEED)

    def test_decimals_cached(self):
        w3 = fake_w3({"decimals": 8})
        feed = Web3PriceFeed(w3, FEED)
        feed.decimals()
        feed.decimals()
        assert w3.eth.contract.return_value.functions.decimals.return_value.call.call_count == 1

    def test_rpc_failure(self):
        w3 = fake_w3({"latestRoundData": ConnectionError("rpc down")})
        with pytest.raises(Revert, match="Price feed read failed: ConnectionError"):
            Web3PriceFeed(w3, FEED).latest_round_data()


class TestWeb3Pool:
    """Tests for the Uniswap V3 pool reader"""

    def test_slot0_and_tokens(self):
        sqrt_price = sqrt_price_x96_for(4)
        w3 = fake_w3({
            "slot0": (sqrt_price, 13863, 0, 1, 1, 0, True),
            "token0": WETH,
            "token1": DUMMY_ADDRESS,
        })
        pool = Web3Pool(w3, POOL)

        slot0 = pool.slot0()
        assert slot0.sqrt_price_x96 == sqrt_price
        assert slot0.tick == 13863
        assert pool.token0() == WETH
        assert pool.token1() == DUMMY_ADDRESS

    def test_slot0_failure(self):
        w3 = fake_w3({"slot0": ValueError("execution reverted")})
        with pytest.raises(Revert, match="Pool read failed"):
            Web3Pool(w3, POOL).slot0()


class TestWeb3OracleSource:
    """Tests for connecting and caching readers"""

    def test_not_initialized(self):
        source = Web3OracleSource()
        with pytest.raises(Revert, match="Chain reader not initialized"):
            source.feed_at(FEED)

    def test_unreachable_rpc(self):
        with patch("core.chain.Web3") as web3_cls:
            web3_cls.return_value.is_connected.return_value = False
            source = Web3OracleSource()
            assert source.initialize(1, "http://localhost:1") is False
        assert source.get_status()["initialized"] is False

    def test_unknown_chain_without_url(self, monkeypatch):
        monkeypatch.delenv("999_RPC_URL", raising=False)
        assert Web3OracleSource().initialize(999) is False

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("BASE_RPC_URL", "http://base.example")
        with patch("core.chain.Web3") as web3_cls:
            web3_cls.return_value.is_connected.return_value = True
            assert Web3OracleSource().initialize(8453) is True
            web3_cls.HTTPProvider.assert_called_once_with(
                "http://base.example", request_kwargs={"timeout": 30}
            )

    def test_readers_cached(self):
        with patch("core.chain.Web3") as web3_cls:
            web3_cls.return_value.is_connected.return_value = True
            source = Web3OracleSource()
            source.initialize(1, "http://rpc.example")
            assert source.feed_at(FEED) is source.feed_at(to_checksum(FEED))
            assert source.pool_at(POOL) is source.pool_at(POOL)
            assert source.get_status() == {"initialized": True, "feeds_cached": 1, "pools_cached": 1}


def test_issuer_prices_from_live_feed():
    ledger = Ledger(chain_id=1, timestamp=GENESIS)
    owner = ledger.new_address("owner")
    w3 = fake_w3({"latestRoundData": (1, 2500 * 10 ** 8, GENESIS, GENESIS, 1), "decimals": 8})

    source = Web3OracleSource()
    source._w3 = w3
    source._initialized = True

    issuer = SubscriptionIssuer(
        ledger, owner,
        usdt_address=ledger.new_address("usdt"),
        usdc_address=ledger.new_address("usdc"),
        cdfi_address=ledger.new_address("cdfi"),
        source=source,
    )
    issuer.oracles.update_chainlink_price_feed(owner, 1, FEED)

    assert issuer.get_native_price() == 2500 * 10 ** 8
    assert issuer.required_native() == 16 * 10 ** 16
