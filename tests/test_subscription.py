#!/usr/bin/env python3
"""
Subscription Purchase Tests

Tests for the three payment rails:
- Native currency (price floor, refund, refused refund)
- CDFi (allowance pull at pool price)
- USDT / USDC (exact amount)
- Supply cap, token ids and transaction rollback
"""

import pytest

from core.constitution import NonexistentToken, Revert
from core.oracles import StaticPool, sqrt_price_x96_for
from core.subscription import SubscriptionIssuer
from tests.conftest import ETHER, PRICE_USD

REQUIRED_NATIVE = 133333333333333333
URI = "metadata_uri"
ADDITIONAL_URI = "extended_metadata_uri"


def buy_with_stable(issuer, token, buyer, token_id=None, amount=PRICE_USD):
    token.mint(buyer, amount)
    token.approve(buyer, issuer.address, amount)
    return issuer.buy_sub_with_stable(buyer, token.address, amount, token_id, URI, ADDITIONAL_URI)


class TestNativeRail:
    """Tests for buying with native currency"""

    def test_buy(self, priced_issuer, ledger, buyer):
        result = priced_issuer.buy_sub_with_native(buyer, 0, URI, ADDITIONAL_URI, value=PRICE_USD)

        assert priced_issuer.owner_of(0) == buyer
        assert priced_issuer.token_uri(0) == URI
        assert priced_issuer.get_additional_uri(0) == ADDITIONAL_URI
        assert result.token_id == 0
        assert result.amount_paid == REQUIRED_NATIVE
        assert result.refunded == PRICE_USD - REQUIRED_NATIVE
        assert not result.refund_failed
        assert ledger.balance(priced_issuer.address) == REQUIRED_NATIVE
        assert ledger.balance(buyer) == 1000 * ETHER - REQUIRED_NATIVE

    def test_exact_value(self, priced_issuer, ledger, buyer):
        result = priced_issuer.buy_sub_with_native(buyer, None, URI, value=REQUIRED_NATIVE)
        assert result.refunded == 0
        assert ledger.events_named("Failed") == []

    def test_value_below_price(self, priced_issuer, ledger, buyer):
        with pytest.raises(Revert, match="Native value should be equal or bigger subscription price!"):
            priced_issuer.buy_sub_with_native(buyer, 0, URI, ADDITIONAL_URI, value=10 ** 13)
        assert ledger.balance(buyer) == 1000 * ETHER
        assert priced_issuer.minted_count == 0

    def test_one_wei_short(self, priced_issuer, buyer):
        with pytest.raises(Revert, match="Native value"):
            priced_issuer.buy_sub_with_native(buyer, 0, URI, value=REQUIRED_NATIVE - 1)

    def test_feed_not_bound(self, issuer, buyer):
        with pytest.raises(Revert, match="Price feed not set"):
            issuer.buy_sub_with_native(buyer, 0, URI, value=PRICE_USD)

    def test_refund_refused_keeps_purchase(self, priced_issuer, ledger, buyer):
        ledger.reject_native(buyer)
        value = PRICE_USD + ETHER

        result = priced_issuer.buy_sub_with_native(buyer, 0, URI, ADDITIONAL_URI, value=value)

        assert result.refund_failed
        assert result.refund_error == "Failed to send excess amount"
        assert result.amount_paid == value
        assert priced_issuer.owner_of(0) == buyer
        assert ledger.balance(priced_issuer.address) == value
        assert ledger.last_event("Failed").args == {"reason": "Failed to send excess amount"}
        assert len(ledger.events_named("SubscriptionPurchased")) == 1

    def test_insufficient_native_balance(self, priced_issuer, stranger):
        with pytest.raises(Revert, match="Insufficient native balance"):
            priced_issuer.buy_sub_with_native(stranger, 0, URI, value=REQUIRED_NATIVE)
        with pytest.raises(NonexistentToken):
            priced_issuer.owner_of(0)


class TestCDFiRail:
    """Tests for buying with CDFi"""

    @pytest.fixture
    def pool(self, issuer, owner, ledger, usdt, cdfi):
        pool = StaticPool(ledger, usdt.address, cdfi.address, sqrt_price_x96_for(4))
        issuer.oracles.update_v3_pools(owner, ledger.chain_id, pool.address)
        return pool

    def test_buy_with_uninitialized_pool(self, issuer, owner, ledger, buyer, zero_pool):
        issuer.oracles.update_v3_pools(owner, ledger.chain_id, zero_pool.address)
        result = issuer.buy_sub_with_cdfi(buyer, 0, URI, ADDITIONAL_URI)
        assert result.amount_paid == 0
        assert issuer.owner_of(0) == buyer

    def test_buy(self, issuer, pool, cdfi, buyer):
        required = 1600 * 10 ** 18
        cdfi.mint(buyer, 2000 * 10 ** 18)
        cdfi.approve(buyer, issuer.address, required)

        result = issuer.buy_sub_with_cdfi(buyer, 0, URI, ADDITIONAL_URI)

        assert result.asset == "cdfi"
        assert result.amount_paid == required
        assert cdfi.balance_of(issuer.address) == required
        assert cdfi.balance_of(buyer) == 400 * 10 ** 18
        assert cdfi.allowance(buyer, issuer.address) == 0

    def test_discounted_buy(self, issuer, owner, pool, cdfi, buyer):
        issuer.treasury.set_cdfi_discount(owner, 40)
        cdfi.mint(buyer, 960 * 10 ** 18)
        cdfi.approve(buyer, issuer.address, 960 * 10 ** 18)
        result = issuer.buy_sub_with_cdfi(buyer, None, URI)
        assert result.amount_paid == 960 * 10 ** 18
        assert cdfi.balance_of(buyer) == 0

    def test_without_allowance_rolls_back(self, issuer, ledger, pool, cdfi, buyer):
        cdfi.mint(buyer, 2000 * 10 ** 18)
        events_before = len(ledger.events)

        with pytest.raises(Revert, match="insufficient allowance"):
            issuer.buy_sub_with_cdfi(buyer, 0, URI)

        assert issuer.minted_count == 0
        assert not issuer.registry.exists(0)
        assert cdfi.balance_of(buyer) == 2000 * 10 ** 18
        assert len(ledger.events) == events_before

    def test_pool_not_bound(self, issuer, buyer):
        with pytest.raises(Revert, match=r"Pool does not exist\."):
            issuer.buy_sub_with_cdfi(buyer, 0, URI)


class TestStableRail:
    """Tests for buying with USDT / USDC"""

    def test_buy_with_usdt(self, issuer, usdt, buyer):
        result = buy_with_stable(issuer, usdt, buyer, token_id=1)
        assert issuer.owner_of(1) == buyer
        assert result.asset == "stable"
        assert result.asset_address == usdt.address
        assert usdt.balance_of(issuer.address) == PRICE_USD

    def test_buy_with_usdc(self, issuer, usdc, buyer):
        buy_with_stable(issuer, usdc, buyer, token_id=1)
        assert issuer.owner_of(1) == buyer
        assert usdc.balance_of(issuer.address) == PRICE_USD

    def test_invalid_stable(self, issuer, cdfi, buyer):
        with pytest.raises(Revert, match="Invalid stable address"):
            buy_with_stable(issuer, cdfi, buyer)

    def test_wrong_amount(self, issuer, usdt, buyer):
        with pytest.raises(Revert, match="Stable amount should be equal subscription price!"):
            buy_with_stable(issuer, usdt, buyer, amount=10 ** 16)

    def test_missing_approval(self, issuer, usdt, buyer):
        usdt.mint(buyer, PRICE_USD)
        with pytest.raises(Revert, match="insufficient allowance"):
            issuer.buy_sub_with_stable(buyer, usdt.address, PRICE_USD, 0, URI)
        assert usdt.balance_of(buyer) == PRICE_USD


class TestTokenIds:
    """Tests for token id assignment and the supply cap"""

    def test_auto_ids_are_sequential(self, issuer, usdt, buyer):
        ids = [buy_with_stable(issuer, usdt, buyer).token_id for _ in range(3)]
        assert ids == [0, 1, 2]
        assert issuer.minted_count == 3

    def test_auto_ids_skip_caller_chosen(self, issuer, usdt, buyer):
        buy_with_stable(issuer, usdt, buyer, token_id=1)
        ids = [buy_with_stable(issuer, usdt, buyer).token_id for _ in range(2)]
        assert ids == [0, 2]

    def test_duplicate_id(self, issuer, usdt, buyer):
        buy_with_stable(issuer, usdt, buyer, token_id=5)
        with pytest.raises(Revert, match="Token already minted"):
            buy_with_stable(issuer, usdt, buyer, token_id=5)
        assert usdt.balance_of(issuer.address) == PRICE_USD

    def test_id_beyond_max_supply(self, issuer, usdt, buyer):
        with pytest.raises(Revert, match="Token id exceeds max supply"):
            buy_with_stable(issuer, usdt, buyer, token_id=issuer.config.max_supply)

    def test_max_supply_reached(self, ledger, owner, usdt, usdc, cdfi, buyer):
        capped = SubscriptionIssuer(
            ledger, owner, usdt.address, usdc.address, cdfi.address, max_supply=2,
        )
        buy_with_stable(capped, usdt, buyer)
        buy_with_stable(capped, usdt, buyer)
        with pytest.raises(Revert, match="Max supply reached"):
            buy_with_stable(capped, usdt, buyer)
        assert capped.minted_count == 2

    def test_unknown_token(self, issuer):
        with pytest.raises(NonexistentToken, match="ERC721NonexistentToken"):
            issuer.token_uri(42)


class TestEvents:
    """Tests for purchase events"""

    def test_subscription_purchased(self, issuer, ledger, usdt, buyer):
        buy_with_stable(issuer, usdt, buyer, token_id=3)
        event = ledger.last_event("SubscriptionPurchased")
        assert event.emitter == issuer.address
        assert event.args == {
            "buyer": buyer,
            "tokenId": 3,
            "asset": "stable",
            "amount": PRICE_USD,
        }

    def test_result_serializes_amounts_as_strings(self, priced_issuer, buyer):
        result = priced_issuer.buy_sub_with_native(buyer, 0, URI, value=PRICE_USD)
        data = result.to_dict()
        assert data["amount_paid"] == str(REQUIRED_NATIVE)
        assert data["refund_failed"] is False


class TestConstruction:
    """Tests for issuer construction guards"""

    def test_discount_out_of_range(self, ledger, owner, usdt, usdc, cdfi):
        with pytest.raises(Revert, match="Discount must be less than 100"):
            SubscriptionIssuer(ledger, owner, usdt.address, usdc.address, cdfi.address,
                               cdfi_discount_percent=100)

    def test_negative_price(self, ledger, owner, usdt, usdc, cdfi):
        with pytest.raises(Revert, match="Price must not be negative"):
            SubscriptionIssuer(ledger, owner, usdt.address, usdc.address, cdfi.address,
                               subscription_price_usd=-1)

    def test_status(self, issuer, owner):
        status = issuer.get_status()
        assert status["owner"] == owner
        assert status["minted_count"] == 0
        assert status["config"]["subscription_price_usd"] == str(PRICE_USD)
        assert status["treasury"] == {"native": "0", "USDT": "0", "USDC": "0", "CDFi": "0"}


def test_end_to_end_native_purchase(ledger, owner, buyer, feed, usdt, usdc, cdfi):
    issuer = SubscriptionIssuer(ledger, owner, usdt.address, usdc.address, cdfi.address)
    issuer.oracles.update_chainlink_price_feed(owner, ledger.chain_id, feed.address)

    assert issuer.get_native_price() == 300000000000
    assert issuer.required_native() == 400 * 10 ** 18 * 10 ** 18 // (300000000000 * 10 ** 10)

    issuer.buy_sub_with_native(buyer, None, URI, ADDITIONAL_URI, value=ETHER)
    receiver = ledger.new_address("receiver")
    amount = issuer.treasury.withdraw_ether(owner, receiver)

    assert amount == REQUIRED_NATIVE
    assert ledger.balance(receiver) == REQUIRED_NATIVE
    assert ledger.balance(buyer) == 1000 * ETHER - REQUIRED_NATIVE
