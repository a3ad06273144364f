#!/usr/bin/env python3
"""
Pytest Configuration and Shared Fixtures

Every test gets a fresh ledger at a fixed clock with the three payment tokens
deployed, an issuer owned by `owner`, and a price feed answering 3000 USD.
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.constitution import LIQUIDITY_VESTING, TEAM_VESTING
from core.ledger import Ledger, Token
from core.oracles import StaticPool, StaticPriceFeed
from core.subscription import SubscriptionIssuer
from core.vesting import VestingSchedule


GENESIS = 1_700_000_000
ETHER = 10 ** 18
PRICE_USD = 400 * 10 ** 18
NATIVE_PRICE = 3000 * 10 ** 8
DUMMY_ADDRESS = "0x1234567890123456789012345678901234567890"


# ============================================================================
# LEDGER & ACCOUNTS
# ============================================================================

@pytest.fixture
def ledger():
    return Ledger(chain_id=31337, timestamp=GENESIS)


@pytest.fixture
def owner(ledger):
    return ledger.new_address("owner")


@pytest.fixture
def buyer(ledger):
    account = ledger.new_address("buyer")
    ledger.fund(account, 1000 * ETHER)
    return account


@pytest.fixture
def stranger(ledger):
    return ledger.new_address("stranger")


# ============================================================================
# TOKENS
# ============================================================================

@pytest.fixture
def usdt(ledger):
    return Token(ledger, "Tether USD", "USDT")


@pytest.fixture
def usdc(ledger):
    return Token(ledger, "USD Coin", "USDC")


@pytest.fixture
def cdfi(ledger):
    return Token(ledger, "CDFi", "CDFi")


# ============================================================================
# ORACLES
# ============================================================================

@pytest.fixture
def feed(ledger):
    return StaticPriceFeed(ledger, NATIVE_PRICE)


@pytest.fixture
def zero_pool(ledger, usdt, cdfi):
    """USDT/CDFi pool that has never been initialized (sqrtPriceX96 = 0)."""
    return StaticPool(ledger, token0=usdt.address, token1=cdfi.address)


# ============================================================================
# CONTRACTS
# ============================================================================

@pytest.fixture
def issuer(ledger, owner, usdt, usdc, cdfi):
    return SubscriptionIssuer(
        ledger,
        owner=owner,
        usdt_address=usdt.address,
        usdc_address=usdc.address,
        cdfi_address=cdfi.address,
    )


@pytest.fixture
def priced_issuer(issuer, owner, ledger, feed):
    """Issuer with the native price feed bound for the ledger's chain."""
    issuer.oracles.update_chainlink_price_feed(owner, ledger.chain_id, feed.address)
    return issuer


@pytest.fixture
def team_vesting(ledger, owner, cdfi):
    beneficiary = ledger.new_address("team")
    return VestingSchedule(ledger, cdfi.address, beneficiary, owner, TEAM_VESTING)


@pytest.fixture
def liquidity_vesting(ledger, owner, cdfi):
    beneficiary = ledger.new_address("liquidity")
    return VestingSchedule(ledger, cdfi.address, beneficiary, owner, LIQUIDITY_VESTING)
