"""
CDFi Subscription API Server - FastAPI Backend

Endpoints:
- GET  /health                      Liveness + chain clock
- GET  /status                      Issuer config, minted count, treasury balances
- GET  /price/native                USD per native unit (8 decimals) + native owed
- GET  /price/cdfi                  CDFi owed for one subscription
- POST /subscribe/native            Buy with native currency (excess refunded)
- POST /subscribe/cdfi              Buy with CDFi (allowance required)
- POST /subscribe/stable            Buy with USDT / USDC (exact price)
- POST /tokens/{asset}/approve      Grant the issuer an allowance (usdt / usdc / cdfi)
- GET  /token/{token_id}            Holder + URIs
- GET  /events                      Event log (optionally filtered by name)
- GET  /vesting/{name}              Vesting schedule status
- POST /vesting/{name}/start        Owner: start the clock
- POST /vesting/{name}/withdraw     Owner: release vested tokens
- POST /admin/...                   Owner: bindings, economics, withdrawals
- POST /dev/fund                    Faucet: credit native or mint tokens (dev_faucet only)

The caller field identifies the account acting. This server is meant to sit
behind a gateway that authenticates that account; the engine itself enforces
ownership on every administrative call.

Engine errors map to HTTP: Unauthorized → 403, unknown token → 404,
any other Revert → 400 with the revert reason.
"""

import os
import asyncio
import functools
import logging
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from core.constitution import NonexistentToken, Revert, Unauthorized

logger = logging.getLogger("cdfi.api")


# ============================================================
# MODELS
# ============================================================

class NativePurchaseRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    value: int = Field(..., ge=0)               # wei
    token_id: Optional[int] = Field(None, ge=0)
    uri: str = Field(..., max_length=2000)
    additional_uri: str = Field("", max_length=2000)


class CDFiPurchaseRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    token_id: Optional[int] = Field(None, ge=0)
    uri: str = Field(..., max_length=2000)
    additional_uri: str = Field("", max_length=2000)


class StablePurchaseRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    stable_address: str = Field(..., max_length=64)
    amount: int = Field(..., ge=0)              # 18 decimals
    token_id: Optional[int] = Field(None, ge=0)
    uri: str = Field(..., max_length=2000)
    additional_uri: str = Field("", max_length=2000)


class CallerRequest(BaseModel):
    caller: str = Field(..., max_length=64)


class BindingRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    chain_id: int = Field(..., ge=0)
    address: str = Field(..., max_length=64)


class AddressRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    address: str = Field(..., max_length=64)


class AmountRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    amount: int = Field(..., ge=0)


class FeedAgeRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    seconds: Optional[int] = None


class WithdrawRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    receiver: str = Field(..., max_length=64)


class ApproveRequest(BaseModel):
    caller: str = Field(..., max_length=64)
    amount: int = Field(..., ge=0)             # allowance granted to the issuer


class FundRequest(BaseModel):
    address: str = Field(..., max_length=64)
    asset: str = Field("native", max_length=16) # native | usdt | usdc | cdfi
    amount: int = Field(..., ge=0)


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(issuer, vestings: Optional[dict] = None, dev_faucet: bool = False) -> FastAPI:
    """
    Create FastAPI app wired to one issuer and its vesting schedules.

    vestings: {"team": VestingSchedule, "liquidity": VestingSchedule}
    dev_faucet: expose POST /dev/fund (in-process ledgers only)
    """
    if vestings is None:
        vestings = {}

    app = FastAPI(
        title="CDFi Subscription",
        description="Buy a CDFi subscription token with native currency, CDFi or stablecoins.",
        version="0.1.0",
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One engine call at a time, like blocks on a chain.
    # Calls run in the executor: on-chain oracle reads block on RPC.
    engine_lock = asyncio.Lock()
    ledger = issuer.ledger

    async def _call(fn: Callable, *args, **kwargs):
        async with engine_lock:
            try:
                return await asyncio.get_running_loop().run_in_executor(
                    None, functools.partial(fn, *args, **kwargs)
                )
            except Unauthorized as e:
                raise HTTPException(403, str(e))
            except NonexistentToken as e:
                raise HTTPException(404, str(e))
            except Revert as e:
                logger.info(f"Rejected {getattr(fn, '__name__', 'call')}: {e.reason}")
                raise HTTPException(400, e.reason)

    def _asset_token(asset: str):
        addresses = {
            "usdt": issuer.config.usdt_address,
            "usdc": issuer.config.usdc_address,
            "cdfi": issuer.config.cdfi_address,
        }
        address = addresses.get(asset.lower())
        if address is None:
            raise HTTPException(404, f"Unknown asset: {asset}")
        return ledger.token_at(address)

    def _vesting(name: str):
        schedule = vestings.get(name)
        if schedule is None:
            raise HTTPException(404, f"Unknown vesting schedule: {name}")
        return schedule

    # ============================================================
    # PUBLIC READS
    # ============================================================

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "chain_id": ledger.chain_id,
            "timestamp": ledger.timestamp,
            "block_number": ledger.block_number,
        }

    @app.get("/status")
    async def status():
        return await _call(issuer.get_status)

    @app.get("/price/native")
    async def price_native():
        price = await _call(issuer.get_native_price)
        required = await _call(issuer.required_native)
        return {"native_price_usd": str(price), "required_native": str(required)}

    @app.get("/price/cdfi")
    async def price_cdfi():
        amount = await _call(issuer.get_price_in_cdfi)
        return {
            "required_cdfi": str(amount),
            "discount_percent": issuer.config.cdfi_discount_percent,
        }

    def _token_view(token_id: int) -> dict:
        return {
            "token_id": token_id,
            "owner": issuer.owner_of(token_id),
            "uri": issuer.token_uri(token_id),
            "additional_uri": issuer.get_additional_uri(token_id),
        }

    def _events_view(name: Optional[str], limit: int) -> list:
        selected = ledger.events_named(name) if name else ledger.events
        return [e.to_dict() for e in selected[-limit:]]

    @app.get("/token/{token_id}")
    async def token(token_id: int):
        return await _call(_token_view, token_id)

    @app.get("/events")
    async def events(name: Optional[str] = None, limit: int = 100):
        limit = max(1, min(limit, 1000))
        return {"events": await _call(_events_view, name, limit)}

    # ============================================================
    # PURCHASES
    # ============================================================

    @app.post("/subscribe/native")
    async def subscribe_native(req: NativePurchaseRequest):
        result = await _call(
            issuer.buy_sub_with_native, req.caller, req.token_id, req.uri,
            req.additional_uri, value=req.value,
        )
        return result.to_dict()

    @app.post("/subscribe/cdfi")
    async def subscribe_cdfi(req: CDFiPurchaseRequest):
        result = await _call(
            issuer.buy_sub_with_cdfi, req.caller, req.token_id, req.uri, req.additional_uri,
        )
        return result.to_dict()

    @app.post("/subscribe/stable")
    async def subscribe_stable(req: StablePurchaseRequest):
        result = await _call(
            issuer.buy_sub_with_stable, req.caller, req.stable_address, req.amount,
            req.token_id, req.uri, req.additional_uri,
        )
        return result.to_dict()

    @app.post("/tokens/{asset}/approve")
    async def approve(asset: str, req: ApproveRequest):
        """Let the issuer pull `amount` of USDT / USDC / CDFi from the caller."""
        def _approve():
            erc20 = _asset_token(asset)
            erc20.approve(req.caller, issuer.address, req.amount)
            return erc20.allowance(req.caller, issuer.address)

        allowance = await _call(_approve)
        return {"asset": asset.lower(), "spender": issuer.address, "allowance": str(allowance)}

    # ============================================================
    # VESTING
    # ============================================================

    @app.get("/vesting/{name}")
    async def vesting_status(name: str):
        return await _call(_vesting(name).get_status)

    @app.post("/vesting/{name}/start")
    async def vesting_start(name: str, req: CallerRequest):
        start_time = await _call(_vesting(name).start_vesting, req.caller)
        return {"start_time": start_time}

    @app.post("/vesting/{name}/withdraw")
    async def vesting_withdraw(name: str, req: CallerRequest):
        schedule = _vesting(name)
        amount = await _call(schedule.withdraw_vested_tokens, req.caller)
        return {"beneficiary": schedule.beneficiary, "amount": str(amount)}

    # ============================================================
    # ADMIN (owner only, enforced by the engine)
    # ============================================================

    @app.post("/admin/price-feed")
    async def admin_price_feed(req: BindingRequest):
        await _call(issuer.oracles.update_chainlink_price_feed, req.caller, req.chain_id, req.address)
        return {"chain_id": req.chain_id, "price_feed": issuer.price_feed_addresses(req.chain_id)}

    @app.post("/admin/pool")
    async def admin_pool(req: BindingRequest):
        await _call(issuer.oracles.update_v3_pools, req.caller, req.chain_id, req.address)
        return {"chain_id": req.chain_id, "pool": issuer.v3_pool_addresses(req.chain_id)}

    @app.post("/admin/price")
    async def admin_price(req: AmountRequest):
        await _call(issuer.treasury.set_sub_price, req.caller, req.amount)
        return {"subscription_price_usd": str(issuer.config.subscription_price_usd)}

    @app.post("/admin/discount")
    async def admin_discount(req: AmountRequest):
        await _call(issuer.treasury.set_cdfi_discount, req.caller, req.amount)
        return {"cdfi_discount_percent": issuer.config.cdfi_discount_percent}

    @app.post("/admin/max-supply")
    async def admin_max_supply(req: AmountRequest):
        await _call(issuer.treasury.set_max_supply, req.caller, req.amount)
        return {"max_supply": issuer.config.max_supply}

    @app.post("/admin/max-feed-age")
    async def admin_max_feed_age(req: FeedAgeRequest):
        await _call(issuer.treasury.set_max_feed_age, req.caller, req.seconds)
        return {"max_feed_age": issuer.config.max_feed_age}

    @app.post("/admin/address/{asset}")
    async def admin_address(asset: str, req: AddressRequest):
        setters = {
            "usdt": issuer.treasury.change_usdt_address,
            "usdc": issuer.treasury.change_usdc_address,
            "cdfi": issuer.treasury.change_cdfi_address,
        }
        setter = setters.get(asset.lower())
        if setter is None:
            raise HTTPException(404, f"Unknown asset: {asset}")
        address = await _call(setter, req.caller, req.address)
        return {"asset": asset.lower(), "address": address}

    @app.post("/admin/withdraw")
    async def admin_withdraw(req: WithdrawRequest):
        swept = await _call(issuer.treasury.withdraw, req.caller, req.receiver)
        return {"receiver": req.receiver, "swept": {k: str(v) for k, v in swept.items()}}

    @app.post("/admin/withdraw-ether")
    async def admin_withdraw_ether(req: WithdrawRequest):
        amount = await _call(issuer.treasury.withdraw_ether, req.caller, req.receiver)
        return {"receiver": req.receiver, "amount": str(amount)}

    @app.post("/admin/vesting/{name}/token")
    async def admin_vesting_token(name: str, req: AddressRequest):
        address = await _call(_vesting(name).set_token_address, req.caller, req.address)
        return {"name": name, "token_address": address}

    @app.post("/admin/vesting/{name}/wallet")
    async def admin_vesting_wallet(name: str, req: AddressRequest):
        address = await _call(_vesting(name).set_team_wallet, req.caller, req.address)
        return {"name": name, "beneficiary": address}

    # ============================================================
    # DEV FAUCET (in-process ledger only)
    # ============================================================

    if dev_faucet:
        @app.post("/dev/fund")
        async def dev_fund(req: FundRequest):
            def _fund():
                if req.asset.lower() == "native":
                    ledger.fund(req.address, req.amount)
                    return ledger.balance(req.address)
                erc20 = _asset_token(req.asset)
                erc20.mint(req.address, req.amount)
                return erc20.balance_of(req.address)

            balance = await _call(_fund)
            logger.info(f"Faucet: {req.amount} {req.asset} → {req.address[:10]}...")
            return {"address": req.address, "asset": req.asset.lower(), "balance": str(balance)}

    return app
