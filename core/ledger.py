"""
Ledger - In-process execution substrate

The engine's contracts run on top of this ledger the same way they would run
on a chain:
- A block clock (timestamp) and a chain id
- Native-currency balances per address
- An append-only event log
- Atomic transactions: every state change inside `transaction()` is undone
  if the block raises (balances, allowances, NFT owners, contract state, events)

Two collaborators live here as well, because every rail needs them:
- Token: a fungible ERC-20 style balance sheet (stablecoins, CDFi)
- SubscriptionRegistry: the ERC-721 style ledger of subscription tokens

Execution is single-threaded. Callers that share a ledger across coroutines
must serialize access themselves (see api/server.py).
"""

import copy
import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from web3 import Web3

from .constitution import (
    LAWS,
    ZERO_ADDRESS,
    InvalidAddress,
    NonexistentToken,
    Revert,
    Unauthorized,
)

logger = logging.getLogger("cdfi.ledger")


def to_checksum(address: str) -> str:
    """Normalize an address to EIP-55 form. Raises InvalidAddress."""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddress(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def is_zero(address: Optional[str]) -> bool:
    return not address or address.lower() == ZERO_ADDRESS


# ============================================================
# EVENTS
# ============================================================

@dataclass
class Event:
    name: str
    args: dict
    emitter: str
    timestamp: int
    block: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "args": self.args,
            "emitter": self.emitter,
            "timestamp": self.timestamp,
            "block": self.block,
        }


# ============================================================
# CONTRACT BASE
# ============================================================

class Contract:
    """
    Base for every stateful account on the ledger.

    Subclasses list their mutable attributes in _STATE so the ledger can
    snapshot and restore them around a transaction.
    """

    _STATE: tuple = ()

    def __init__(self, ledger: "Ledger", address: Optional[str] = None):
        self.ledger = ledger
        self.address = ledger.register(self, address)

    def emit(self, name: str, **args) -> Event:
        return self.ledger.emit(self.address, name, args)

    def snapshot(self) -> dict:
        return {attr: copy.deepcopy(getattr(self, attr)) for attr in self._STATE}

    def restore(self, state: dict):
        for attr, value in state.items():
            setattr(self, attr, value)


class Ownable(Contract):
    """Contract with a single owner gating every administrative call."""

    _STATE = ("owner",)

    def __init__(self, ledger: "Ledger", owner: str, address: Optional[str] = None):
        super().__init__(ledger, address)
        self.owner = to_checksum(owner)

    def _only_owner(self, caller: str):
        if not caller or caller.lower() != self.owner.lower():
            logger.warning(f"UNAUTHORIZED: {caller} on {type(self).__name__}")
            raise Unauthorized(caller)


# ============================================================
# LEDGER
# ============================================================

class Ledger:
    """
    Chain state for one network.

    Usage:
        ledger = Ledger(chain_id=31337)
        buyer = ledger.new_address()
        ledger.fund(buyer, 10 ** 18)
        with ledger.transaction():
            ...  # all-or-nothing
    """

    def __init__(self, chain_id: int = 31337, timestamp: Optional[int] = None):
        self.chain_id = int(chain_id)
        self.timestamp: int = int(timestamp if timestamp is not None else time.time())
        self.block_number: int = 0
        self.native_balances: dict[str, int] = {}
        self.contracts: dict[str, Contract] = {}
        self.events: list[Event] = []
        # Accounts without a payable fallback: native sends to them fail softly
        self.rejecting: set[str] = set()
        self._address_nonce: int = 0
        self._tx_depth: int = 0

    # ------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------

    def new_address(self, label: str = "") -> str:
        """Derive a fresh deterministic address (keccak of a nonce)."""
        self._address_nonce += 1
        digest = Web3.keccak(text=f"{self.chain_id}:{self._address_nonce}:{label}")
        return Web3.to_checksum_address("0x" + bytes(digest[-20:]).hex())

    def register(self, contract: Contract, address: Optional[str] = None) -> str:
        addr = to_checksum(address) if address else self.new_address(type(contract).__name__)
        if addr in self.contracts:
            raise Revert(f"Address already in use: {addr}")
        self.contracts[addr] = contract
        return addr

    def token_at(self, address: str) -> "Token":
        contract = self.contracts.get(to_checksum(address))
        if not isinstance(contract, Token):
            raise Revert(f"No token deployed at {address}")
        return contract

    def reject_native(self, address: str, reject: bool = True):
        """Make an account refuse (or accept again) incoming native transfers."""
        addr = to_checksum(address)
        if reject:
            self.rejecting.add(addr)
        else:
            self.rejecting.discard(addr)

    # ------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("time cannot move backwards")
        self.timestamp += int(seconds)
        self.block_number += 1
        return self.timestamp

    def set_timestamp(self, timestamp: int) -> int:
        if timestamp < self.timestamp:
            raise ValueError(f"timestamp {timestamp} is before current {self.timestamp}")
        self.timestamp = int(timestamp)
        self.block_number += 1
        return self.timestamp

    # ------------------------------------------------------------
    # Native currency
    # ------------------------------------------------------------

    def balance(self, address: str) -> int:
        return self.native_balances.get(to_checksum(address), 0)

    def fund(self, address: str, amount: int):
        """Credit native currency out of thin air (genesis / faucet)."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        addr = to_checksum(address)
        self.native_balances[addr] = self.native_balances.get(addr, 0) + amount

    def _debit_native(self, sender: str, amount: int):
        if amount < 0:
            raise Revert("Negative native amount")
        have = self.native_balances.get(sender, 0)
        if have < amount:
            raise Revert("Insufficient native balance")
        self.native_balances[sender] = have - amount

    def transfer_native(self, sender: str, to: str, amount: int):
        """Value transfer that must succeed (msg.value attached to a call)."""
        sender, to = to_checksum(sender), to_checksum(to)
        self._debit_native(sender, amount)
        self.native_balances[to] = self.native_balances.get(to, 0) + amount

    def send_native(self, sender: str, to: str, amount: int) -> bool:
        """
        Low-level send. Returns False instead of raising when the receiver
        refuses the payment; the sender keeps the funds in that case.
        """
        sender, to = to_checksum(sender), to_checksum(to)
        if amount < 0:
            raise Revert("Negative native amount")
        if to in self.rejecting:
            logger.warning(f"Native send refused by {to[:10]}... ({amount} wei)")
            return False
        self._debit_native(sender, amount)
        self.native_balances[to] = self.native_balances.get(to, 0) + amount
        return True

    # ------------------------------------------------------------
    # Events
    # ------------------------------------------------------------

    def emit(self, emitter: str, name: str, args: dict) -> Event:
        event = Event(
            name=name,
            args=dict(args),
            emitter=emitter,
            timestamp=self.timestamp,
            block=self.block_number,
        )
        self.events.append(event)
        logger.debug(f"EVENT {name} {args}")
        return event

    def events_named(self, name: str, emitter: Optional[str] = None) -> list[Event]:
        return [
            e for e in self.events
            if e.name == name and (emitter is None or e.emitter == emitter)
        ]

    def last_event(self, name: str) -> Optional[Event]:
        for event in reversed(self.events):
            if event.name == name:
                return event
        return None

    def _trim_events(self):
        if len(self.events) > LAWS.MAX_EVENTS:
            self.events = self.events[-LAWS.MAX_EVENTS:]

    # ------------------------------------------------------------
    # Atomicity
    # ------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["Ledger"]:
        """
        All-or-nothing block. Nested blocks join the outermost one.
        On any exception every contract, balance and event is restored.
        """
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        native = dict(self.native_balances)
        events_len = len(self.events)
        states = {addr: c.snapshot() for addr, c in self.contracts.items()}

        self._tx_depth = 1
        try:
            yield self
        except Exception as e:
            self.native_balances = native
            del self.events[events_len:]
            for addr, state in states.items():
                self.contracts[addr].restore(state)
            logger.warning(f"TX REVERTED: {type(e).__name__}: {e}")
            raise
        else:
            self.block_number += 1
            self._trim_events()
        finally:
            self._tx_depth = 0

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "timestamp": self.timestamp,
            "block_number": self.block_number,
            "contracts": len(self.contracts),
            "events": len(self.events),
        }


# ============================================================
# FUNGIBLE TOKEN (stablecoins, CDFi)
# ============================================================

class Token(Contract):
    """ERC-20 style balance sheet. 18 decimals unless stated otherwise."""

    _STATE = ("balances", "allowances", "total_supply")

    def __init__(self, ledger: Ledger, name: str, symbol: str,
                 decimals: int = 18, address: Optional[str] = None):
        super().__init__(ledger, address)
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.total_supply: int = 0
        self.balances: dict[str, int] = {}
        self.allowances: dict[str, dict[str, int]] = {}

    def balance_of(self, account: str) -> int:
        return self.balances.get(to_checksum(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get(to_checksum(owner), {}).get(to_checksum(spender), 0)

    def mint(self, to: str, amount: int):
        """Issuance hook used by deployment and faucets."""
        if amount < 0:
            raise Revert("ERC20: negative amount")
        to = to_checksum(to)
        self.balances[to] = self.balances.get(to, 0) + amount
        self.total_supply += amount
        self.emit("Transfer", **{"from": ZERO_ADDRESS, "to": to, "value": amount})

    def approve(self, caller: str, spender: str, amount: int) -> bool:
        owner, spender = to_checksum(caller), to_checksum(spender)
        if amount < 0:
            raise Revert("ERC20: negative amount")
        self.allowances.setdefault(owner, {})[spender] = amount
        self.emit("Approval", owner=owner, spender=spender, value=amount)
        return True

    def _move(self, sender: str, to: str, amount: int):
        if amount < 0:
            raise Revert("ERC20: negative amount")
        have = self.balances.get(sender, 0)
        if have < amount:
            raise Revert("ERC20: transfer amount exceeds balance")
        self.balances[sender] = have - amount
        self.balances[to] = self.balances.get(to, 0) + amount
        self.emit("Transfer", **{"from": sender, "to": to, "value": amount})

    def transfer(self, caller: str, to: str, amount: int) -> bool:
        self._move(to_checksum(caller), to_checksum(to), amount)
        return True

    def transfer_from(self, caller: str, owner: str, to: str, amount: int) -> bool:
        spender, owner, to = to_checksum(caller), to_checksum(owner), to_checksum(to)
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise Revert("ERC20: insufficient allowance")
        self.allowances.setdefault(owner, {})[spender] = allowed - amount
        self._move(owner, to, amount)
        return True


# ============================================================
# SUBSCRIPTION TOKEN REGISTRY (ERC-721 collaborator)
# ============================================================

@dataclass
class SubscriptionToken:
    token_id: int
    owner: str
    primary_uri: str
    additional_uri: str = ""
    minted_at: int = 0

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "owner": self.owner,
            "primary_uri": self.primary_uri,
            "additional_uri": self.additional_uri,
            "minted_at": self.minted_at,
        }


class SubscriptionRegistry(Contract):
    """
    Non-fungible ledger of subscription tokens.

    Only the minter (the issuer contract) can create tokens. URIs are set at
    mint and never change. Holders transfer with standard owner/approval rules.
    """

    _STATE = ("tokens", "approvals", "operators")

    def __init__(self, ledger: Ledger, name: str, symbol: str, minter: str,
                 address: Optional[str] = None):
        super().__init__(ledger, address)
        self.name = name
        self.symbol = symbol
        self.minter = to_checksum(minter)
        self.tokens: dict[int, SubscriptionToken] = {}
        self.approvals: dict[int, str] = {}
        self.operators: dict[str, set] = {}

    def exists(self, token_id: int) -> bool:
        return token_id in self.tokens

    def _require(self, token_id: int) -> SubscriptionToken:
        token = self.tokens.get(token_id)
        if token is None:
            raise NonexistentToken(token_id)
        return token

    def mint(self, caller: str, to: str, token_id: int, uri: str, additional_uri: str = ""):
        if to_checksum(caller) != self.minter:
            raise Unauthorized(caller)
        if token_id in self.tokens:
            raise Revert("ERC721: token already minted")
        to = to_checksum(to)
        self.tokens[token_id] = SubscriptionToken(
            token_id=token_id,
            owner=to,
            primary_uri=uri,
            additional_uri=additional_uri,
            minted_at=self.ledger.timestamp,
        )
        self.emit("Transfer", **{"from": ZERO_ADDRESS, "to": to, "tokenId": token_id})

    def owner_of(self, token_id: int) -> str:
        return self._require(token_id).owner

    def token_uri(self, token_id: int) -> str:
        return self._require(token_id).primary_uri

    def additional_uri(self, token_id: int) -> str:
        return self._require(token_id).additional_uri

    def balance_of(self, owner: str) -> int:
        owner = to_checksum(owner)
        return sum(1 for t in self.tokens.values() if t.owner == owner)

    def approve(self, caller: str, to: str, token_id: int):
        token = self._require(token_id)
        caller = to_checksum(caller)
        if caller != token.owner and caller not in self.operators.get(token.owner, set()):
            raise Revert("ERC721: approve caller is not token owner or approved for all")
        self.approvals[token_id] = to_checksum(to)
        self.emit("Approval", owner=token.owner, approved=self.approvals[token_id], tokenId=token_id)

    def set_approval_for_all(self, caller: str, operator: str, approved: bool):
        caller, operator = to_checksum(caller), to_checksum(operator)
        ops = self.operators.setdefault(caller, set())
        if approved:
            ops.add(operator)
        else:
            ops.discard(operator)
        self.emit("ApprovalForAll", owner=caller, operator=operator, approved=approved)

    def get_approved(self, token_id: int) -> str:
        self._require(token_id)
        return self.approvals.get(token_id, ZERO_ADDRESS)

    def transfer_from(self, caller: str, from_: str, to: str, token_id: int):
        token = self._require(token_id)
        caller, from_, to = to_checksum(caller), to_checksum(from_), to_checksum(to)
        if token.owner != from_:
            raise Revert("ERC721: transfer from incorrect owner")
        authorized = (
            caller == token.owner
            or self.approvals.get(token_id) == caller
            or caller in self.operators.get(token.owner, set())
        )
        if not authorized:
            raise Revert("ERC721: caller is not token owner or approved")
        self.approvals.pop(token_id, None)
        token.owner = to
        self.emit("Transfer", **{"from": from_, "to": to, "tokenId": token_id})
