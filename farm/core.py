from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from collections import deque
import functools
import itertools
import logging

from .errors import (
    InsufficientAllowance,
    InsufficientBalance,
    Paused,
    ReentrantCall,
    Unauthorized,
    ZeroAddress,
)
from .fixedpoint import require_uint

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def require_address(account: Optional[str]) -> str:
    if not account or account == ZERO_ADDRESS:
        raise ZeroAddress()
    return account


def format_balances(balances: Dict[str, int]) -> str:
    if not balances:
        return "(empty)"
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{account}:{amount}" for account, amount in items)

# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    block: int
    event_type: str
    actor_id: Optional[str] = None
    pool_id: Optional[int] = None
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def extend(self, events: List[Event]) -> None:
        self.events.extend(events)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


# -----------------------------
# Chain clock
# -----------------------------
class ChainClock:
    """Block height and timestamp shared by the ledger and its vaults.

    Only the driver (tests, simulation) advances it; nothing inside a
    ledger call can move time.
    """
    def __init__(self, block_number: int = 0, timestamp: int = 0, seconds_per_block: int = 3) -> None:
        self.block_number = require_uint(block_number, "block_number")
        self.timestamp = require_uint(timestamp, "timestamp")
        self.seconds_per_block = require_uint(seconds_per_block, "seconds_per_block")

    def mine(self, blocks: int = 1) -> int:
        require_uint(blocks, "blocks")
        self.block_number += blocks
        self.timestamp += blocks * self.seconds_per_block
        return self.block_number

    def warp(self, seconds: int) -> int:
        """Move wall-clock time forward without producing blocks."""
        self.timestamp += require_uint(seconds, "seconds")
        return self.timestamp


# -----------------------------
# Gates
# -----------------------------
class AccessGate:
    def __init__(self, governance: str) -> None:
        self.governance = require_address(governance)

    def is_authorized(self, caller: Optional[str]) -> bool:
        return caller is not None and caller == self.governance

    def require(self, caller: Optional[str]) -> None:
        if not self.is_authorized(caller):
            raise Unauthorized(f"{caller} is not governance")

    def transfer(self, caller: str, new_governance: str) -> None:
        self.require(caller)
        self.governance = require_address(new_governance)

class PauseGate:
    def __init__(self, access: AccessGate, paused: bool = False) -> None:
        self.access = access
        self.paused = paused

    def is_paused(self) -> bool:
        return self.paused

    def require_not_paused(self) -> None:
        if self.paused:
            raise Paused()

    def pause(self, caller: str) -> None:
        self.access.require(caller)
        self.paused = True

    def unpause(self, caller: str) -> None:
        self.access.require(caller)
        self.paused = False


def nonreentrant(fn):
    """Reject a call into the decorated method while the same object is
    already inside any of its guarded methods (via a token receive hook)."""
    @functools.wraps(fn)
    def guarded(self, *args, **kwargs):
        if self._entered:
            raise ReentrantCall(f"{fn.__name__} re-entered while a guarded call is running")
        self._entered = True
        try:
            return fn(self, *args, **kwargs)
        finally:
            self._entered = False
    return guarded


_capability_ids = itertools.count(1)

@dataclass(frozen=True, eq=False)
class Capability:
    """Unforgeable handle proving a call comes from a specific ledger.

    Vaults compare capabilities by identity, so holding the address string
    alone is not enough to drive a vault.
    """
    holder: str
    cap_id: int = field(default_factory=lambda: next(_capability_ids))


# -----------------------------
# Fungible asset
# -----------------------------
TransferHook = Callable[["Token", str, int], None]

class Token:
    """In-memory fungible asset with balances and allowances.

    Every failure raises; a transfer never silently moves less than asked.
    A receive hook registered for an account runs after that account is
    credited, which is how tests reproduce callback re-entrancy.
    """
    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}
        self.total_supply: int = 0
        self.receive_hooks: Dict[str, TransferHook] = {}

    def __repr__(self) -> str:
        return f"Token({self.symbol!r})"

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 0)

    def mint(self, to: str, amount: int) -> None:
        require_address(to)
        require_uint(amount, "amount")
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount

    def approve(self, owner: str, spender: str, amount: int) -> None:
        require_address(owner)
        require_address(spender)
        self.allowances[(owner, spender)] = require_uint(amount, "amount")

    def transfer(self, sender: str, to: str, amount: int) -> None:
        require_address(to)
        require_uint(amount, "amount")
        have = self.balance_of(sender)
        if have < amount:
            raise InsufficientBalance(f"{self.symbol}: {sender} has {have}, needs {amount}")
        self.balances[sender] = have - amount
        self.balances[to] = self.balance_of(to) + amount
        hook = self.receive_hooks.get(to)
        if hook is not None and amount > 0:
            hook(self, sender, amount)

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> None:
        require_uint(amount, "amount")
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise InsufficientAllowance(f"{self.symbol}: {spender} may move {allowed} of {owner}, needs {amount}")
        self.allowances[(owner, spender)] = allowed - amount
        self.transfer(owner, to, amount)

    def snapshot(self) -> tuple:
        return dict(self.balances), dict(self.allowances), self.total_supply

    def restore(self, snap: tuple) -> None:
        balances, allowances, total_supply = snap
        self.balances = dict(balances)
        self.allowances = dict(allowances)
        self.total_supply = total_supply


# -----------------------------
# Receipts
# -----------------------------
@dataclass
class ActionReceipt:
    block: int
    action: str
    pool_id: int
    user: str
    reward_paid: int = 0
    amount_in: int = 0
    amount_out: int = 0
    shares_delta: int = 0

    def to_dict(self) -> dict:
        return {
            "block": self.block,
            "action": self.action,
            "pool_id": self.pool_id,
            "user": self.user,
            "reward_paid": int(self.reward_paid),
            "amount_in": int(self.amount_in),
            "amount_out": int(self.amount_out),
            "shares_delta": int(self.shares_delta),
        }

class ReceiptStore:
    def __init__(self) -> None:
        self.receipts: List[ActionReceipt] = []

    def add(self, r: ActionReceipt) -> None:
        self.receipts.append(r)

    def tail(self, n: int = 200) -> List[ActionReceipt]:
        return self.receipts[-n:]
