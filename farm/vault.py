from __future__ import annotations
from typing import Dict, Optional
import logging

from .core import AccessGate, Capability, ChainClock, PauseGate, Token, nonreentrant, require_address
from .errors import FeeTooHigh, NotVaultOwner, ProtectedAsset, ZeroAmount
from .fixedpoint import MAX_FEE_BPS, bps_of, clamp, require_uint

logger = logging.getLogger(__name__)

DEFAULT_FEE_COOLDOWN = 72 * 3600


class FeeVault:
    """Per-pool custody that converts raw asset amounts into shares.

    Deposits pay an entrance fee that never enters the pool totals. Withdrawals
    pay an exit fee while the user's last deposit is younger than the cooldown.
    Only the ledger holding ``owner`` may move funds in or out.

    ``shares_total`` and ``asset_locked_total`` are kept at strict parity:
    both grow by ``shares_added`` and both shrink by the same withdrawn amount.
    """
    def __init__(
        self,
        address: str,
        asset: Token,
        owner: Capability,
        clock: ChainClock,
        governance: str,
        fee_receiver: str,
        entrance_fee_bps: int = 0,
        exit_fee_bps: int = 0,
        fee_cooldown_seconds: int = DEFAULT_FEE_COOLDOWN,
    ) -> None:
        self.address = require_address(address)
        self.asset = asset
        self.clock = clock
        self.access = AccessGate(governance)
        self.pause_gate = PauseGate(self.access)
        self.fee_receiver = require_address(fee_receiver)
        self.entrance_fee_bps = self._checked_fee(entrance_fee_bps)
        self.exit_fee_bps = self._checked_fee(exit_fee_bps)
        self.fee_cooldown_seconds = require_uint(fee_cooldown_seconds, "fee_cooldown_seconds")
        self._owner = owner

        self.shares_total: int = 0
        self.asset_locked_total: int = 0
        self.last_deposit_time: Dict[str, int] = {}
        self.debug_ledger: bool = False
        self._entered = False

    def __repr__(self) -> str:
        return f"FeeVault({self.address!r}, asset={self.asset.symbol!r})"

    @property
    def owner(self) -> str:
        return self._owner.holder

    def is_owned_by(self, cap: Capability) -> bool:
        return cap is self._owner

    def _require_owner(self, cap: Optional[Capability]) -> None:
        if cap is None or cap is not self._owner:
            raise NotVaultOwner(f"{self.address} is owned by {self._owner.holder}")

    @staticmethod
    def _checked_fee(bps: int) -> int:
        require_uint(bps, "fee_bps")
        if bps > MAX_FEE_BPS:
            raise FeeTooHigh(f"{bps} bps exceeds ceiling of {MAX_FEE_BPS}")
        return bps

    def _debug_totals(self, action: str, user: str, amount: int, fee: int) -> None:
        if not self.debug_ledger or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[VAULT] vault=%s action=%s user=%s amount=%d fee=%d shares_total=%d locked=%d balance=%d",
            self.address,
            action,
            user,
            amount,
            fee,
            self.shares_total,
            self.asset_locked_total,
            self.asset.balance_of(self.address),
        )

    # -----------------------------
    # Views
    # -----------------------------
    def balance(self) -> int:
        return self.asset.balance_of(self.address)

    def in_fee_window(self, user: str) -> bool:
        last = self.last_deposit_time.get(user)
        if last is None:
            return False
        return self.clock.timestamp <= last + self.fee_cooldown_seconds

    def quote_exit_fee(self, user: str, amount: int) -> int:
        return bps_of(amount, self.exit_fee_bps) if self.in_fee_window(user) else 0

    # -----------------------------
    # Owner-only flows
    # -----------------------------
    @nonreentrant
    def deposit(self, cap: Capability, user: str, amount: int) -> int:
        self._require_owner(cap)
        self.pause_gate.require_not_paused()
        require_uint(amount, "amount")
        if amount == 0:
            raise ZeroAmount()

        self.asset.transfer_from(self.address, cap.holder, self.address, amount)
        fee = bps_of(amount, self.entrance_fee_bps)
        if fee > 0:
            self.asset.transfer(self.address, self.fee_receiver, fee)
        shares_added = amount - fee

        self.shares_total += shares_added
        self.asset_locked_total += shares_added
        self.last_deposit_time[user] = self.clock.timestamp
        self._debug_totals("deposit", user, amount, fee)
        return shares_added

    @nonreentrant
    def withdraw(self, cap: Capability, user: str, amount: int) -> int:
        """Release up to ``amount`` to the owning ledger and return the shares removed.

        The ledger receives the amount minus the exit fee, or the full amount
        once the user's cooldown has elapsed.
        """
        self._require_owner(cap)
        require_uint(amount, "amount")
        amount = clamp(amount, self.balance(), f"{self.address} withdraw vs balance")
        amount = clamp(amount, self.asset_locked_total, f"{self.address} withdraw vs locked")
        amount = clamp(amount, self.shares_total, f"{self.address} withdraw vs shares_total")
        if amount == 0:
            return 0

        self.shares_total -= amount
        self.asset_locked_total -= amount

        fee = self.quote_exit_fee(user, amount)
        if fee > 0:
            self.asset.transfer(self.address, self.fee_receiver, fee)
        self.asset.transfer(self.address, cap.holder, amount - fee)
        self._debug_totals("withdraw", user, amount, fee)
        return amount

    # -----------------------------
    # Governance
    # -----------------------------
    def set_entrance_fee(self, caller: str, bps: int) -> None:
        self.access.require(caller)
        self.entrance_fee_bps = self._checked_fee(bps)

    def set_exit_fee(self, caller: str, bps: int) -> None:
        self.access.require(caller)
        self.exit_fee_bps = self._checked_fee(bps)

    def set_fee_cooldown(self, caller: str, seconds: int) -> None:
        self.access.require(caller)
        self.fee_cooldown_seconds = require_uint(seconds, "fee_cooldown_seconds")

    def set_fee_receiver(self, caller: str, receiver: str) -> None:
        self.access.require(caller)
        self.fee_receiver = require_address(receiver)

    def set_governance(self, caller: str, governance: str) -> None:
        self.access.transfer(caller, governance)

    def pause(self, caller: str) -> None:
        self.pause_gate.pause(caller)

    def unpause(self, caller: str) -> None:
        self.pause_gate.unpause(caller)

    def recover_stray(self, caller: str, token: Token, amount: int, to: str) -> None:
        """Send tokens that were transferred to the vault by mistake."""
        self.access.require(caller)
        if token is self.asset:
            raise ProtectedAsset(f"{token.symbol} is the staked asset of {self.address}")
        token.transfer(self.address, to, amount)

    # -----------------------------
    # Transactions
    # -----------------------------
    def snapshot(self) -> tuple:
        return (
            self.shares_total,
            self.asset_locked_total,
            dict(self.last_deposit_time),
            self.entrance_fee_bps,
            self.exit_fee_bps,
            self.fee_cooldown_seconds,
            self.fee_receiver,
            self.pause_gate.paused,
            self.access.governance,
        )

    def restore(self, snap: tuple) -> None:
        (
            self.shares_total,
            self.asset_locked_total,
            last_deposit_time,
            self.entrance_fee_bps,
            self.exit_fee_bps,
            self.fee_cooldown_seconds,
            self.fee_receiver,
            self.pause_gate.paused,
            self.access.governance,
        ) = snap
        self.last_deposit_time = dict(last_deposit_time)
