from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
import logging

from .core import (
    AccessGate,
    ActionReceipt,
    Capability,
    ChainClock,
    Event,
    EventLog,
    ReceiptStore,
    Token,
    format_balances,
    nonreentrant,
    require_address,
)
from .errors import (
    DuplicatePool,
    EmptyPool,
    InvalidPool,
    NothingToWithdraw,
    ProtectedAsset,
    VaultMismatch,
    ZeroAmount,
)
from .fixedpoint import AccPerShare, clamp, mul_div, require_uint
from .vault import FeeVault

logger = logging.getLogger(__name__)

UNBOUNDED = 2**256 - 1


@dataclass
class PoolInfo:
    pool_id: int
    asset: Token
    vault: FeeVault
    allocation_weight: int
    last_settled_block: int
    acc_reward_per_share: AccPerShare = AccPerShare()

@dataclass
class UserPosition:
    shares: int = 0
    reward_baseline: int = 0


class RewardLedger:
    """Multi-pool reward accumulator.

    Emits ``reward_per_block`` units of ``reward_token`` split across pools by
    allocation weight. Each pool keeps ``acc_reward_per_share`` (scaled by
    1e12); a user's pending reward is ``shares * acc / 1e12 - reward_baseline``.
    Reward is pulled from ``funding_source`` lazily, when a pool is settled.

    Public state-changing calls are all-or-nothing: on any exception the
    ledger, its vaults and every token it touches are rolled back, and no
    events or receipts from the failed call are kept.
    """
    def __init__(
        self,
        address: str,
        reward_token: Token,
        clock: ChainClock,
        governance: str,
        funding_source: str,
        reward_per_block: int,
        start_block: int = 0,
        event_log_maxlen: Optional[int] = None,
    ) -> None:
        self.address = require_address(address)
        self._capability = Capability(self.address)
        self.reward_token = reward_token
        self.clock = clock
        self.access = AccessGate(governance)
        self.funding_source = require_address(funding_source)
        self.reward_per_block = require_uint(reward_per_block, "reward_per_block")
        self.start_block = require_uint(start_block, "start_block")

        self.pools: List[PoolInfo] = []
        self.positions: Dict[Tuple[int, str], UserPosition] = {}
        self.total_allocation_weight: int = 0

        self.log = EventLog(maxlen=event_log_maxlen)
        self.receipts = ReceiptStore()
        self.debug_ledger: bool = False

        self._entered = False
        self._tx_depth = 0
        self._tx_events: List[Event] = []
        self._tx_receipts: List[ActionReceipt] = []

    # -----------------------------
    # Transactions
    # -----------------------------
    def _tokens(self, extra: Iterable[Token] = ()) -> List[Token]:
        seen: Dict[int, Token] = {id(self.reward_token): self.reward_token}
        for p in self.pools:
            seen.setdefault(id(p.asset), p.asset)
        for t in extra:
            seen.setdefault(id(t), t)
        return list(seen.values())

    def _snapshot(self) -> tuple:
        return (
            len(self.pools),
            [(p.allocation_weight, p.last_settled_block, p.acc_reward_per_share) for p in self.pools],
            {k: (pos.shares, pos.reward_baseline) for k, pos in self.positions.items()},
            self.total_allocation_weight,
            self.reward_per_block,
            self.funding_source,
            self.access.governance,
        )

    def _restore(self, snap: tuple) -> None:
        n_pools, pool_state, positions, total_weight, rate, funding, governance = snap
        del self.pools[n_pools:]
        for p, (weight, last_block, acc) in zip(self.pools, pool_state):
            p.allocation_weight = weight
            p.last_settled_block = last_block
            p.acc_reward_per_share = acc
        self.positions = {k: UserPosition(s, b) for k, (s, b) in positions.items()}
        self.total_allocation_weight = total_weight
        self.reward_per_block = rate
        self.funding_source = funding
        self.access.governance = governance

    @contextmanager
    def _transaction(self, extra_tokens: Iterable[Token] = ()) -> Iterator[None]:
        if self._tx_depth > 0:
            yield
            return
        tokens = self._tokens(extra_tokens)
        vaults = [p.vault for p in self.pools]
        snap = (
            self._snapshot(),
            [(v, v.snapshot()) for v in vaults],
            [(t, t.snapshot()) for t in tokens],
        )
        self._tx_depth += 1
        try:
            yield
        except BaseException:
            ledger_snap, vault_snaps, token_snaps = snap
            for t, s in token_snaps:
                t.restore(s)
            for v, s in vault_snaps:
                v.restore(s)
            self._restore(ledger_snap)
            raise
        else:
            self.log.extend(self._tx_events)
            for r in self._tx_receipts:
                self.receipts.add(r)
        finally:
            self._tx_depth -= 1
            self._tx_events = []
            self._tx_receipts = []

    def _emit(self, event_type: str, **kwargs) -> None:
        e = Event(self.clock.block_number, event_type, **kwargs)
        if self._tx_depth > 0:
            self._tx_events.append(e)
        else:
            self.log.add(e)

    def _record(self, receipt: ActionReceipt) -> ActionReceipt:
        self._tx_receipts.append(receipt)
        return receipt

    def _debug_balances(self, action: str, pool: PoolInfo, user: str) -> None:
        if not self.debug_ledger or not logger.isEnabledFor(logging.DEBUG):
            return
        pos = self.positions.get((pool.pool_id, user), UserPosition())
        logger.debug(
            "[LEDGER] pool=%d asset=%s action=%s user=%s shares=%d baseline=%d acc=%d reward_balances={ %s }",
            pool.pool_id,
            pool.asset.symbol,
            action,
            user,
            pos.shares,
            pos.reward_baseline,
            pool.acc_reward_per_share.raw,
            format_balances({
                user: self.reward_token.balance_of(user),
                self.address: self.reward_token.balance_of(self.address),
            }),
        )

    # -----------------------------
    # Views
    # -----------------------------
    def owner_capability(self) -> Capability:
        """Handle a vault must be built with before ``add_pool`` accepts it."""
        return self._capability

    def pool_length(self) -> int:
        return len(self.pools)

    def _pool(self, pool_id: int) -> PoolInfo:
        if not isinstance(pool_id, int) or pool_id < 0 or pool_id >= len(self.pools):
            raise InvalidPool(f"pool {pool_id} does not exist ({len(self.pools)} pools)")
        return self.pools[pool_id]

    def pool_info(self, pool_id: int) -> PoolInfo:
        return self._pool(pool_id)

    def user_info(self, pool_id: int, user: str) -> UserPosition:
        self._pool(pool_id)
        pos = self.positions.get((pool_id, user))
        if pos is None:
            return UserPosition()
        return UserPosition(pos.shares, pos.reward_baseline)

    def staked_amount(self, pool_id: int, user: str) -> int:
        """Asset units the user's shares currently redeem for, before exit fee."""
        pool = self._pool(pool_id)
        pos = self.positions.get((pool_id, user))
        if pos is None:
            return 0
        return mul_div(pos.shares, pool.vault.asset_locked_total, pool.vault.shares_total)

    def user_shares_total(self, pool_id: int) -> int:
        self._pool(pool_id)
        return sum(pos.shares for (pid, _), pos in self.positions.items() if pid == pool_id)

    def _pool_reward(self, pool: PoolInfo, elapsed: int) -> int:
        if self.total_allocation_weight == 0:
            return 0
        return elapsed * self.reward_per_block * pool.allocation_weight // self.total_allocation_weight

    def _projected_acc(self, pool: PoolInfo) -> AccPerShare:
        now = self.clock.block_number
        shares_total = pool.vault.shares_total
        if now <= pool.last_settled_block or shares_total == 0:
            return pool.acc_reward_per_share
        reward = self._pool_reward(pool, now - pool.last_settled_block)
        return pool.acc_reward_per_share.accrue(reward, shares_total)

    def pending(self, pool_id: int, user: str) -> int:
        pool = self._pool(pool_id)
        pos = self.positions.get((pool_id, user))
        if pos is None:
            return 0
        return self._projected_acc(pool).pending(pos.shares, pos.reward_baseline)

    # -----------------------------
    # Settlement
    # -----------------------------
    def _settle(self, pool: PoolInfo) -> None:
        now = self.clock.block_number
        if now <= pool.last_settled_block:
            return
        shares_total = pool.vault.shares_total
        if shares_total == 0:
            pool.last_settled_block = now
            return
        reward = self._pool_reward(pool, now - pool.last_settled_block)
        if reward > 0:
            self.reward_token.transfer_from(self.address, self.funding_source, self.address, reward)
            pool.acc_reward_per_share = pool.acc_reward_per_share.accrue(reward, shares_total)
        pool.last_settled_block = now

    def settle(self, pool_id: int) -> None:
        pool = self._pool(pool_id)
        with self._transaction():
            self._settle(pool)

    def mass_update_pools(self) -> None:
        with self._transaction():
            for pool in self.pools:
                self._settle(pool)

    def _pay_reward(self, pool: PoolInfo, user: str, owed: int) -> int:
        if owed == 0:
            return 0
        paid = clamp(owed, self.reward_token.balance_of(self.address), "reward payout vs ledger reward balance")
        if paid > 0:
            self.reward_token.transfer(self.address, user, paid)
        self._emit("REWARD_PAID", actor_id=user, pool_id=pool.pool_id,
                   asset_id=self.reward_token.symbol, amount=paid)
        return paid

    def _harvest(self, pool: PoolInfo, pos: UserPosition, user: str) -> int:
        self._settle(pool)
        if pos.shares == 0:
            return 0
        return self._pay_reward(pool, user, pool.acc_reward_per_share.pending(pos.shares, pos.reward_baseline))

    def _reset_baseline(self, pool: PoolInfo, pos: UserPosition) -> None:
        pos.reward_baseline = pool.acc_reward_per_share.value_of(pos.shares)

    def _redeem(self, pool: PoolInfo, user: str, amount: int) -> Tuple[int, int]:
        """Pull ``amount`` out of the pool's vault and forward it to ``user``.

        Returns ``(shares_removed, paid_out)``. The payout never exceeds what
        the vault actually sent back, so exit fees stay with the fee receiver
        even when the staked asset is the reward asset.
        """
        before = pool.asset.balance_of(self.address)
        shares_removed = pool.vault.withdraw(self._capability, user, amount)
        received = pool.asset.balance_of(self.address) - before
        payout = shares_removed if pool.asset is self.reward_token else amount
        payout = min(payout, received)
        payout = clamp(payout, pool.asset.balance_of(self.address), "withdraw payout vs ledger balance")
        if payout > 0:
            pool.asset.transfer(self.address, user, payout)
        return shares_removed, payout

    # -----------------------------
    # User flows
    # -----------------------------
    @nonreentrant
    def deposit(self, pool_id: int, user: str, amount: int) -> ActionReceipt:
        require_address(user)
        require_uint(amount, "amount")
        if amount == 0:
            raise ZeroAmount()
        pool = self._pool(pool_id)
        with self._transaction():
            pos = self.positions.setdefault((pool_id, user), UserPosition())
            reward = self._harvest(pool, pos, user)
            shares_added = 0
            if amount > 0:
                pool.asset.transfer_from(self.address, user, self.address, amount)
                pool.asset.approve(self.address, pool.vault.address, amount)
                shares_added = pool.vault.deposit(self._capability, user, amount)
                pos.shares += shares_added
            self._reset_baseline(pool, pos)
            self._emit("DEPOSIT", actor_id=user, pool_id=pool_id, asset_id=pool.asset.symbol,
                       amount=amount, meta={"shares_added": shares_added})
            self._debug_balances("deposit", pool, user)
            return self._record(ActionReceipt(
                block=self.clock.block_number, action="deposit", pool_id=pool_id, user=user,
                reward_paid=reward, amount_in=amount, shares_delta=shares_added,
            ))

    @nonreentrant
    def withdraw(self, pool_id: int, user: str, amount: int) -> ActionReceipt:
        """Withdraw up to ``amount`` of the staked asset, harvesting rewards first.

        ``amount`` is capped at what the user's shares redeem for, so a zero
        amount only harvests and an oversized amount withdraws everything.
        """
        require_address(user)
        require_uint(amount, "amount")
        pool = self._pool(pool_id)
        pos = self.positions.get((pool_id, user))
        if pos is None or pos.shares == 0:
            raise NothingToWithdraw(f"{user} has no shares in pool {pool_id}")
        if pool.vault.shares_total == 0:
            raise EmptyPool(f"pool {pool_id} vault holds no shares")
        with self._transaction():
            reward = self._harvest(pool, pos, user)
            vault = pool.vault
            redeemable = mul_div(pos.shares, vault.asset_locked_total, vault.shares_total)
            amount = min(amount, redeemable)
            shares_removed = 0
            paid_out = 0
            if amount > 0:
                shares_removed, paid_out = self._redeem(pool, user, amount)
                pos.shares -= clamp(shares_removed, pos.shares, f"pool {pool_id} shares removed vs user shares")
            self._reset_baseline(pool, pos)
            self._emit("WITHDRAW", actor_id=user, pool_id=pool_id, asset_id=pool.asset.symbol,
                       amount=amount, meta={"shares_removed": shares_removed, "paid_out": paid_out})
            self._debug_balances("withdraw", pool, user)
            return self._record(ActionReceipt(
                block=self.clock.block_number, action="withdraw", pool_id=pool_id, user=user,
                reward_paid=reward, amount_out=paid_out, shares_delta=-shares_removed,
            ))

    def withdraw_all(self, pool_id: int, user: str) -> ActionReceipt:
        return self.withdraw(pool_id, user, UNBOUNDED)

    def _claim(self, pool: PoolInfo, user: str) -> ActionReceipt:
        pos = self.positions.get((pool.pool_id, user))
        reward = 0
        if pos is None:
            self._settle(pool)
        else:
            reward = self._harvest(pool, pos, user)
            self._reset_baseline(pool, pos)
        self._debug_balances("claim", pool, user)
        return self._record(ActionReceipt(
            block=self.clock.block_number, action="claim", pool_id=pool.pool_id, user=user,
            reward_paid=reward,
        ))

    @nonreentrant
    def claim_reward(self, pool_id: int, user: str) -> ActionReceipt:
        require_address(user)
        pool = self._pool(pool_id)
        with self._transaction():
            return self._claim(pool, user)

    @nonreentrant
    def claim_reward_batch(self, pool_ids: Iterable[int], user: str) -> List[ActionReceipt]:
        require_address(user)
        pools = [self._pool(pid) for pid in pool_ids]
        with self._transaction():
            return [self._claim(pool, user) for pool in pools]

    @nonreentrant
    def emergency_withdraw(self, pool_id: int, user: str) -> ActionReceipt:
        """Withdraw the whole position without touching rewards.

        Pending reward is forfeited. Shares and baseline are zeroed even if the
        vault returns less than the position was worth.
        """
        require_address(user)
        pool = self._pool(pool_id)
        with self._transaction():
            pos = self.positions.get((pool_id, user))
            shares = pos.shares if pos is not None else 0
            vault = pool.vault
            amount = mul_div(shares, vault.asset_locked_total, vault.shares_total)
            shares_removed = 0
            paid_out = 0
            if amount > 0:
                shares_removed, paid_out = self._redeem(pool, user, amount)
            if pos is not None:
                pos.shares = 0
                pos.reward_baseline = 0
            self._emit("EMERGENCY_WITHDRAW", actor_id=user, pool_id=pool_id, asset_id=pool.asset.symbol,
                       amount=amount, meta={"shares_removed": shares_removed, "paid_out": paid_out,
                                            "shares_forfeited": shares})
            self._debug_balances("emergency_withdraw", pool, user)
            return self._record(ActionReceipt(
                block=self.clock.block_number, action="emergency_withdraw", pool_id=pool_id, user=user,
                amount_out=paid_out, shares_delta=-shares,
            ))

    # -----------------------------
    # Governance
    # -----------------------------
    def add_pool(self, caller: str, weight: int, asset: Token, vault: FeeVault, with_update: bool = True) -> int:
        self.access.require(caller)
        require_uint(weight, "weight")
        if vault.asset is not asset:
            raise VaultMismatch(f"{vault.address} holds {vault.asset.symbol}, not {asset.symbol}")
        if not vault.is_owned_by(self._capability):
            raise VaultMismatch(f"{vault.address} is not owned by {self.address}")
        if any(p.vault is vault and p.asset is asset for p in self.pools):
            raise DuplicatePool(f"{asset.symbol} via {vault.address} already has a pool")
        with self._transaction(extra_tokens=[asset]):
            if with_update:
                for pool in self.pools:
                    self._settle(pool)
            pool_id = len(self.pools)
            vault.debug_ledger = self.debug_ledger
            self.pools.append(PoolInfo(
                pool_id=pool_id,
                asset=asset,
                vault=vault,
                allocation_weight=weight,
                last_settled_block=max(self.clock.block_number, self.start_block),
            ))
            self.total_allocation_weight += weight
            self._emit("POOL_ADDED", actor_id=caller, pool_id=pool_id, asset_id=asset.symbol,
                       amount=weight, meta={"vault": vault.address})
        logger.info("pool %d added asset=%s vault=%s weight=%d", pool_id, asset.symbol, vault.address, weight)
        return pool_id

    def set_pool_weight(self, caller: str, pool_id: int, weight: int, with_update: bool = True) -> None:
        self.access.require(caller)
        require_uint(weight, "weight")
        pool = self._pool(pool_id)
        with self._transaction():
            if with_update:
                for p in self.pools:
                    self._settle(p)
            old = pool.allocation_weight
            self.total_allocation_weight = self.total_allocation_weight - old + weight
            pool.allocation_weight = weight
            self._emit("POOL_WEIGHT_SET", actor_id=caller, pool_id=pool_id, amount=weight, meta={"previous": old})
        logger.info("pool %d weight %d -> %d (total %d)", pool_id, old, weight, self.total_allocation_weight)

    def set_reward_per_block(self, caller: str, reward_per_block: int) -> None:
        self.access.require(caller)
        require_uint(reward_per_block, "reward_per_block")
        with self._transaction():
            for p in self.pools:
                self._settle(p)
            old = self.reward_per_block
            self.reward_per_block = reward_per_block
            self._emit("REWARD_RATE_SET", actor_id=caller, asset_id=self.reward_token.symbol,
                       amount=reward_per_block, meta={"previous": old})
        logger.info("reward per block %d -> %d", old, reward_per_block)

    def set_funding_source(self, caller: str, funding_source: str) -> None:
        self.access.require(caller)
        require_address(funding_source)
        with self._transaction():
            self.funding_source = funding_source
            self._emit("FUNDING_SOURCE_SET", actor_id=caller, meta={"funding_source": funding_source})

    def set_governance(self, caller: str, governance: str) -> None:
        with self._transaction():
            self.access.transfer(caller, governance)
            self._emit("GOVERNANCE_SET", actor_id=caller, meta={"governance": governance})

    def recover_stray_asset(self, caller: str, token: Token, amount: int, to: str) -> None:
        """Send non-reward tokens the ledger holds by mistake to ``to``."""
        self.access.require(caller)
        if token is self.reward_token:
            raise ProtectedAsset(f"{token.symbol} is the reward asset")
        require_address(to)
        with self._transaction(extra_tokens=[token]):
            token.transfer(self.address, to, amount)
            self._emit("STRAY_RECOVERED", actor_id=caller, asset_id=token.symbol, amount=amount, meta={"to": to})
