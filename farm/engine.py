from __future__ import annotations
from typing import Dict, List, Optional
from collections import Counter
import logging
import numpy as np
import random

from .config import FarmConfig
from .core import ActionReceipt, ChainClock, Event, Token
from .errors import FarmError
from .factory import Farmer, VaultFactory
from .ledger import RewardLedger
from .metrics import MetricsStore

logger = logging.getLogger(__name__)

ACTIONS = ("deposit", "withdraw", "claim", "emergency_withdraw")


class SimulationEngine:
    """Drives a ledger with randomly acting farmers, one block batch per step."""
    def __init__(self, cfg: FarmConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.clock = ChainClock(block_number=0, timestamp=0, seconds_per_block=cfg.seconds_per_block)
        self.reward_token = Token(cfg.reward_symbol)
        self.ledger = RewardLedger(
            address=cfg.ledger_address,
            reward_token=self.reward_token,
            clock=self.clock,
            governance=cfg.governance,
            funding_source=cfg.funding_source,
            reward_per_block=cfg.reward_per_block,
            start_block=cfg.start_block,
            event_log_maxlen=cfg.event_log_maxlen,
        )
        self.ledger.debug_ledger = cfg.debug_ledger
        self.log = self.ledger.log
        self.metrics = MetricsStore()
        self.factory = VaultFactory(cfg, self.ledger, self.clock)

        self.farmers: Dict[str, Farmer] = {}
        self.pool_ids: List[int] = []
        self._reward_paid_by_pool: Dict[int, int] = {}
        self._action_counts: Counter = Counter()
        self._failure_reasons: Counter = Counter()
        self.invariant_violations: List[str] = []

        self._bootstrap()

    def _bootstrap(self) -> None:
        cfg = self.cfg
        self.reward_token.mint(cfg.funding_source, cfg.funding_budget)
        self.reward_token.approve(cfg.funding_source, self.ledger.address, cfg.funding_budget)

        for symbol, weight in zip(cfg.pool_symbols, cfg.pool_weights):
            self.pool_ids.append(self.factory.create_pool(symbol, weight))
        staked_symbols = list(cfg.pool_symbols)
        if cfg.stake_reward_asset:
            self.pool_ids.append(self.factory.create_pool(cfg.reward_symbol, cfg.reward_asset_weight))
            staked_symbols.append(cfg.reward_symbol)

        for _ in range(cfg.num_users):
            balances = {
                symbol: int(max(1.0, np.random.exponential(cfg.user_initial_balance_mean)))
                for symbol in staked_symbols
            }
            farmer = self.factory.create_farmer(balances)
            self.farmers[farmer.user_id] = farmer

        self.snapshot_metrics()

    # -----------------------------
    # Actions
    # -----------------------------
    def _sample_action(self) -> str:
        cfg = self.cfg
        weights = [cfg.p_deposit, cfg.p_withdraw, cfg.p_claim, cfg.p_emergency]
        return self.rng.choices(ACTIONS, weights=weights, k=1)[0]

    def _deposit_amount(self, user_id: str, pool_id: int) -> int:
        balance = self.ledger.pool_info(pool_id).asset.balance_of(user_id)
        frac = min(1.0, float(np.random.exponential(self.cfg.deposit_frac_mean)))
        return int(balance * frac)

    def _withdraw_amount(self, user_id: str, pool_id: int) -> int:
        staked = self.ledger.staked_amount(pool_id, user_id)
        return int(staked * self.rng.random())

    def _record_receipt(self, receipt: ActionReceipt) -> None:
        if receipt.reward_paid:
            self._reward_paid_by_pool[receipt.pool_id] = (
                self._reward_paid_by_pool.get(receipt.pool_id, 0) + receipt.reward_paid
            )

    def run_action(self, action: str, user_id: str, pool_id: int) -> Optional[ActionReceipt]:
        """Run one farmer action; failures are logged as events, never raised."""
        ledger = self.ledger
        try:
            if action == "deposit":
                amount = self._deposit_amount(user_id, pool_id)
                if amount <= 0:
                    return None
                receipt = ledger.deposit(pool_id, user_id, amount)
            elif action == "withdraw":
                receipt = ledger.withdraw(pool_id, user_id, self._withdraw_amount(user_id, pool_id))
            elif action == "claim":
                receipt = ledger.claim_reward(pool_id, user_id)
            elif action == "emergency_withdraw":
                receipt = ledger.emergency_withdraw(pool_id, user_id)
            else:
                raise ValueError(f"unknown action {action!r}")
        except FarmError as exc:
            self._action_counts["failed"] += 1
            self._failure_reasons[exc.reason] += 1
            self.log.add(Event(self.clock.block_number, "ACTION_FAILED", actor_id=user_id, pool_id=pool_id,
                               meta={"action": action, "reason": exc.reason}))
            logger.debug("action %s by %s on pool %d failed: %s", action, user_id, pool_id, exc)
            return None
        self._action_counts[action] += 1
        self._record_receipt(receipt)
        return receipt

    # -----------------------------
    # Invariants / metrics
    # -----------------------------
    def check_invariants(self) -> List[str]:
        violations: List[str] = []
        for pid in self.pool_ids:
            vault = self.ledger.pool_info(pid).vault
            user_total = self.ledger.user_shares_total(pid)
            if user_total != vault.shares_total:
                violations.append(f"pool {pid}: user shares {user_total} != vault shares {vault.shares_total}")
            if vault.shares_total != vault.asset_locked_total:
                violations.append(
                    f"pool {pid}: shares_total {vault.shares_total} != locked {vault.asset_locked_total}"
                )
            if vault.balance() < vault.asset_locked_total:
                violations.append(f"pool {pid}: vault balance {vault.balance()} < locked {vault.asset_locked_total}")
        for msg in violations:
            logger.error("[INVARIANT] block=%d %s", self.clock.block_number, msg)
        self.invariant_violations.extend(violations)
        return violations

    def snapshot_metrics(self) -> None:
        ledger = self.ledger
        block = self.clock.block_number
        pending_total = 0
        pool_rows = []
        for pid in self.pool_ids:
            pool = ledger.pool_info(pid)
            pool_pending = sum(ledger.pending(pid, uid) for uid in self.farmers)
            pending_total += pool_pending
            pool_rows.append({
                "block": block,
                "pool_id": pid,
                "asset": pool.asset.symbol,
                "allocation_weight": pool.allocation_weight,
                "acc_reward_per_share": pool.acc_reward_per_share.raw,
                "last_settled_block": pool.last_settled_block,
                "shares_total": pool.vault.shares_total,
                "asset_locked_total": pool.vault.asset_locked_total,
                "user_shares_total": ledger.user_shares_total(pid),
                "fee_receiver_balance": pool.asset.balance_of(pool.vault.fee_receiver),
                "pending_total": pool_pending,
                "reward_paid_total": self._reward_paid_by_pool.get(pid, 0),
                "stakers": sum(1 for uid in self.farmers if ledger.user_info(pid, uid).shares > 0),
            })
        self.metrics.record({
            "tick": self.tick,
            "block": block,
            "timestamp": self.clock.timestamp,
            "num_pools": ledger.pool_length(),
            "num_users": len(self.farmers),
            "reward_per_block": ledger.reward_per_block,
            "total_allocation_weight": ledger.total_allocation_weight,
            "funding_balance": self.reward_token.balance_of(ledger.funding_source),
            "ledger_reward_balance": self.reward_token.balance_of(ledger.address),
            "reward_paid_total": sum(self._reward_paid_by_pool.values()),
            "pending_total": pending_total,
            "actions_ok": sum(v for k, v in self._action_counts.items() if k != "failed"),
            "actions_failed": self._action_counts["failed"],
        }, pool_rows)

    def failure_reasons(self) -> Dict[str, int]:
        return dict(self._failure_reasons)

    # -----------------------------
    # Driver
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        cfg = self.cfg
        user_ids = list(self.farmers)
        for _ in range(n_ticks):
            self.tick += 1
            self.clock.mine(max(1, cfg.blocks_per_step))
            if user_ids and self.pool_ids:
                for _ in range(cfg.actions_per_block):
                    user_id = self.rng.choice(user_ids)
                    pool_id = self.rng.choice(self.pool_ids)
                    self.run_action(self._sample_action(), user_id, pool_id)
            stride = max(1, int(cfg.metrics_stride or 1))
            if self.tick % stride == 0:
                self.check_invariants()
                self.snapshot_metrics()

    def run(self, n_ticks: int) -> MetricsStore:
        self.step(n_ticks)
        return self.metrics
