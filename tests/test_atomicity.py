"""
Tests for all-or-nothing calls, funding shortfalls and re-entrancy.
"""

import pytest

from conftest import FEES, GOV, LEDGER, TREASURY
from farm.errors import InsufficientAllowance, InsufficientBalance, Paused, ReentrantCall


def _state(ledger, pid, user, *tokens):
    pool = ledger.pool_info(pid)
    return (
        pool.acc_reward_per_share,
        pool.last_settled_block,
        ledger.user_info(pid, user),
        pool.vault.snapshot(),
        [t.snapshot() for t in tokens],
        len(ledger.log.events),
        len(ledger.receipts.receipts),
    )


class TestFundingShortfall:

    @pytest.fixture
    def staked(self, ledger, make_pool, fund, clock):
        pid, lp, vault = make_pool(entrance_fee_bps=0)
        fund(lp, "alice", 2000)
        ledger.deposit(pid, "alice", 1000)
        ledger.set_funding_source(GOV, "empty_treasury")
        clock.mine(10)
        return pid, lp, vault

    def test_claim_aborts_without_partial_payment(self, ledger, staked, reward):
        pid, lp, _ = staked
        before = _state(ledger, pid, "alice", reward, lp)
        with pytest.raises(InsufficientAllowance):
            ledger.claim_reward(pid, "alice")
        assert _state(ledger, pid, "alice", reward, lp) == before
        assert reward.balance_of("alice") == 0

    def test_deposit_blocked_until_funded(self, ledger, staked, reward):
        pid, lp, _ = staked
        with pytest.raises(InsufficientAllowance):
            ledger.deposit(pid, "alice", 500)
        assert lp.balance_of("alice") == 1000

        reward.mint("empty_treasury", 500)
        reward.approve("empty_treasury", LEDGER, 10**9)
        with pytest.raises(InsufficientBalance):
            ledger.deposit(pid, "alice", 500)

        ledger.set_funding_source(GOV, TREASURY)
        receipt = ledger.deposit(pid, "alice", 500)
        assert receipt.reward_paid == 1000

    def test_emergency_withdraw_still_available(self, ledger, staked, reward):
        pid, lp, vault = staked
        receipt = ledger.emergency_withdraw(pid, "alice")
        assert receipt.amount_out == 1000 - 1
        assert lp.balance_of("alice") == 2000 - 1
        assert reward.balance_of("alice") == 0
        assert vault.shares_total == 0


class TestRollback:

    def test_paused_vault_rolls_back_harvest(self, ledger, make_pool, fund, reward, clock):
        pid, lp, vault = make_pool()
        fund(lp, "alice", 2000)
        ledger.deposit(pid, "alice", 1000)
        clock.mine(10)
        vault.pause(GOV)
        before = _state(ledger, pid, "alice", reward, lp)
        treasury_before = reward.balance_of(TREASURY)

        with pytest.raises(Paused):
            ledger.deposit(pid, "alice", 1000)

        # the settlement and reward payment that ran before the vault refused are undone
        assert _state(ledger, pid, "alice", reward, lp) == before
        assert reward.balance_of(TREASURY) == treasury_before
        assert ledger.log.of_type("REWARD_PAID") == []

    def test_failed_first_deposit_leaves_no_position(self, ledger, make_pool, fund):
        pid, lp, _ = make_pool()
        fund(lp, "alice", 10)
        with pytest.raises(InsufficientBalance):
            ledger.deposit(pid, "alice", 11)
        assert (pid, "alice") not in ledger.positions

    def test_failed_batch_keeps_earlier_claims_unpaid(self, ledger, make_pool, fund, reward, clock):
        pid_a, lp_a, _ = make_pool("LP-A")
        pid_b, lp_b, _ = make_pool("LP-B")
        fund(lp_a, "alice", 1000)
        fund(lp_b, "alice", 1000)
        ledger.deposit(pid_a, "alice", 1000)
        ledger.deposit(pid_b, "alice", 1000)
        clock.mine(5)
        reward.approve(TREASURY, LEDGER, 0)
        with pytest.raises(InsufficientAllowance):
            ledger.claim_reward_batch([pid_a, pid_b], "alice")
        assert reward.balance_of("alice") == 0
        assert len(ledger.receipts.receipts) == 2


class TestReentrancy:

    def test_reward_hook_cannot_claim_again(self, ledger, make_pool, fund, reward, clock):
        pid, lp, _ = make_pool()
        fund(lp, "alice", 1000)
        ledger.deposit(pid, "alice", 1000)
        clock.mine(10)
        calls = []

        def hook(token, sender, amount):
            calls.append(amount)
            ledger.claim_reward(pid, "alice")

        reward.receive_hooks["alice"] = hook
        quoted = ledger.pending(pid, "alice")
        with pytest.raises(ReentrantCall):
            ledger.claim_reward(pid, "alice")
        assert calls == [quoted]
        assert reward.balance_of("alice") == 0
        assert ledger.pending(pid, "alice") == quoted

        del reward.receive_hooks["alice"]
        assert ledger.claim_reward(pid, "alice").reward_paid == quoted

    def test_asset_hook_cannot_deposit_during_withdraw(self, ledger, make_pool, fund, clock):
        pid, lp, vault = make_pool(entrance_fee_bps=0, exit_fee_bps=0)
        fund(lp, "alice", 2000)
        ledger.deposit(pid, "alice", 1000)

        def hook(token, sender, amount):
            ledger.deposit(pid, "alice", 1000)

        lp.receive_hooks["alice"] = hook
        with pytest.raises(ReentrantCall):
            ledger.withdraw(pid, "alice", 400)
        assert vault.shares_total == 1000
        assert ledger.user_info(pid, "alice").shares == 1000
        assert lp.balance_of("alice") == 1000

    def test_fee_receiver_hook_cannot_drive_vault(self, ledger, make_pool, fund, reward):
        """A hook holding the ledger still cannot move vault shares mid-withdraw."""
        pid, lp, vault = make_pool(exit_fee_bps=50)
        for user in ("alice", "bob"):
            fund(lp, user, 1000)
            ledger.deposit(pid, user, 1000)
        before = _state(ledger, pid, "bob", reward, lp)

        def hook(token, sender, amount):
            vault.withdraw(ledger.owner_capability(), "bob", 500)

        lp.receive_hooks[FEES] = hook
        with pytest.raises(ReentrantCall):
            ledger.withdraw(pid, "alice", 1000)
        assert _state(ledger, pid, "bob", reward, lp) == before
        assert vault.shares_total == ledger.user_shares_total(pid) == 1994
        assert vault.asset_locked_total == 1994

        del lp.receive_hooks[FEES]
        assert ledger.withdraw(pid, "alice", 1000).amount_out == 997 - 4
        assert vault.shares_total == ledger.user_shares_total(pid) == 997

    def test_guard_released_after_failure(self, ledger, make_pool, fund):
        pid, lp, _ = make_pool()
        fund(lp, "alice", 1000)
        with pytest.raises(InsufficientBalance):
            ledger.deposit(pid, "alice", 5000)
        assert ledger.deposit(pid, "alice", 1000).shares_delta == 997
