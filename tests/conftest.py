import itertools

import pytest

from farm.core import ChainClock, Token
from farm.ledger import UNBOUNDED, RewardLedger
from farm.vault import FeeVault

GOV = "gov"
TREASURY = "treasury"
FEES = "fees"
LEDGER = "ledger"
HOUR = 3600

_vault_ids = itertools.count(1)


@pytest.fixture
def clock():
    return ChainClock(block_number=100, timestamp=1_000_000, seconds_per_block=3)


@pytest.fixture
def reward():
    return Token("FARM")


@pytest.fixture
def ledger(clock, reward):
    reward.mint(TREASURY, 10**12)
    reward.approve(TREASURY, LEDGER, UNBOUNDED)
    return RewardLedger(LEDGER, reward, clock, GOV, TREASURY, reward_per_block=100)


@pytest.fixture
def make_vault(ledger, clock):
    def _make(asset, entrance_fee_bps=30, exit_fee_bps=10, cooldown=72 * HOUR, owner=None):
        return FeeVault(
            address=f"vault_{next(_vault_ids):04d}:{asset.symbol}",
            asset=asset,
            owner=owner or ledger.owner_capability(),
            clock=clock,
            governance=GOV,
            fee_receiver=FEES,
            entrance_fee_bps=entrance_fee_bps,
            exit_fee_bps=exit_fee_bps,
            fee_cooldown_seconds=cooldown,
        )
    return _make


@pytest.fixture
def make_pool(ledger, make_vault):
    def _make(symbol="LP", weight=100, asset=None, **vault_kwargs):
        asset = asset or Token(symbol)
        vault = make_vault(asset, **vault_kwargs)
        pool_id = ledger.add_pool(GOV, weight, asset, vault)
        return pool_id, asset, vault
    return _make


@pytest.fixture
def fund():
    def _fund(token, user, amount):
        token.mint(user, amount)
        token.approve(user, LEDGER, UNBOUNDED)
    return _fund
