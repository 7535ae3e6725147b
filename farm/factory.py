from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import FarmConfig
from .core import ChainClock, Token
from .ledger import UNBOUNDED, RewardLedger
from .vault import FeeVault

@dataclass
class Farmer:
    user_id: str
    initial_balances: Dict[str, int]

class VaultFactory:
    """Creates assets and fee vaults bound to one ledger, then registers them as pools."""
    def __init__(self, cfg: FarmConfig, ledger: RewardLedger, clock: ChainClock) -> None:
        self.cfg = cfg
        self.ledger = ledger
        self.clock = clock
        self.assets: Dict[str, Token] = {cfg.reward_symbol: ledger.reward_token}
        self.vaults: List[FeeVault] = []

        self.user_counter = 0
        self.vault_counter = 0

    def _new_user_id(self) -> str:
        self.user_counter += 1
        return f"user_{self.user_counter:04d}"

    def _new_vault_address(self, symbol: str) -> str:
        self.vault_counter += 1
        return f"vault_{self.vault_counter:04d}:{symbol}"

    def asset(self, symbol: str) -> Token:
        token = self.assets.get(symbol)
        if token is None:
            token = Token(symbol)
            self.assets[symbol] = token
        return token

    def create_vault(
        self,
        symbol: str,
        *,
        entrance_fee_bps: Optional[int] = None,
        exit_fee_bps: Optional[int] = None,
        fee_cooldown_seconds: Optional[int] = None,
    ) -> FeeVault:
        cfg = self.cfg
        vault = FeeVault(
            address=self._new_vault_address(symbol),
            asset=self.asset(symbol),
            owner=self.ledger.owner_capability(),
            clock=self.clock,
            governance=cfg.governance,
            fee_receiver=cfg.fee_receiver,
            entrance_fee_bps=cfg.entrance_fee_bps if entrance_fee_bps is None else entrance_fee_bps,
            exit_fee_bps=cfg.exit_fee_bps if exit_fee_bps is None else exit_fee_bps,
            fee_cooldown_seconds=cfg.fee_cooldown_seconds if fee_cooldown_seconds is None else fee_cooldown_seconds,
        )
        vault.debug_ledger = cfg.debug_ledger
        self.vaults.append(vault)
        return vault

    def create_pool(self, symbol: str, weight: int, **fee_overrides) -> int:
        vault = self.create_vault(symbol, **fee_overrides)
        return self.ledger.add_pool(self.cfg.governance, weight, vault.asset, vault)

    def create_farmer(self, balances: Dict[str, int]) -> Farmer:
        """Mint starting balances and approve the ledger to pull them."""
        user_id = self._new_user_id()
        for symbol, amount in balances.items():
            token = self.asset(symbol)
            token.mint(user_id, amount)
            token.approve(user_id, self.ledger.address, UNBOUNDED)
        return Farmer(user_id=user_id, initial_balances=dict(balances))
