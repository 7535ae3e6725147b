from dataclasses import dataclass, field

from .fixedpoint import MAX_FEE_BPS

HOUR = 3600

@dataclass
class FarmConfig:
    # Reward emission
    reward_symbol: str = "FARM"
    reward_per_block: int = 100
    start_block: int = 0
    seconds_per_block: int = 3
    funding_budget: int = 10_000_000
    governance: str = "gov"
    funding_source: str = "treasury"
    ledger_address: str = "ledger"

    # Vault fees
    fee_receiver: str = "fees"
    entrance_fee_bps: int = 30        # 0.3%
    exit_fee_bps: int = 10            # 0.1%
    fee_cooldown_seconds: int = 72 * HOUR

    # Pools (simulation)
    pool_symbols: list[str] = field(default_factory=lambda: ["LP-A", "LP-B"])
    pool_weights: list[int] = field(default_factory=lambda: [100, 50])
    stake_reward_asset: bool = False   # adds a pool staking the reward asset itself
    reward_asset_weight: int = 25

    # Users (simulation)
    num_users: int = 20
    user_initial_balance_mean: float = 50_000.0
    actions_per_block: int = 3
    blocks_per_step: int = 1
    p_deposit: float = 0.45
    p_withdraw: float = 0.25
    p_claim: float = 0.25
    p_emergency: float = 0.05
    deposit_frac_mean: float = 0.1

    metrics_stride: int = 5
    event_log_maxlen: int | None = None

    # Debug
    debug_ledger: bool = False

    def __post_init__(self) -> None:
        if len(self.pool_weights) < len(self.pool_symbols):
            self.pool_weights = list(self.pool_weights) + [0] * (len(self.pool_symbols) - len(self.pool_weights))
        for name in ("entrance_fee_bps", "exit_fee_bps"):
            value = getattr(self, name)
            if value < 0 or value > MAX_FEE_BPS:
                raise ValueError(f"{name}={value} outside [0, {MAX_FEE_BPS}]")
        if self.reward_symbol in self.pool_symbols:
            raise ValueError("reward asset is staked through stake_reward_asset, not pool_symbols")
        total = self.p_deposit + self.p_withdraw + self.p_claim + self.p_emergency
        if total <= 0.0:
            self.p_deposit = 1.0
