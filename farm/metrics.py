from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

POOL_INT_COLUMNS = (
    "allocation_weight",
    "acc_reward_per_share",
    "shares_total",
    "asset_locked_total",
    "user_shares_total",
    "fee_receiver_balance",
)

@dataclass
class MetricsStore:
    """Per-snapshot rows for the whole farm and for each pool."""
    farm_rows: List[Dict[str, Any]] = field(default_factory=list)
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, farm_row: Dict[str, Any], pool_rows: List[Dict[str, Any]]) -> None:
        self.farm_rows.append(farm_row)
        self.pool_rows.extend(pool_rows)

    def farm_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.farm_rows)

    def pool_df(self) -> pd.DataFrame:
        df = pd.DataFrame(self.pool_rows)
        if df.empty:
            return df
        # accumulators overflow int64; keep them as Python ints
        return df.astype({c: object for c in POOL_INT_COLUMNS if c in df.columns})

    def pool_series(self, pool_id: int, column: str) -> pd.Series:
        df = self.pool_df()
        if df.empty:
            return pd.Series(dtype=object)
        return df.loc[df["pool_id"] == pool_id].set_index("block")[column]

    def reward_paid_by_pool(self) -> pd.Series:
        """Cumulative reward paid per pool as of the latest snapshot."""
        df = self.pool_df()
        if df.empty:
            return pd.Series(dtype=object)
        return df.groupby("pool_id")["reward_paid_total"].last()
