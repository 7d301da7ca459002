from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    network_rows: List[Dict[str, Any]] = field(default_factory=list)
    asset_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_network(self, row: Dict[str, Any]) -> None:
        self.network_rows.append(row)

    def add_asset_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.asset_rows.extend(rows)

    def network_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.network_rows)

    def asset_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.asset_rows)

    def asset_series(self, chain_id: str, asset_id: str, column: str) -> pd.Series:
        df = self.asset_df()
        if df.empty or column not in df.columns:
            return pd.Series(dtype="float64")
        mask = (df["chain_id"] == chain_id) & (df["asset_id"] == asset_id)
        return df.loc[mask].set_index("tick")[column]
