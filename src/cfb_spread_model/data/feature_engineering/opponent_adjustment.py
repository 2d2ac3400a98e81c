from __future__ import annotations

from typing import Iterable, List

import pandas as pd

from cfb_spread_model.data.loaders.aggregate_stats import METRICS
from cfb_spread_model.utils.numeric import to_nullable_float


def adjusted_columns(metrics: Iterable[str] = METRICS) -> List[str]:
    """Names of the columns produced by ``add_opponent_adjustments``."""
    cols: List[str] = []
    for m in metrics:
        cols += [f"off_adj_{m}", f"def_adj_{m}", f"edge_{m}"]
    return cols


def add_opponent_adjustments(df: pd.DataFrame, metrics: Iterable[str] = METRICS) -> pd.DataFrame:
    """
    Add opponent-adjusted nets and matchup edges for each metric.

    For metric ``m``:
        off_adj_m = team_off_m - opp_def_m
        def_adj_m = -(team_def_m + opp_off_m)      (higher is better)
        edge_m    = off_adj_m - def_adj_m

    Inputs are cast to nullable Float64 first, so a null operand yields a
    null result rather than being read as zero. Row-wise and stateless.
    """
    metrics = list(metrics)
    required = [f"{p}_{m}" for m in metrics for p in ("team_off", "team_def", "opp_off", "opp_def")]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise KeyError(f"Opponent adjustment requires missing columns: {missing}")

    out = df.copy()
    for m in metrics:
        team_off = to_nullable_float(out[f"team_off_{m}"])
        team_def = to_nullable_float(out[f"team_def_{m}"])
        opp_off = to_nullable_float(out[f"opp_off_{m}"])
        opp_def = to_nullable_float(out[f"opp_def_{m}"])

        off_adj = team_off - opp_def
        def_adj = -(team_def + opp_off)
        out[f"off_adj_{m}"] = off_adj
        out[f"def_adj_{m}"] = def_adj
        out[f"edge_{m}"] = off_adj - def_adj
    return out
