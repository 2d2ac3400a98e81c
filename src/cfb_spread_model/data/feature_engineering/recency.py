from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from cfb_spread_model.utils.numeric import to_float_array, to_nullable_float

# Most-recent-first weight vectors, each summing to 1.
DEFAULT_WEIGHTS: Dict[int, Tuple[float, ...]] = {
    3: (0.6, 0.3, 0.1),
    5: (0.4, 0.3, 0.15, 0.1, 0.05),
}


@dataclass(frozen=True)
class RecencySpec:
    """
    Settings for leak-free EWMA features built from a single column.

    Attributes
    ----------
    col:
        Source column to average over a team's prior games.
    windows:
        Window sizes, in number of games. Each needs a weight vector.
    weights:
        Most-recent-first weights per window. Defaults to DEFAULT_WEIGHTS.
    prior_col:
        Optional column holding the preseason prior for the row's team
        (e.g. "talent_prior"). When None, short windows are not blended.
    prior_scale:
        Multiplier taking ``prior_col`` onto the metric's units.
    prefix:
        Prefix used for generated feature names. If None, uses `col`.
        Output columns follow the pattern: "ewma{window}_{prefix}".
    """

    col: str
    windows: Sequence[int] = (3, 5)
    weights: Mapping[int, Sequence[float]] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    prior_col: str | None = None
    prior_scale: float = 1.0
    prefix: str | None = None

    def __post_init__(self) -> None:
        if not self.windows:
            raise ValueError(f"RecencySpec for '{self.col}' needs at least one window.")
        for window in self.windows:
            if window < 1:
                raise ValueError(f"Window sizes must be >= 1; got {window} for '{self.col}'")
            w = self.weights.get(window)
            if w is None:
                raise ValueError(f"No weight vector for window {window} in RecencySpec for '{self.col}'")
            if len(w) != window:
                raise ValueError(f"Weight vector for window {window} has length {len(w)}")
            if any(x <= 0 for x in w):
                raise ValueError(f"Weights must be positive; got {tuple(w)}")
            if not np.isclose(sum(w), 1.0):
                raise ValueError(f"Weights for window {window} must sum to 1; got {sum(w)}")
        if not np.isfinite(self.prior_scale):
            raise ValueError(f"prior_scale must be finite; got {self.prior_scale}")

    def output_name(self, window: int) -> str:
        return f"ewma{window}_{self.prefix or self.col}"


def low_sample_column(window: int) -> str:
    return f"low_sample_{window}g"


def prior_weight(n_prior_games: int, window: int) -> float:
    """Share of the estimate given to the preseason prior: the sampling shortfall."""
    return max(0.0, 1.0 - n_prior_games / window)


def weighted_recent(
    prior_values: np.ndarray,
    weights: Sequence[float],
    prior: float | None,
) -> float:
    """
    EWMA of the last ``len(weights)`` entries of ``prior_values``.

    ``prior_values`` holds the team's earlier games in chronological order;
    the caller never passes the current game. Null entries are skipped and
    the remaining weights renormalized. When fewer than a full window of
    games exist, the result is blended with ``prior`` by the shortfall.
    A null prior is never read as zero: the partial average is returned
    unblended.
    """
    window = len(weights)
    recent = prior_values[-window:][::-1]
    n = len(recent)
    pw = prior_weight(n, window)
    has_prior = prior is not None and np.isfinite(prior)

    w = np.asarray(weights[:n], dtype=float)
    valid = np.isfinite(recent)
    if not valid.any():
        if has_prior and pw > 0:
            return float(prior)
        return float("nan")

    estimate = float(np.dot(w[valid], recent[valid]) / w[valid].sum())
    if not has_prior or pw == 0:
        return estimate
    return (1.0 - pw) * estimate + pw * float(prior)


def _validate_specs(df: pd.DataFrame, specs: Iterable[RecencySpec]) -> list[RecencySpec]:
    specs = list(specs)
    if not specs:
        raise ValueError("At least one RecencySpec must be provided.")

    for spec in specs:
        if spec.col not in df.columns:
            raise KeyError(f"RecencySpec refers to missing column: {spec.col}")
        if spec.prior_col is not None and spec.prior_col not in df.columns:
            raise KeyError(f"RecencySpec prior column not found: {spec.prior_col}")
    return specs


def add_recency_features(
    df: pd.DataFrame,
    group_cols: Sequence[str],
    order_cols: Sequence[str],
    specs: Sequence[RecencySpec],
) -> pd.DataFrame:
    """
    Add leak-free EWMA features and low-sample flags to a DataFrame.

    Anti-leakage guarantee
    ----------------------
    Within each group, rows are ordered by ``order_cols`` and the value for
    the row at position i is computed from positions < i only. The current
    and later rows never enter the slice, so changing a later game cannot
    change an earlier game's EWMA.

    Parameters
    ----------
    df:
        Input DataFrame. Must contain group_cols + order_cols + all spec columns.
    group_cols:
        Columns defining an independent game sequence (e.g. ["team", "season"]).
    order_cols:
        Columns defining chronological order within a group
        (e.g. ["game_date", "game_id"]); the trailing columns break ties.
    specs:
        RecencySpec definitions describing what to compute.

    Returns
    -------
    pd.DataFrame
        Copy of `df` with ``ewma{w}_*`` columns (nullable Float64) and
        ``low_sample_{w}g`` flags appended. Original index order is preserved.
    """
    if not group_cols:
        raise ValueError("group_cols must not be empty.")
    if not order_cols:
        raise ValueError("order_cols must not be empty.")
    for col in list(group_cols) + list(order_cols):
        if col not in df.columns:
            raise KeyError(f"Column '{col}' not found in DataFrame.")

    specs = _validate_specs(df, specs)

    original_index = df.index
    result = df.sort_values(list(group_cols) + list(order_cols), kind="mergesort").copy()

    positions = result.groupby(list(group_cols), sort=False).indices
    n_rows = len(result)
    windows = sorted({w for spec in specs for w in spec.windows})

    game_number = np.zeros(n_rows, dtype=int)
    for idx in positions.values():
        game_number[idx] = np.arange(len(idx))
    for window in windows:
        result[low_sample_column(window)] = game_number < window

    for spec in specs:
        values = to_float_array(result[spec.col])
        if spec.prior_col is not None:
            priors = to_float_array(result[spec.prior_col]) * spec.prior_scale
        else:
            priors = np.full(n_rows, np.nan)

        for window in spec.windows:
            weights = tuple(spec.weights[window])
            out = np.full(n_rows, np.nan)
            for idx in positions.values():
                series = values[idx]
                for i, row in enumerate(idx):
                    # strictly earlier games only
                    prior = priors[row] if np.isfinite(priors[row]) else None
                    out[row] = weighted_recent(series[:i], weights, prior)
            result[spec.output_name(window)] = to_nullable_float(pd.Series(out, index=result.index))

    return result.loc[original_index]
