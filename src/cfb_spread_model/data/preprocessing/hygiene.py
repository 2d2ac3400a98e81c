from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from cfb_spread_model.utils.numeric import to_float_array, to_nullable_float

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HygieneConfig:
    """
    Configuration for the winsorize -> standardize -> zero-variance stage.

    Attributes
    ----------
    winsorize_pct:
        Tail fraction clipped on each side (0.01 -> 1st/99th percentile).
    min_std:
        A feature whose standard deviation (after winsorizing) is below this
        is treated as zero-variance and dropped.
    exclude:
        Columns passed through untouched (never clipped, scaled or dropped),
        e.g. an explicit intercept column.
    binary:
        Columns that are dummy flags: never clipped or scaled, but still
        dropped when constant.
    detect_binary:
        Also treat any column whose non-null values are a subset of {0, 1}
        as binary.
    """

    winsorize_pct: float = 0.01
    min_std: float = 1e-4
    exclude: Tuple[str, ...] = ("intercept",)
    binary: Tuple[str, ...] = ()
    detect_binary: bool = True

    def __post_init__(self) -> None:
        if not 0.0 <= self.winsorize_pct < 0.5:
            raise ValueError(f"winsorize_pct must be in [0, 0.5); got {self.winsorize_pct}")
        if not self.min_std > 0:
            raise ValueError(f"min_std must be > 0; got {self.min_std}")


@dataclass
class HygieneReport:
    """What the hygiene stage did to each feature."""

    bounds: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    clipped: Dict[str, pd.Index] = field(default_factory=dict)
    means: Dict[str, float] = field(default_factory=dict)
    stds: Dict[str, float] = field(default_factory=dict)
    binary: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)

    def clipped_fraction(self, col: str, n_rows: int) -> float:
        if n_rows == 0:
            return 0.0
        return len(self.clipped.get(col, [])) / n_rows


def percentile_bounds(values: np.ndarray, pct: float) -> Tuple[float, float]:
    """
    Lower/upper order statistics at ``pct`` and ``1 - pct`` of the finite values.

    Uses plain order statistics (no interpolation), so clipping to the
    returned bounds and recomputing them gives the same bounds again.
    """
    finite = np.sort(values[np.isfinite(values)])
    n = len(finite)
    if n == 0:
        return float("nan"), float("nan")
    lo = finite[min(n - 1, math.floor(n * pct))]
    hi = finite[min(n - 1, math.floor(n * (1.0 - pct)))]
    return float(lo), float(hi)


def _is_binary(values: np.ndarray) -> bool:
    finite = values[np.isfinite(values)]
    return len(finite) > 0 and bool(np.isin(finite, (0.0, 1.0)).all())


def apply_hygiene(
    df: pd.DataFrame,
    feature_cols: Sequence[str],
    config: HygieneConfig | None = None,
) -> Tuple[pd.DataFrame, HygieneReport]:
    """
    Winsorize, then standardize, then drop zero-variance features.

    Winsorizing happens first so outliers cannot distort the mean/std used
    for standardization. Standard deviations are population (ddof=0).
    Nulls stay null throughout and are ignored by every statistic.

    Returns
    -------
    (frame, report)
        ``frame`` is a copy of ``df`` with processed feature columns (nullable
        Float64) and zero-variance columns removed. ``report`` records bounds,
        clipped row labels, scaling parameters and dropped columns.
    """
    if config is None:
        config = HygieneConfig()

    missing = [c for c in feature_cols if c not in df.columns]
    if missing:
        raise KeyError(f"Hygiene requested for missing columns: {missing}")

    out = df.copy()
    report = HygieneReport()

    for col in feature_cols:
        if col in config.exclude:
            report.kept.append(col)
            continue

        values = to_float_array(out[col])
        is_binary = col in config.binary or (config.detect_binary and _is_binary(values))

        if not is_binary:
            lo, hi = percentile_bounds(values, config.winsorize_pct)
            if np.isfinite(lo):
                finite = np.isfinite(values)
                clip_mask = finite & ((values < lo) | (values > hi))
                values = np.where(finite, np.clip(values, lo, hi), np.nan)
                report.bounds[col] = (lo, hi)
                report.clipped[col] = out.index[clip_mask]

        finite_values = values[np.isfinite(values)]
        std = float(finite_values.std()) if len(finite_values) else float("nan")
        if not np.isfinite(std) or std < config.min_std:
            logger.warning(
                "Dropping zero-variance feature %s (std=%s, threshold=%s)", col, std, config.min_std
            )
            report.dropped.append(col)
            out = out.drop(columns=[col])
            continue

        if is_binary:
            report.binary.append(col)
        else:
            mean = float(finite_values.mean())
            values = (values - mean) / std
            report.means[col] = mean
            report.stds[col] = std

        out[col] = to_nullable_float(pd.Series(values, index=out.index))
        report.kept.append(col)

    return out, report
