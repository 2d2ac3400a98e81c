from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import pandas as pd


def prepare_arrays(
    actual: np.ndarray, predicted: np.ndarray, weights: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Align arrays and keep only rows where actual, predicted and weight are all finite."""
    actual = np.asarray(actual, dtype=float)
    predicted = np.asarray(predicted, dtype=float)
    if actual.shape != predicted.shape:
        raise ValueError(f"Shape mismatch: actual {actual.shape} vs predicted {predicted.shape}")
    w = np.ones_like(actual) if weights is None else np.asarray(weights, dtype=float)
    if w.shape != actual.shape:
        raise ValueError(f"Shape mismatch: weights {w.shape} vs actual {actual.shape}")
    mask = np.isfinite(actual) & np.isfinite(predicted) & np.isfinite(w) & (w > 0)
    return actual[mask], predicted[mask], w[mask]


def rmse(actual, predicted, weights=None) -> float:
    y, p, w = prepare_arrays(actual, predicted, weights)
    if len(y) == 0:
        return float("nan")
    return float(np.sqrt(np.sum(w * (y - p) ** 2) / np.sum(w)))


def weighted_mean(values, weights=None) -> float:
    values = np.asarray(values, dtype=float)
    w = np.ones_like(values) if weights is None else np.asarray(weights, dtype=float)
    mask = np.isfinite(values) & np.isfinite(w)
    if not mask.any() or w[mask].sum() <= 0:
        return float("nan")
    return float(np.sum(w[mask] * values[mask]) / np.sum(w[mask]))


def _weighted_cov(a: np.ndarray, b: np.ndarray, w: np.ndarray) -> float:
    sw = w.sum()
    ma = np.sum(w * a) / sw
    mb = np.sum(w * b) / sw
    return float(np.sum(w * (a - ma) * (b - mb)) / sw)


def weighted_pearson(actual, predicted, weights=None) -> float:
    y, p, w = prepare_arrays(actual, predicted, weights)
    if len(y) < 2:
        return float("nan")
    var_y = _weighted_cov(y, y, w)
    var_p = _weighted_cov(p, p, w)
    if var_y <= 0 or var_p <= 0:
        return float("nan")
    return _weighted_cov(y, p, w) / float(np.sqrt(var_y * var_p))


def weighted_spearman(actual, predicted, weights=None) -> float:
    """Weighted Pearson correlation of average ranks."""
    y, p, w = prepare_arrays(actual, predicted, weights)
    if len(y) < 2:
        return float("nan")
    ry = pd.Series(y).rank(method="average").to_numpy()
    rp = pd.Series(p).rank(method="average").to_numpy()
    return weighted_pearson(ry, rp, w)


def linear_fit(actual, predicted, weights=None) -> Tuple[float, float]:
    """
    Weighted OLS of ``actual`` on ``predicted``: returns (intercept, slope).

    The slope is the calibration slope used by the gates; (intercept, slope)
    together form the post-hoc linear calibration head.
    """
    y, p, w = prepare_arrays(actual, predicted, weights)
    if len(y) < 2:
        return float("nan"), float("nan")
    var_p = _weighted_cov(p, p, w)
    if var_p <= 0:
        return float("nan"), float("nan")
    slope = _weighted_cov(p, y, w) / var_p
    sw = w.sum()
    intercept = float(np.sum(w * y) / sw - slope * np.sum(w * p) / sw)
    return intercept, float(slope)


def sign_agreement(actual, predicted, weights=None) -> float:
    """Weighted share of rows where prediction and actual have the same sign (zeros never agree)."""
    y, p, w = prepare_arrays(actual, predicted, weights)
    if len(y) == 0:
        return float("nan")
    agree = (np.sign(y) == np.sign(p)) & (y != 0)
    return float(np.sum(w * agree) / np.sum(w))


def variance_ratio(actual, predicted, weights=None) -> float:
    """std(predicted) / std(actual), both weighted."""
    y, p, w = prepare_arrays(actual, predicted, weights)
    if len(y) < 2:
        return float("nan")
    var_y = _weighted_cov(y, y, w)
    if var_y <= 0:
        return float("nan")
    return float(np.sqrt(_weighted_cov(p, p, w) / var_y))


def r_squared(actual, predicted, weights=None) -> float:
    """
    Weighted 1 - SS_res / SS_tot against the weighted mean of ``actual``.

    Returns 0.0 when ``actual`` has (near) zero spread.
    """
    y, p, w = prepare_arrays(actual, predicted, weights)
    if len(y) == 0:
        return float("nan")
    mean = np.sum(w * y) / np.sum(w)
    ss_tot = float(np.sum(w * (y - mean) ** 2))
    if ss_tot <= 1e-4:
        return 0.0
    return 1.0 - float(np.sum(w * (y - p) ** 2)) / ss_tot
