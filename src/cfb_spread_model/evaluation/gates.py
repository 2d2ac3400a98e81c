from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from cfb_spread_model.evaluation import metrics


@dataclass(frozen=True)
class GateThresholds:
    """
    Acceptance thresholds for a fitted model.

    The RMSE ceiling depends on the data subset: use ``GateThresholds.preset``
    for the named defaults and ``dataclasses.replace`` to override any field.

    Attributes
    ----------
    slope_min, slope_max:
        Allowed range for the slope of actual on predicted.
    rmse_max:
        Walk-forward RMSE ceiling.
    r2_min:
        Floor on the weighted R² of the walk-forward predictions.
    sign_agreement_min:
        Minimum share of rows where predicted and actual spread share a sign.
    pearson_min, spearman_min:
        Correlation floors between predictions and actuals.
    bucket_edges:
        Upper edges of the |actual spread| buckets; a final open bucket
        follows the last edge.
    residual_bucket_max:
        Largest allowed |weighted mean residual| in any bucket.
    variance_ratio_min, variance_ratio_max:
        Allowed range for std(predicted) / std(actual).
    rating_feature, hfa_feature, quadratic_feature:
        Coefficient names checked by the sign gates.
    """

    slope_min: float = 0.90
    slope_max: float = 1.10
    rmse_max: float = 9.0
    r2_min: float = 0.20
    sign_agreement_min: float = 0.70
    pearson_min: float = 0.30
    spearman_min: float = 0.30
    bucket_edges: Tuple[float, ...] = (7.0, 14.0, 28.0)
    residual_bucket_max: float = 2.0
    variance_ratio_min: float = 0.6
    variance_ratio_max: float = 1.2
    rating_feature: str = "rating_diff"
    hfa_feature: str = "hfa_points"
    quadratic_feature: str = "rating_diff_sq"

    def __post_init__(self) -> None:
        if self.slope_min > self.slope_max:
            raise ValueError(f"slope_min {self.slope_min} > slope_max {self.slope_max}")
        if self.variance_ratio_min > self.variance_ratio_max:
            raise ValueError(
                f"variance_ratio_min {self.variance_ratio_min} > variance_ratio_max {self.variance_ratio_max}"
            )
        if not self.r2_min <= 1.0:
            raise ValueError(f"r2_min must be <= 1; got {self.r2_min}")
        if not self.rmse_max > 0:
            raise ValueError(f"rmse_max must be > 0; got {self.rmse_max}")
        for name in ("sign_agreement_min", "pearson_min", "spearman_min"):
            value = getattr(self, name)
            if not -1.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [-1, 1]; got {value}")
        if list(self.bucket_edges) != sorted(self.bucket_edges) or any(e <= 0 for e in self.bucket_edges):
            raise ValueError(f"bucket_edges must be positive and increasing; got {self.bucket_edges}")
        if self.residual_bucket_max < 0:
            raise ValueError(f"residual_bucket_max must be >= 0; got {self.residual_bucket_max}")

    @classmethod
    def preset(cls, name: str) -> "GateThresholds":
        try:
            return cls(**GATE_PRESETS[name])
        except KeyError:
            raise KeyError(f"Unknown gate preset '{name}'. Available: {sorted(GATE_PRESETS)}") from None


# Empirically tuned ceilings and floors; tighter for the high-quality subset.
GATE_PRESETS: Dict[str, Dict[str, Any]] = {
    "high_quality": {"rmse_max": 9.0, "r2_min": 0.20},
    "broad": {"rmse_max": 9.5, "r2_min": 0.12},
}


@dataclass
class GateResult:
    """
    Outcome of one gate.

    ``margin`` is the signed distance to the nearest threshold: positive
    inside the accepted region, negative by how much it failed.
    """

    name: str
    passed: bool
    value: float
    threshold: str
    margin: float
    detail: str = ""


@dataclass
class GateReport:
    results: List[GateResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.results) and all(r.passed for r in self.results)

    def failures(self) -> List[GateResult]:
        return [r for r in self.results if not r.passed]

    def get(self, name: str) -> GateResult:
        for result in self.results:
            if result.name == name:
                return result
        raise KeyError(f"No gate named '{name}'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gates_passed": self.passed,
            "results": [asdict(r) for r in self.results],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "GateReport":
        results = []
        for raw in payload.get("results", []):
            r = dict(raw)
            for key in ("value", "margin"):
                if r.get(key) is None:
                    r[key] = float("nan")
            results.append(GateResult(**r))
        return cls(results=results)

    def summary_lines(self) -> List[str]:
        lines = []
        for r in self.results:
            mark = "PASS" if r.passed else "FAIL"
            lines.append(f"[{mark}] {r.name}: value={r.value:.4f} threshold={r.threshold} margin={r.margin:+.4f}")
        return lines


def _finite(value: float) -> bool:
    return value is not None and bool(np.isfinite(value))


def _range_gate(name: str, value: float, lo: float, hi: float) -> GateResult:
    threshold = f"[{lo:.2f}, {hi:.2f}]"
    if not _finite(value):
        return GateResult(name, False, float("nan"), threshold, float("-inf"), "not computable")
    margin = min(value - lo, hi - value)
    return GateResult(name, margin >= 0, float(value), threshold, float(margin))


def _floor_gate(name: str, value: float, floor: float) -> GateResult:
    threshold = f">= {floor:.2f}"
    if not _finite(value):
        return GateResult(name, False, float("nan"), threshold, float("-inf"), "not computable")
    margin = value - floor
    return GateResult(name, margin >= 0, float(value), threshold, float(margin))


def _positive_coef_gate(name: str, coefficients: Mapping[str, float], feature: str) -> GateResult:
    coef = coefficients.get(feature)
    if coef is None or not _finite(coef):
        return GateResult(name, False, float("nan"), "> 0", float("-inf"), f"{feature} not in model")
    return GateResult(name, coef > 0, float(coef), "> 0", float(coef))


def _quadratic_gate(
    coefficients: Mapping[str, float],
    feature: str,
    wf_rmse: float,
    wf_rmse_without: Optional[float],
) -> GateResult:
    coef = coefficients.get(feature)
    if coef is None:
        return GateResult("quadratic_term", True, 0.0, ">= 0 or improves RMSE", 0.0, f"{feature} not in model")
    if coef >= 0:
        return GateResult("quadratic_term", True, float(coef), ">= 0 or improves RMSE", float(coef))
    if wf_rmse_without is None or not _finite(wf_rmse_without):
        return GateResult(
            "quadratic_term",
            False,
            float(coef),
            ">= 0 or improves RMSE",
            float(coef),
            "negative and no comparison fit without it",
        )
    improvement = wf_rmse_without - wf_rmse
    return GateResult(
        "quadratic_term",
        improvement > 0,
        float(coef),
        ">= 0 or improves RMSE",
        float(improvement),
        f"wf_rmse with={wf_rmse:.4f} without={wf_rmse_without:.4f}",
    )


def residual_buckets(
    actual: np.ndarray,
    predicted: np.ndarray,
    weights: Optional[np.ndarray],
    edges: Tuple[float, ...],
) -> List[Dict[str, Any]]:
    """Per |actual| bucket: label, count, weighted mean residual and RMSE."""
    y, p, w = metrics.prepare_arrays(actual, predicted, weights)
    bounds = [0.0] + list(edges) + [float("inf")]
    rows = []
    for lo, hi in zip(bounds[:-1], bounds[1:]):
        mask = (np.abs(y) >= lo) & (np.abs(y) < hi)
        label = f"{lo:g}-{hi:g}" if np.isfinite(hi) else f">{lo:g}"
        if not mask.any():
            rows.append({"bucket": label, "n": 0, "mean_residual": float("nan"), "rmse": float("nan")})
            continue
        resid = y[mask] - p[mask]
        rows.append(
            {
                "bucket": label,
                "n": int(mask.sum()),
                "mean_residual": float(np.sum(w[mask] * resid) / np.sum(w[mask])),
                "rmse": metrics.rmse(y[mask], p[mask], w[mask]),
            }
        )
    return rows


def _bucket_gate(buckets: List[Dict[str, Any]], limit: float) -> GateResult:
    populated = [b for b in buckets if b["n"] > 0]
    threshold = f"|mean residual| <= {limit:.2f}"
    if not populated:
        return GateResult("residual_buckets", False, float("nan"), threshold, float("-inf"), "no rows")
    worst = max(populated, key=lambda b: abs(b["mean_residual"]))
    value = abs(worst["mean_residual"])
    detail = "; ".join(f"{b['bucket']}: n={b['n']} mean={b['mean_residual']:+.2f}" for b in populated)
    return GateResult("residual_buckets", value <= limit, float(value), threshold, float(limit - value), detail)


def check_gates(
    actual: np.ndarray,
    predicted: np.ndarray,
    coefficients: Mapping[str, float],
    wf_rmse: float,
    thresholds: Optional[GateThresholds] = None,
    weights: Optional[np.ndarray] = None,
    wf_rmse_without_quadratic: Optional[float] = None,
) -> GateReport:
    """
    Run the full gate battery.

    ``actual``/``predicted`` are the walk-forward targets and out-of-sample
    predictions (rows never predicted may be NaN and are ignored).
    ``coefficients`` are the final refit coefficients by feature name. Every
    gate is always evaluated; the report is never short-circuited.
    """
    if thresholds is None:
        thresholds = GateThresholds()

    _, slope = metrics.linear_fit(actual, predicted, weights)
    buckets = residual_buckets(actual, predicted, weights, thresholds.bucket_edges)

    rmse_margin = thresholds.rmse_max - wf_rmse if _finite(wf_rmse) else float("-inf")
    results = [
        _range_gate("slope", slope, thresholds.slope_min, thresholds.slope_max),
        GateResult(
            "wf_rmse",
            rmse_margin >= 0,
            float(wf_rmse) if _finite(wf_rmse) else float("nan"),
            f"<= {thresholds.rmse_max:.2f}",
            float(rmse_margin),
        ),
        _floor_gate("r2", metrics.r_squared(actual, predicted, weights), thresholds.r2_min),
        _floor_gate("sign_agreement", metrics.sign_agreement(actual, predicted, weights), thresholds.sign_agreement_min),
        _floor_gate("pearson", metrics.weighted_pearson(actual, predicted, weights), thresholds.pearson_min),
        _floor_gate("spearman", metrics.weighted_spearman(actual, predicted, weights), thresholds.spearman_min),
        _positive_coef_gate("coef_rating_positive", coefficients, thresholds.rating_feature),
        _positive_coef_gate("coef_hfa_positive", coefficients, thresholds.hfa_feature),
        _quadratic_gate(coefficients, thresholds.quadratic_feature, wf_rmse, wf_rmse_without_quadratic),
        _bucket_gate(buckets, thresholds.residual_bucket_max),
        _range_gate(
            "variance_ratio",
            metrics.variance_ratio(actual, predicted, weights),
            thresholds.variance_ratio_min,
            thresholds.variance_ratio_max,
        ),
    ]
    return GateReport(results=results)
