from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from cfb_spread_model.config import MODEL_CONFIG
from cfb_spread_model.data.preprocessing.calibration_dataset import TIER_DUMMIES
from cfb_spread_model.data.preprocessing.hygiene import HygieneConfig, HygieneReport, apply_hygiene
from cfb_spread_model.errors import InsufficientDataError
from cfb_spread_model.evaluation.gates import GateReport, GateThresholds, check_gates
from cfb_spread_model.evaluation.metrics import linear_fit, rmse
from cfb_spread_model.evaluation.splits import walk_forward_splits
from cfb_spread_model.models.elastic_net import ElasticNetConfig
from cfb_spread_model.models.selection import (
    CandidateScore,
    GridConfig,
    SelectionResult,
    grid_search,
    walk_forward_evaluate,
)
from cfb_spread_model.utils.numeric import to_float_array

logger = logging.getLogger(__name__)

FIT_LABELS = ("core", "extended")

CORE_FEATURES: Tuple[str, ...] = ("rating_diff", "hfa_points", *TIER_DUMMIES.values(), "talent_diff_z")

# EngineeredFeatureRow columns differenced (home minus away) for extended fits.
EXTENDED_SOURCE_COLUMNS: Tuple[str, ...] = (
    "off_adj_sr",
    "def_adj_sr",
    "edge_sr",
    "off_adj_explosiveness",
    "def_adj_explosiveness",
    "edge_explosiveness",
    "off_adj_epa",
    "def_adj_epa",
    "ewma3_off_adj_epa",
    "ewma3_def_adj_epa",
    "ewma5_off_adj_epa",
    "ewma5_def_adj_epa",
    "rest_days",
)

QUADRATIC_FEATURE = "rating_diff_sq"


def extended_features(available: Iterable[str] = EXTENDED_SOURCE_COLUMNS) -> Tuple[str, ...]:
    """Core features plus ``diff_<col>`` for each available engineered source column, in canonical order."""
    available = set(available)
    return CORE_FEATURES + tuple(f"diff_{c}" for c in EXTENDED_SOURCE_COLUMNS if c in available)


def default_features(fit_label: str) -> Tuple[str, ...]:
    if fit_label == "core":
        return CORE_FEATURES
    if fit_label == "extended":
        return extended_features()
    raise ValueError(f"Unknown fit label '{fit_label}'. Expected one of {FIT_LABELS}")


@dataclass(frozen=True)
class CalibrationConfig:
    """
    Configuration for one calibration run.

    Attributes
    ----------
    fit_label:
        "core" (rating diff, HFA, tier dummies, talent) or "extended"
        (core plus engineered home-minus-away diffs).
    features:
        Explicit feature list; None uses the fit label's defaults.
    include_quadratic:
        Add ``rating_diff_sq``.
    min_rows:
        Fewer complete rows than this aborts the run before fitting.
    max_feature_null_frac:
        Features with a larger null share are dropped from the design.
    low_sample_weight:
        Extended fits multiply the row weight by this when either team's
        3-game EWMA is low-sample.
    target_col, week_col, weight_col:
        CalibrationRow column names.
    grid, hygiene, gates:
        Component configurations.
    season, model_version, feature_version:
        Identity of the persisted FittedModel.
    """

    fit_label: str = "core"
    features: Optional[Tuple[str, ...]] = None
    include_quadratic: bool = False
    min_rows: int = 50
    max_feature_null_frac: float = 0.15
    low_sample_weight: float = 0.75
    target_col: str = "market_spread"
    week_col: str = "week"
    weight_col: str = "row_weight"
    grid: GridConfig = field(default_factory=GridConfig)
    hygiene: HygieneConfig = field(default_factory=HygieneConfig)
    gates: GateThresholds = field(default_factory=GateThresholds)
    season: Optional[int] = None
    model_version: str = MODEL_CONFIG.default_model_version
    feature_version: str = MODEL_CONFIG.default_feature_version

    def __post_init__(self) -> None:
        if self.fit_label not in FIT_LABELS:
            raise ValueError(f"fit_label must be one of {FIT_LABELS}; got '{self.fit_label}'")
        if self.min_rows < 2:
            raise ValueError(f"min_rows must be >= 2; got {self.min_rows}")
        if not 0.0 <= self.max_feature_null_frac <= 1.0:
            raise ValueError(f"max_feature_null_frac must be in [0, 1]; got {self.max_feature_null_frac}")
        if not 0.0 < self.low_sample_weight <= 1.0:
            raise ValueError(f"low_sample_weight must be in (0, 1]; got {self.low_sample_weight}")
        if self.features is not None and not self.features:
            raise ValueError("features must not be empty when given.")

    def feature_list(self) -> List[str]:
        features = list(self.features) if self.features is not None else list(default_features(self.fit_label))
        if self.include_quadratic and QUADRATIC_FEATURE not in features:
            features.append(QUADRATIC_FEATURE)
        return features


@dataclass(frozen=True)
class FittedModel:
    """
    Output of a calibration run; never mutated once created.

    ``coefficients`` are in original feature units (what the predictor
    uses); ``coefficients_standardized`` are what the solver fit.
    ``winsor_bounds`` are the per-feature clip bounds from the fit; the
    predictor clips inputs to them before applying the coefficients.
    """

    model_version: str
    fit_label: str
    season: Optional[int]
    feature_version: str
    features: List[str]
    coefficients: Dict[str, float]
    intercept: float
    coefficients_standardized: Dict[str, float]
    intercept_standardized: float
    alpha: float
    l1_ratio: float
    cv_rmse: float
    wf_rmse: float
    wf_week_rmse: Dict[int, float]
    scaler_means: Dict[str, float]
    scaler_stds: Dict[str, float]
    dropped_features: Dict[str, List[str]]
    n_rows: int
    baselines: Dict[str, float]
    calibration_head: Dict[str, float]
    gate_report: GateReport
    winsor_bounds: Dict[str, List[float]] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def gates_passed(self) -> bool:
        return self.gate_report.passed

    @property
    def key(self) -> Tuple[str, str, Optional[int], str]:
        return (self.model_version, self.fit_label, self.season, self.feature_version)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["gate_report"] = self.gate_report.to_dict()
        payload["gates_passed"] = self.gates_passed
        payload["wf_week_rmse"] = {str(k): v for k, v in self.wf_week_rmse.items()}
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FittedModel":
        data = dict(payload)
        data.pop("gates_passed", None)
        data["gate_report"] = GateReport.from_dict(data["gate_report"])
        data["wf_week_rmse"] = {int(k): v for k, v in data.get("wf_week_rmse", {}).items()}
        return cls(**data)


@dataclass
class CalibrationResult:
    model: FittedModel
    rows: pd.DataFrame
    predictions: pd.DataFrame
    hygiene_report: HygieneReport
    candidates: List[CandidateScore]
    selection: SelectionResult


# ---------------------------------------------------------------------------
# Design matrix
# ---------------------------------------------------------------------------


def _row_weights(rows: pd.DataFrame, config: CalibrationConfig) -> np.ndarray:
    if config.weight_col in rows.columns:
        w = to_float_array(rows[config.weight_col])
    else:
        w = np.ones(len(rows))
    if config.fit_label == "extended":
        low = np.zeros(len(rows), dtype=bool)
        for col in ("home_low_sample_3g", "away_low_sample_3g"):
            if col in rows.columns:
                low |= rows[col].fillna(True).astype(bool).to_numpy()
        w = np.where(low, w * config.low_sample_weight, w)
    return w


def build_design(
    rows: pd.DataFrame, config: CalibrationConfig
) -> Tuple[pd.DataFrame, np.ndarray, np.ndarray, np.ndarray, List[str]]:
    """
    Select features, drop sparse ones, keep complete rows.

    Returns (design, y, weights, weeks, sparse_dropped). Raises
    InsufficientDataError when fewer than ``config.min_rows`` rows survive.
    """
    features = config.feature_list()
    base_needed = [config.target_col, config.week_col]
    needed = base_needed + [f for f in features if f != QUADRATIC_FEATURE]
    if QUADRATIC_FEATURE in features:
        needed.append("rating_diff")
    missing = [c for c in dict.fromkeys(needed) if c not in rows.columns]
    if missing:
        raise KeyError(f"Calibration rows are missing columns: {missing}")

    design = pd.DataFrame(index=rows.index)
    for f in features:
        if f == QUADRATIC_FEATURE:
            design[f] = to_float_array(rows["rating_diff"]) ** 2
        else:
            design[f] = to_float_array(rows[f])

    null_frac = design.isna().mean()
    sparse = [f for f in features if null_frac[f] > config.max_feature_null_frac]
    if sparse:
        logger.warning(
            "Dropping sparse features (null share > %s): %s",
            config.max_feature_null_frac,
            {f: round(float(null_frac[f]), 3) for f in sparse},
        )
        design = design.drop(columns=sparse)

    y = to_float_array(rows[config.target_col])
    weeks = to_float_array(rows[config.week_col])
    w = _row_weights(rows, config)

    complete = design.notna().all(axis=1).to_numpy() & np.isfinite(y) & np.isfinite(weeks) & np.isfinite(w) & (w > 0)
    if (~complete).any():
        logger.info("Dropping %s of %s rows with null features, target, week or weight", int((~complete).sum()), len(rows))

    n_complete = int(complete.sum())
    if n_complete < config.min_rows:
        raise InsufficientDataError("Too few complete calibration rows", required=config.min_rows, available=n_complete)

    return design[complete], y[complete], w[complete], weeks[complete].astype(int), sparse


def walk_forward_mean_baseline(y: np.ndarray, weights: np.ndarray, weeks: np.ndarray) -> float:
    """Walk-forward RMSE of predicting the weighted mean of all earlier weeks."""
    scores = []
    for fold in walk_forward_splits(weeks):
        train_w = weights[fold.train_idx]
        mean = float(np.sum(train_w * y[fold.train_idx]) / np.sum(train_w))
        scores.append(rmse(y[fold.test_idx], np.full(len(fold.test_idx), mean), weights[fold.test_idx]))
    return float(np.mean(scores)) if scores else float("inf")


def denormalize(
    coef_std: Mapping[str, float],
    intercept_std: float,
    means: Mapping[str, float],
    stds: Mapping[str, float],
) -> Tuple[Dict[str, float], float]:
    """
    Map standardized coefficients back to original units.

    For a standardized feature z = (x - m) / s: b_x = b_z / s and the
    intercept absorbs -b_z * m / s. Unscaled (binary) features pass through.
    """
    coef: Dict[str, float] = {}
    intercept = float(intercept_std)
    for name, c in coef_std.items():
        if name in stds:
            coef[name] = float(c) / stds[name]
            intercept -= float(c) * means[name] / stds[name]
        else:
            coef[name] = float(c)
    return coef, intercept


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def calibrate(rows: pd.DataFrame, config: CalibrationConfig | None = None) -> CalibrationResult:
    """
    Fit, validate and gate an elastic-net spread model on CalibrationRows.

    Steps:
        1. Build the design (sparse features dropped, complete rows only);
           abort with InsufficientDataError below ``min_rows``.
        2. Hygiene: winsorize, standardize, drop zero-variance features.
        3. Grid search scored by k-fold and walk-forward RMSE; refit winner.
        4. Denormalize coefficients; compare against a fit without the
           quadratic term when its coefficient is negative.
        5. Run every gate on walk-forward predictions and final coefficients.

    The returned model carries ``gates_passed``; a failing model is still
    returned (and may be persisted) for diagnosis.
    """
    if config is None:
        config = CalibrationConfig()

    rows = rows.reset_index(drop=True)
    design, y, w, weeks, sparse = build_design(rows, config)
    kept_rows = rows.loc[design.index]

    processed, report = apply_hygiene(design, list(design.columns), config.hygiene)
    features = list(processed.columns)
    if not features:
        raise InsufficientDataError("Every feature was dropped by hygiene; nothing to fit")
    X = processed[features].to_numpy(dtype=float, na_value=np.nan)

    selection = grid_search(X, y, w, weeks, config.grid)
    fit = selection.fit
    degenerate = [features[j] for j in fit.zeroed]
    if degenerate:
        logger.warning("Zeroed coefficients of degenerate features: %s", degenerate)
    if not fit.converged:
        logger.warning(
            "Final refit did not converge in %s sweeps (alpha=%s, l1_ratio=%s)",
            config.grid.max_iter,
            selection.best.alpha,
            selection.best.l1_ratio,
        )

    coef_std = {name: float(c) for name, c in zip(features, fit.coef)}
    coef, intercept = denormalize(coef_std, fit.intercept, report.means, report.stds)

    best_cfg = config.grid.solver_config(selection.best.alpha, selection.best.l1_ratio)
    wf_without_quadratic = None
    if QUADRATIC_FEATURE in coef and coef[QUADRATIC_FEATURE] < 0:
        keep = [j for j, name in enumerate(features) if name != QUADRATIC_FEATURE]
        wf_without_quadratic = walk_forward_evaluate(X[:, keep], y, w, weeks, best_cfg).rmse

    wf_pred = selection.walk_forward.predictions
    gate_report = check_gates(
        actual=y,
        predicted=wf_pred,
        coefficients=coef,
        wf_rmse=selection.walk_forward.rmse,
        thresholds=config.gates,
        weights=w,
        wf_rmse_without_quadratic=wf_without_quadratic,
    )

    ols = walk_forward_evaluate(X, y, w, weeks, ElasticNetConfig(alpha=0.0, max_iter=config.grid.max_iter, tol=config.grid.tol))
    baselines = {
        "mean_wf_rmse": walk_forward_mean_baseline(y, w, weeks),
        "ols_wf_rmse": ols.rmse,
    }
    head_intercept, head_slope = linear_fit(y, wf_pred, w)

    model = FittedModel(
        model_version=config.model_version,
        fit_label=config.fit_label,
        season=config.season,
        feature_version=config.feature_version,
        features=features,
        coefficients=coef,
        intercept=intercept,
        coefficients_standardized=coef_std,
        intercept_standardized=float(fit.intercept),
        alpha=selection.best.alpha,
        l1_ratio=selection.best.l1_ratio,
        cv_rmse=selection.best.cv_rmse,
        wf_rmse=selection.walk_forward.rmse,
        wf_week_rmse=dict(selection.walk_forward.week_rmse),
        scaler_means={k: report.means[k] for k in features if k in report.means},
        scaler_stds={k: report.stds[k] for k in features if k in report.stds},
        winsor_bounds={k: [float(lo), float(hi)] for k, (lo, hi) in report.bounds.items() if k in features},
        dropped_features={
            "sparse": sparse,
            "zero_variance": list(report.dropped),
            "degenerate": degenerate,
        },
        n_rows=len(y),
        baselines=baselines,
        calibration_head={"intercept": head_intercept, "slope": head_slope},
        gate_report=gate_report,
    )

    predictions = kept_rows.copy()
    predictions["wf_predicted"] = wf_pred
    predictions["fitted"] = fit.predict(X)
    predictions["fit_weight"] = w

    logger.info(
        "Calibration %s/%s: %s rows, %s features, wf_rmse=%.3f, gates_passed=%s",
        config.fit_label,
        config.model_version,
        len(y),
        len(features),
        model.wf_rmse,
        model.gates_passed,
    )
    for failure in gate_report.failures():
        logger.warning("Gate %s failed: value=%s threshold=%s margin=%s", failure.name, failure.value, failure.threshold, failure.margin)

    return CalibrationResult(
        model=model,
        rows=rows,
        predictions=predictions,
        hygiene_report=report,
        candidates=selection.candidates,
        selection=selection,
    )


def format_summary(model: FittedModel) -> str:
    """Human-readable run summary."""
    lines = [
        f"Model {model.model_version} [{model.fit_label}] season={model.season} features={model.feature_version}",
        f"  rows={model.n_rows}  alpha={model.alpha:g}  l1_ratio={model.l1_ratio:g}",
        f"  wf_rmse={model.wf_rmse:.3f}  cv_rmse={model.cv_rmse:.3f}  "
        f"mean_baseline={model.baselines.get('mean_wf_rmse', float('nan')):.3f}  "
        f"ols_baseline={model.baselines.get('ols_wf_rmse', float('nan')):.3f}",
        f"  intercept={model.intercept:+.4f}",
    ]
    for name in model.features:
        lines.append(f"  {name:<32} {model.coefficients[name]:+.4f}  (std {model.coefficients_standardized[name]:+.4f})")
    for kind, names in model.dropped_features.items():
        if names:
            lines.append(f"  dropped ({kind}): {', '.join(names)}")
    lines.append(f"  gates_passed={model.gates_passed}")
    lines += [f"  {line}" for line in model.gate_report.summary_lines()]
    return "\n".join(lines)
