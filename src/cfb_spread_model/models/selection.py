from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from cfb_spread_model.evaluation.metrics import rmse
from cfb_spread_model.evaluation.splits import kfold_splits, walk_forward_splits
from cfb_spread_model.models.elastic_net import ElasticNetConfig, ElasticNetFit, fit_elastic_net

logger = logging.getLogger(__name__)

DEFAULT_ALPHAS: Tuple[float, ...] = (
    0.0001, 0.0002, 0.0005, 0.001, 0.002, 0.005, 0.01, 0.02, 0.05,
    0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 25.0, 50.0, 100.0,
)
DEFAULT_L1_RATIOS: Tuple[float, ...] = (0.0, 0.05, 0.1, 0.25, 0.5, 0.75, 1.0)


@dataclass(frozen=True)
class GridConfig:
    """
    Hyperparameter grid and validation settings for model selection.

    Attributes
    ----------
    alphas:
        Penalty strengths to try; each must be > 0.
    l1_ratios:
        L1/L2 mixes to try; each in [0, 1].
    n_folds:
        Folds for the k-fold screen.
    tie_epsilon:
        Walk-forward RMSE differences below this count as ties, broken by
        k-fold RMSE.
    seed:
        Seed for the k-fold permutation.
    max_iter, tol:
        Solver settings shared by every fit in the search.
    """

    alphas: Tuple[float, ...] = DEFAULT_ALPHAS
    l1_ratios: Tuple[float, ...] = DEFAULT_L1_RATIOS
    n_folds: int = 5
    tie_epsilon: float = 1e-3
    seed: int = 42
    max_iter: int = 1000
    tol: float = 1e-6

    def __post_init__(self) -> None:
        if not self.alphas:
            raise ValueError("GridConfig.alphas must not be empty.")
        if not self.l1_ratios:
            raise ValueError("GridConfig.l1_ratios must not be empty.")
        bad_alpha = [a for a in self.alphas if not (np.isfinite(a) and a > 0)]
        if bad_alpha:
            raise ValueError(f"Every alpha must be in (0, inf); got {bad_alpha}")
        bad_l1 = [r for r in self.l1_ratios if not 0.0 <= r <= 1.0]
        if bad_l1:
            raise ValueError(f"Every l1_ratio must be in [0, 1]; got {bad_l1}")
        if self.n_folds < 2:
            raise ValueError(f"n_folds must be >= 2; got {self.n_folds}")
        if self.tie_epsilon < 0:
            raise ValueError(f"tie_epsilon must be >= 0; got {self.tie_epsilon}")

    def solver_config(self, alpha: float, l1_ratio: float) -> ElasticNetConfig:
        return ElasticNetConfig(alpha=alpha, l1_ratio=l1_ratio, max_iter=self.max_iter, tol=self.tol)


@dataclass
class CandidateScore:
    alpha: float
    l1_ratio: float
    cv_rmse: float
    wf_rmse: float
    wf_week_rmse: Dict[int, float] = field(default_factory=dict)


@dataclass
class WalkForwardResult:
    rmse: float
    week_rmse: Dict[int, float]
    predictions: np.ndarray  # NaN for rows never in a test week


@dataclass
class SelectionResult:
    best: CandidateScore
    candidates: List[CandidateScore]
    fit: ElasticNetFit
    walk_forward: WalkForwardResult


def walk_forward_evaluate(
    X: np.ndarray,
    y: np.ndarray,
    weights: np.ndarray,
    weeks: Sequence[int],
    config: ElasticNetConfig,
) -> WalkForwardResult:
    """
    Fit on weeks before each test week, score on the test week only.

    The mean of per-week RMSEs is returned; with no usable fold it is inf
    so such a candidate can never win.
    """
    predictions = np.full(len(y), np.nan)
    week_rmse: Dict[int, float] = {}
    for fold in walk_forward_splits(weeks):
        fit = fit_elastic_net(X[fold.train_idx], y[fold.train_idx], weights[fold.train_idx], config)
        pred = fit.predict(X[fold.test_idx])
        predictions[fold.test_idx] = pred
        week_rmse[fold.test_week] = rmse(y[fold.test_idx], pred, weights[fold.test_idx])

    if not week_rmse:
        return WalkForwardResult(rmse=float("inf"), week_rmse={}, predictions=predictions)
    return WalkForwardResult(
        rmse=float(np.mean(list(week_rmse.values()))),
        week_rmse=week_rmse,
        predictions=predictions,
    )


def kfold_evaluate(
    X: np.ndarray,
    y: np.ndarray,
    weights: np.ndarray,
    config: ElasticNetConfig,
    n_folds: int = 5,
    seed: int = 42,
) -> float:
    """Mean held-out RMSE across shuffled k folds."""
    scores = []
    for train_idx, test_idx in kfold_splits(len(y), n_folds, seed):
        fit = fit_elastic_net(X[train_idx], y[train_idx], weights[train_idx], config)
        scores.append(rmse(y[test_idx], fit.predict(X[test_idx]), weights[test_idx]))
    return float(np.mean(scores))


def select_best(candidates: Sequence[CandidateScore], tie_epsilon: float = 1e-3) -> CandidateScore:
    """
    Lowest walk-forward RMSE wins; candidates within ``tie_epsilon`` of the
    best walk-forward RMSE are decided by k-fold RMSE.
    """
    if not candidates:
        raise ValueError("No candidates to select from.")

    def _key(value: float) -> float:
        return value if np.isfinite(value) else float("inf")

    ranked = sorted(candidates, key=lambda c: (_key(c.wf_rmse), _key(c.cv_rmse), c.alpha, c.l1_ratio))
    best_wf = _key(ranked[0].wf_rmse)
    tied = [c for c in ranked if _key(c.wf_rmse) - best_wf < tie_epsilon]
    return min(tied, key=lambda c: (_key(c.cv_rmse), _key(c.wf_rmse), c.alpha, c.l1_ratio))


def grid_search(
    X: np.ndarray,
    y: np.ndarray,
    weights: Optional[np.ndarray],
    weeks: Sequence[int],
    grid: Optional[GridConfig] = None,
) -> SelectionResult:
    """
    Score every (alpha, l1_ratio) pair by k-fold and walk-forward RMSE,
    pick the winner, and refit it on all rows.
    """
    if grid is None:
        grid = GridConfig()
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    w = np.ones(len(y)) if weights is None else np.asarray(weights, dtype=float)
    weeks = list(weeks)
    if len(weeks) != len(y):
        raise ValueError(f"weeks has {len(weeks)} entries for {len(y)} rows")

    candidates: List[CandidateScore] = []
    for alpha in grid.alphas:
        for l1_ratio in grid.l1_ratios:
            cfg = grid.solver_config(alpha, l1_ratio)
            cv = kfold_evaluate(X, y, w, cfg, grid.n_folds, grid.seed)
            wf = walk_forward_evaluate(X, y, w, weeks, cfg)
            candidates.append(
                CandidateScore(
                    alpha=alpha,
                    l1_ratio=l1_ratio,
                    cv_rmse=cv,
                    wf_rmse=wf.rmse,
                    wf_week_rmse=wf.week_rmse,
                )
            )
            logger.debug("alpha=%s l1_ratio=%s cv_rmse=%.4f wf_rmse=%.4f", alpha, l1_ratio, cv, wf.rmse)

    best = select_best(candidates, grid.tie_epsilon)
    best_cfg = grid.solver_config(best.alpha, best.l1_ratio)
    fit = fit_elastic_net(X, y, w, best_cfg)
    walk_forward = walk_forward_evaluate(X, y, w, weeks, best_cfg)
    logger.info(
        "Selected alpha=%s l1_ratio=%s (wf_rmse=%.4f, cv_rmse=%.4f) from %s candidates",
        best.alpha,
        best.l1_ratio,
        best.wf_rmse,
        best.cv_rmse,
        len(candidates),
    )
    return SelectionResult(best=best, candidates=candidates, fit=fit, walk_forward=walk_forward)
