from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElasticNetConfig:
    """
    Hyperparameters for the coordinate-descent elastic net.

    Objective (weights w, centered data, intercept unpenalized):

        sum_i w_i (y_i - X_i b)^2 + alpha * l1_ratio * |b|_1
                                  + alpha * (1 - l1_ratio) * |b|_2^2

    Attributes
    ----------
    alpha:
        Overall penalty strength, >= 0. ``alpha=0`` is weighted least squares.
    l1_ratio:
        Mix between lasso (1.0) and ridge (0.0).
    max_iter:
        Maximum number of full coordinate sweeps.
    tol:
        Convergence threshold on the largest coefficient change in a sweep.
    diag_eps:
        A feature whose weighted sum of squares is below this gets a zero
        coefficient instead of a division by (near) zero.
    """

    alpha: float = 0.1
    l1_ratio: float = 0.5
    max_iter: int = 1000
    tol: float = 1e-6
    diag_eps: float = 1e-10

    def __post_init__(self) -> None:
        if not (np.isfinite(self.alpha) and self.alpha >= 0):
            raise ValueError(f"alpha must be a finite value >= 0; got {self.alpha}")
        if not 0.0 <= self.l1_ratio <= 1.0:
            raise ValueError(f"l1_ratio must be in [0, 1]; got {self.l1_ratio}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1; got {self.max_iter}")
        if not self.tol > 0:
            raise ValueError(f"tol must be > 0; got {self.tol}")
        if not self.diag_eps > 0:
            raise ValueError(f"diag_eps must be > 0; got {self.diag_eps}")


@dataclass
class ElasticNetFit:
    """Fitted coefficients plus solver diagnostics."""

    coef: np.ndarray
    intercept: float
    n_iter: int
    converged: bool
    zeroed: List[int] = field(default_factory=list)

    def predict(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != len(self.coef):
            raise ValueError(f"Expected X with {len(self.coef)} columns; got shape {X.shape}")
        return self.intercept + X @ self.coef


def soft_threshold(x: float, threshold: float) -> float:
    if x > threshold:
        return x - threshold
    if x < -threshold:
        return x + threshold
    return 0.0


def _validate_inputs(
    X: np.ndarray, y: np.ndarray, sample_weight: Optional[np.ndarray]
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if X.ndim != 2:
        raise ValueError(f"X must be 2-D; got shape {X.shape}")
    if y.ndim != 1 or len(y) != X.shape[0]:
        raise ValueError(f"y must be 1-D with {X.shape[0]} rows; got shape {y.shape}")
    if X.shape[0] == 0:
        raise ValueError("Cannot fit on zero rows.")
    if not (np.isfinite(X).all() and np.isfinite(y).all()):
        raise ValueError("X and y must be finite; drop or impute null rows before fitting.")

    if sample_weight is None:
        w = np.ones(len(y))
    else:
        w = np.asarray(sample_weight, dtype=float)
        if w.shape != y.shape:
            raise ValueError(f"sample_weight must have shape {y.shape}; got {w.shape}")
        if not np.isfinite(w).all() or (w < 0).any():
            raise ValueError("sample_weight must be finite and non-negative.")
    if w.sum() <= 0:
        raise ValueError("sample_weight must have a positive sum.")
    return X, y, w


def fit_elastic_net(
    X: np.ndarray,
    y: np.ndarray,
    sample_weight: Optional[np.ndarray] = None,
    config: Optional[ElasticNetConfig] = None,
) -> ElasticNetFit:
    """
    Fit a weighted elastic net by cyclic coordinate descent.

    Algorithm
    ---------
    1. Center X and y by their weighted means (the intercept is not
       penalized, so it drops out of the coordinate problem).
    2. Precompute the Gram matrix ``A = XcᵗWXc`` and ``b = XcᵗWyc``.
    3. For each feature j, the partial residual against all other current
       coefficients is ``rho_j = b_j - sum_{k != j} A_jk beta_k``; the
       update is ``soft(rho_j, alpha*l1_ratio/2) / (A_jj + alpha*(1-l1_ratio))``.
    4. Stop when the largest change in a sweep is below ``tol`` or after
       ``max_iter`` sweeps.
    5. Intercept = weighted mean residual of the original data.

    Features with ``A_jj < diag_eps`` are held at zero and listed in
    ``ElasticNetFit.zeroed``.
    """
    if config is None:
        config = ElasticNetConfig()
    X, y, w = _validate_inputs(X, y, sample_weight)

    sw = w.sum()
    x_mean = w @ X / sw
    y_mean = float(w @ y / sw)
    Xc = X - x_mean
    yc = y - y_mean

    gram = Xc.T @ (Xc * w[:, None])
    xty = Xc.T @ (w * yc)
    diag = np.diag(gram).copy()

    lam1 = config.alpha * config.l1_ratio
    lam2 = config.alpha * (1.0 - config.l1_ratio)

    n_features = X.shape[1]
    beta = np.zeros(n_features)
    zeroed = [j for j in range(n_features) if diag[j] < config.diag_eps]
    if zeroed:
        logger.debug("Zeroing degenerate features (diag < %s): %s", config.diag_eps, zeroed)
    active = [j for j in range(n_features) if j not in zeroed]

    converged = not active
    n_iter = 0
    for n_iter in range(1, config.max_iter + 1):
        if not active:
            break
        max_delta = 0.0
        for j in active:
            rho = xty[j] - gram[j] @ beta + diag[j] * beta[j]
            new = soft_threshold(rho, lam1 / 2.0) / (diag[j] + lam2)
            delta = abs(new - beta[j])
            if delta > max_delta:
                max_delta = delta
            beta[j] = new
        if max_delta < config.tol:
            converged = True
            break

    if not converged:
        logger.debug(
            "Elastic net did not converge in %s sweeps (alpha=%s, l1_ratio=%s)",
            config.max_iter,
            config.alpha,
            config.l1_ratio,
        )

    intercept = float(w @ (y - X @ beta) / sw)
    return ElasticNetFit(coef=beta, intercept=intercept, n_iter=n_iter, converged=converged, zeroed=zeroed)
