from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import numpy as np

from cfb_spread_model.models.calibration import QUADRATIC_FEATURE, FittedModel
from cfb_spread_model.models.hfa import HFAConfig
from cfb_spread_model.serving.blend import RatingBlender

logger = logging.getLogger(__name__)

RATING_FEATURE = "rating_diff"
HFA_FEATURE = "hfa_points"


class UngatedModelError(RuntimeError):
    """Raised when a model that failed its gates is used for prediction."""


@dataclass(frozen=True)
class SpreadPrediction:
    """
    Model output for one game, home-minus-away throughout
    (positive means the home team is favored).
    """

    home_team: str
    away_team: str
    rating_diff: float
    hfa_points: float
    predicted_spread: float
    market_spread: Optional[float]
    edge: Optional[float]


class SpreadPredictor:
    """
    Apply a persisted FittedModel to individual games.

    Predicted spread = intercept + b_rating * rating_diff + b_hfa * hfa_points
    (+ b_sq * rating_diff^2 and any further model features, which the caller
    must supply). Edge = predicted spread - market spread.
    Inputs are clipped to the winsorize bounds the model was fit under, so
    out-of-range values do not extrapolate past the fitted range.
    """

    def __init__(
        self,
        model: FittedModel,
        hfa: HFAConfig,
        blender: RatingBlender | None = None,
        allow_ungated: bool = False,
    ) -> None:
        if not model.gates_passed and not allow_ungated:
            failed = [r.name for r in model.gate_report.failures()]
            raise UngatedModelError(
                f"Model {model.key} failed gates {failed}; pass allow_ungated=True for diagnostic use."
            )
        self.model = model
        self.hfa = hfa
        self.blender = blender if blender is not None else RatingBlender(None)

    def _feature_values(
        self,
        rating_diff: float,
        hfa_points: float,
        extra: Mapping[str, float],
    ) -> Dict[str, float]:
        values = {RATING_FEATURE: rating_diff, HFA_FEATURE: hfa_points, QUADRATIC_FEATURE: rating_diff**2}
        values.update(extra)
        missing = [f for f in self.model.features if f not in values]
        if missing:
            raise ValueError(f"Model {self.model.key} needs values for features: {missing}")
        bad = [f for f in self.model.features if not np.isfinite(values[f])]
        if bad:
            raise ValueError(f"Non-finite feature values for: {bad}")
        for f, (lo, hi) in self.model.winsor_bounds.items():
            if f in values:
                values[f] = min(hi, max(lo, float(values[f])))
        return values

    def predict_game(
        self,
        home_team: str,
        away_team: str,
        home_rating: float,
        away_rating: float,
        neutral_site: bool = False,
        home_secondary: float | None = None,
        away_secondary: float | None = None,
        market_spread: float | None = None,
        extra_features: Mapping[str, float] | None = None,
    ) -> SpreadPrediction:
        rating_diff = self.blender.blend_diff(home_rating, away_rating, home_secondary, away_secondary)
        hfa_points = self.hfa.points(home_team, neutral_site)
        values = self._feature_values(rating_diff, hfa_points, extra_features or {})

        predicted = self.model.intercept + sum(
            self.model.coefficients[f] * values[f] for f in self.model.features
        )
        edge = None
        if market_spread is not None and np.isfinite(market_spread):
            edge = predicted - float(market_spread)

        return SpreadPrediction(
            home_team=home_team,
            away_team=away_team,
            rating_diff=rating_diff,
            hfa_points=hfa_points,
            predicted_spread=float(predicted),
            market_spread=None if market_spread is None else float(market_spread),
            edge=None if edge is None else float(edge),
        )
