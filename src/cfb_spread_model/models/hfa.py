from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_LEAGUE_HFA = 2.0


@dataclass(frozen=True)
class HFAConfig:
    """
    Home-field advantage in points, per team.

    Attributes
    ----------
    base_points:
        League-wide HFA.
    team_adjustments:
        Per-team offset added to ``base_points``. Teams without an entry use
        the base alone.
    clip_min, clip_max:
        Range the per-team value is clipped to.
    """

    base_points: float = DEFAULT_LEAGUE_HFA
    team_adjustments: Mapping[str, float] = field(default_factory=dict)
    clip_min: float = 0.5
    clip_max: float = 5.0

    def __post_init__(self) -> None:
        if self.clip_min > self.clip_max:
            raise ValueError(f"clip_min {self.clip_min} > clip_max {self.clip_max}")
        if not np.isfinite(self.base_points):
            raise ValueError(f"base_points must be finite; got {self.base_points}")
        bad = {t: v for t, v in self.team_adjustments.items() if not np.isfinite(v)}
        if bad:
            raise ValueError(f"team_adjustments must be finite; got {bad}")

    def points(self, home_team: str, neutral_site: bool) -> float:
        """HFA credited to ``home_team``; zero at a neutral site."""
        if neutral_site:
            return 0.0
        raw = self.base_points + self.team_adjustments.get(home_team, 0.0)
        return float(min(self.clip_max, max(self.clip_min, raw)))

    def to_dict(self) -> Dict[str, object]:
        return {
            "base_points": self.base_points,
            "team_adjustments": dict(self.team_adjustments),
            "clip_min": self.clip_min,
            "clip_max": self.clip_max,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "HFAConfig":
        return cls(
            base_points=float(payload.get("base_points", DEFAULT_LEAGUE_HFA)),
            team_adjustments={str(k): float(v) for k, v in dict(payload.get("team_adjustments", {})).items()},
            clip_min=float(payload.get("clip_min", 0.5)),
            clip_max=float(payload.get("clip_max", 5.0)),
        )

    @classmethod
    def from_json(cls, path: Path) -> "HFAConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_json(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)


@dataclass(frozen=True)
class HFAEstimationConfig:
    """
    Empirical-Bayes settings for per-team HFA.

    Attributes
    ----------
    shrinkage_k:
        Prior strength in games: weight on a team's own estimate is n / (n + k).
    low_sample_games, low_sample_max_weight:
        Teams with fewer games than ``low_sample_games`` get at most
        ``low_sample_max_weight`` on their own estimate.
    min_games:
        Below this, the team just gets the league value.
    outlier_abs:
        Team estimates beyond this magnitude are left out of the league median.
    league_min, league_max:
        Clamp for the league median.
    clip_min, clip_max:
        Range of the final per-team HFA.
    """

    shrinkage_k: float = 8.0
    low_sample_games: int = 4
    low_sample_max_weight: float = 0.4
    min_games: int = 2
    outlier_abs: float = 20.0
    league_min: float = 1.0
    league_max: float = 4.0
    clip_min: float = 0.5
    clip_max: float = 5.0

    def __post_init__(self) -> None:
        if self.shrinkage_k < 0:
            raise ValueError(f"shrinkage_k must be >= 0; got {self.shrinkage_k}")
        if not 0.0 <= self.low_sample_max_weight <= 1.0:
            raise ValueError(f"low_sample_max_weight must be in [0, 1]; got {self.low_sample_max_weight}")
        if self.league_min > self.league_max or self.clip_min > self.clip_max:
            raise ValueError("HFA ranges must satisfy min <= max.")


def _team_residuals(games: pd.DataFrame, ratings: Mapping[str, float]) -> pd.DataFrame:
    """
    One row per (team, game) carrying the game's home boost: home margin
    minus the rating difference, for both participants.
    """
    df = games[~games["neutral_site"].fillna(False).astype(bool)].copy()
    df = df[df["home_score"].notna() & df["away_score"].notna()]
    df["home_rating"] = df["home_team"].map(ratings)
    df["away_rating"] = df["away_team"].map(ratings)
    unrated = df["home_rating"].isna() | df["away_rating"].isna()
    if unrated.any():
        logger.info("Skipping %s games with an unrated team for HFA estimation", int(unrated.sum()))
    df = df[~unrated]

    boost = (df["home_score"] - df["away_score"]) - (df["home_rating"] - df["away_rating"])
    home = pd.DataFrame({"team": df["home_team"].to_numpy(), "residual": boost.to_numpy()})
    away = pd.DataFrame({"team": df["away_team"].to_numpy(), "residual": boost.to_numpy()})
    return pd.concat([home, away], ignore_index=True)


def league_hfa(team_estimates: pd.Series, config: HFAEstimationConfig) -> float:
    values = team_estimates[team_estimates.abs() <= config.outlier_abs]
    if values.empty:
        return DEFAULT_LEAGUE_HFA
    return float(min(config.league_max, max(config.league_min, values.median())))


def estimate_team_hfa(
    games: pd.DataFrame,
    ratings: Mapping[str, float],
    config: HFAEstimationConfig | None = None,
) -> HFAConfig:
    """
    Estimate per-team HFA from completed games with shrinkage to the league value.

    Each non-neutral game's home boost is the home margin minus the rating
    difference. A team's raw HFA is the mean boost over the games it played,
    home and away. The boost is always measured from the home side and is
    not sign-flipped for the road team: a road game records the venue edge
    the team faced rather than how it performed. Raw values are shrunk toward
    the league median by w = n / (n + k), capped for small samples, and
    clipped to [clip_min, clip_max]. The stored adjustment is the clipped
    value minus the league value, so an unclipped team carries
    w * (raw - league) and a team at the league value carries zero.
    """
    if config is None:
        config = HFAEstimationConfig()
    required = ["home_team", "away_team", "home_score", "away_score", "neutral_site"]
    missing = [c for c in required if c not in games.columns]
    if missing:
        raise KeyError(f"HFA estimation requires missing columns: {missing}")

    residuals = _team_residuals(games, ratings)
    per_team = residuals.groupby("team")["residual"].agg(["mean", "count"])
    league = league_hfa(per_team["mean"], config)

    adjustments: Dict[str, float] = {}
    for team, row in per_team.iterrows():
        n = int(row["count"])
        if n < config.min_games:
            adjustments[str(team)] = 0.0
            continue
        weight = n / (n + config.shrinkage_k)
        if n < config.low_sample_games:
            weight = min(weight, config.low_sample_max_weight)
        shrunk = weight * float(row["mean"]) + (1.0 - weight) * league
        used = min(config.clip_max, max(config.clip_min, shrunk))
        adjustments[str(team)] = used - league

    logger.info("Estimated HFA for %s teams (league=%.2f)", len(adjustments), league)
    return HFAConfig(
        base_points=league,
        team_adjustments=adjustments,
        clip_min=config.clip_min,
        clip_max=config.clip_max,
    )
