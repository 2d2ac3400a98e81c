from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Mapping

import numpy as np


@dataclass(frozen=True)
class BlendConfig:
    """
    Linear blend of the primary power rating with a secondary ranking system.

    ``weight`` is supplied from outside (it is fit out-of-band) and treated
    as a constant for a model version, together with the season
    normalization statistics of both systems.

    Attributes
    ----------
    weight:
        Weight on the primary rating's z-score, in [0, 1].
    primary_mean, primary_std:
        Season mean/std of the primary rating.
    secondary_mean, secondary_std:
        Season mean/std of the secondary rating.
    """

    weight: float
    primary_mean: float
    primary_std: float
    secondary_mean: float
    secondary_std: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.weight <= 1.0:
            raise ValueError(f"weight must be in [0, 1]; got {self.weight}")
        for name in ("primary_std", "secondary_std"):
            value = getattr(self, name)
            if not (np.isfinite(value) and value > 0):
                raise ValueError(f"{name} must be > 0; got {value}")
        for name in ("primary_mean", "secondary_mean"):
            if not np.isfinite(getattr(self, name)):
                raise ValueError(f"{name} must be finite; got {getattr(self, name)}")

    @classmethod
    def from_dict(cls, payload: Mapping[str, float]) -> "BlendConfig":
        return cls(**{k: float(payload[k]) for k in cls.__dataclass_fields__})

    @classmethod
    def from_json(cls, path: Path) -> "BlendConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_json(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f, indent=2, sort_keys=True)


class RatingBlender:
    """
    Combine two rating systems into one home-minus-away rating difference.

    Both ratings are turned into z-scores, blended with the stored weight,
    differenced, and scaled back by the primary std. The means cancel in
    the difference, so only the std is needed to return to primary units.
    Where either team lacks a secondary rating, the raw primary difference
    is used instead.
    """

    def __init__(self, config: BlendConfig | None) -> None:
        self.config = config

    def blend_diff_array(
        self,
        home_primary: np.ndarray,
        away_primary: np.ndarray,
        home_secondary: np.ndarray,
        away_secondary: np.ndarray,
    ) -> np.ndarray:
        hp = np.asarray(home_primary, dtype=float)
        ap = np.asarray(away_primary, dtype=float)
        hs = np.asarray(home_secondary, dtype=float)
        as_ = np.asarray(away_secondary, dtype=float)

        raw = hp - ap
        if self.config is None:
            return raw

        cfg = self.config
        w = cfg.weight

        def _blend(primary: np.ndarray, secondary: np.ndarray) -> np.ndarray:
            zp = (primary - cfg.primary_mean) / cfg.primary_std
            zs = (secondary - cfg.secondary_mean) / cfg.secondary_std
            return w * zp + (1.0 - w) * zs

        blended = (_blend(hp, hs) - _blend(ap, as_)) * cfg.primary_std
        has_secondary = np.isfinite(hs) & np.isfinite(as_)
        return np.where(has_secondary, blended, raw)

    def blend_diff(
        self,
        home_primary: float,
        away_primary: float,
        home_secondary: float | None = None,
        away_secondary: float | None = None,
    ) -> float:
        """Scalar version of ``blend_diff_array``; raises if a primary rating is missing."""
        if home_primary is None or away_primary is None:
            raise ValueError("Both primary ratings are required to compute a rating difference.")
        nan = float("nan")
        out = self.blend_diff_array(
            np.array([home_primary]),
            np.array([away_primary]),
            np.array([nan if home_secondary is None else home_secondary]),
            np.array([nan if away_secondary is None else away_secondary]),
        )
        return float(out[0])
