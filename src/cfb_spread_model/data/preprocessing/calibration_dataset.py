from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from cfb_spread_model.data.loaders.aggregate_stats import LoaderConfig
from cfb_spread_model.data.loaders.store import StatsStore
from cfb_spread_model.errors import InsufficientDataError
from cfb_spread_model.models.hfa import HFAConfig
from cfb_spread_model.serving.blend import RatingBlender
from cfb_spread_model.utils.numeric import to_float_array

logger = logging.getLogger(__name__)

MATCHUP_TIERS: Tuple[str, ...] = ("P5_P5", "P5_G5", "P5_FCS", "G5_G5", "G5_FCS")
TIER_DUMMIES: Dict[str, str] = {"P5_P5": "is_p5_p5", "P5_G5": "is_p5_g5", "G5_G5": "is_g5_g5"}
_TIER_RANK = {"P5": 0, "G5": 1, "FCS": 2}

# Lines beyond this are data errors, not spreads.
JUNK_SPREAD_ABS = 60.0
# Consensus spreads are clipped to this range before fitting.
TARGET_CLIP = 35.0


@dataclass(frozen=True)
class DatasetSpec:
    """
    One calibration data subset.

    Attributes
    ----------
    label:
        Short name ("A", "B").
    weeks:
        Weeks included.
    fbs_only:
        Keep only games where both teams are FBS.
    allowed_tiers:
        Matchup tiers kept; None keeps all five.
    min_books:
        Minimum distinct books behind the consensus spread.
    pre_kick_hours:
        If set, only lines stamped within this many hours before kickoff
        (and strictly before it) count.
    row_weight:
        Observation weight for the elastic net.
    gate_preset:
        Name of the GateThresholds preset matching this subset's quality.
    """

    label: str
    weeks: Tuple[int, ...]
    fbs_only: bool = False
    allowed_tiers: Optional[FrozenSet[str]] = None
    min_books: int = 1
    pre_kick_hours: Optional[float] = None
    row_weight: float = 1.0
    gate_preset: str = "broad"

    def __post_init__(self) -> None:
        if not self.weeks:
            raise ValueError(f"DatasetSpec {self.label} needs at least one week.")
        if self.min_books < 1:
            raise ValueError(f"min_books must be >= 1; got {self.min_books}")
        if not 0.0 < self.row_weight <= 1.0:
            raise ValueError(f"row_weight must be in (0, 1]; got {self.row_weight}")
        if self.pre_kick_hours is not None and self.pre_kick_hours <= 0:
            raise ValueError(f"pre_kick_hours must be > 0; got {self.pre_kick_hours}")
        if self.allowed_tiers is not None:
            unknown = set(self.allowed_tiers) - set(MATCHUP_TIERS)
            if unknown:
                raise ValueError(f"Unknown matchup tiers: {sorted(unknown)}")


DATASET_PRESETS: Dict[str, DatasetSpec] = {
    "A": DatasetSpec(
        label="A",
        weeks=tuple(range(8, 12)),
        fbs_only=True,
        min_books=3,
        pre_kick_hours=24.0,
        row_weight=1.0,
        gate_preset="high_quality",
    ),
    "B": DatasetSpec(
        label="B",
        weeks=tuple(range(1, 12)),
        allowed_tiers=frozenset({"P5_P5", "P5_G5"}),
        row_weight=0.6,
        gate_preset="broad",
    ),
}


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


def team_tier(
    team: str,
    level: Optional[str],
    conference: Optional[str],
    config: LoaderConfig | None = None,
) -> Optional[str]:
    """"P5", "G5", "FCS", or None when membership is unknown."""
    if config is None:
        config = LoaderConfig()
    if level is None or pd.isna(level):
        return None
    level = str(level).lower()
    if level == "fcs":
        return "FCS"
    if level != "fbs":
        return None
    if team in config.p5_independents or conference in config.p5_conferences:
        return "P5"
    return "G5"


def matchup_tier(home_tier: Optional[str], away_tier: Optional[str]) -> Optional[str]:
    """Ordered tier pair (stronger tier first), or None outside the five known matchups."""
    if home_tier is None or away_tier is None:
        return None
    hi, lo = sorted([home_tier, away_tier], key=_TIER_RANK.__getitem__)
    tier = f"{hi}_{lo}"
    return tier if tier in MATCHUP_TIERS else None


# ---------------------------------------------------------------------------
# Market consensus
# ---------------------------------------------------------------------------


def consensus_spreads(
    lines: pd.DataFrame,
    games: pd.DataFrame,
    min_books: int = 1,
    pre_kick_hours: Optional[float] = None,
) -> pd.DataFrame:
    """
    Consensus home-minus-away spread per game.

    A line of -7 quoted for the home team means the home team is favored by
    7, so its home-minus-away value is +7; the same line quoted for the away
    team is -7. Lines quoted for neither team and lines with |value| > 60 are
    discarded. The consensus is the median across books of each book's
    median line.

    Returns
    -------
    pd.DataFrame
        Columns game_id, market_spread_raw, n_books, for games with at least
        ``min_books`` books.
    """
    cols = ["game_id", "market_spread_raw", "n_books"]
    if lines.empty:
        return pd.DataFrame(columns=cols)

    df = lines[lines["line_type"] == "spread"].merge(
        games[["game_id", "home_team", "away_team", "game_date"]], on="game_id", how="inner"
    )
    value = to_float_array(df["line_value"])
    df["hma"] = np.where(
        df["team"] == df["home_team"],
        -value,
        np.where(df["team"] == df["away_team"], value, np.nan),
    )

    unattributed = np.isnan(df["hma"].to_numpy()) & np.isfinite(value)
    if unattributed.any():
        logger.debug("Dropping %s lines quoted for a team not in the game", int(unattributed.sum()))
    junk = np.abs(df["hma"].to_numpy()) > JUNK_SPREAD_ABS
    if junk.any():
        logger.debug("Dropping %s junk lines with |spread| > %s", int(junk.sum()), JUNK_SPREAD_ABS)
    df = df[np.isfinite(df["hma"].to_numpy()) & ~junk]

    if pre_kick_hours is not None:
        window_start = df["game_date"] - pd.Timedelta(hours=pre_kick_hours)
        df = df[(df["timestamp"] < df["game_date"]) & (df["timestamp"] >= window_start)]

    if df.empty:
        return pd.DataFrame(columns=cols)

    per_book = df.groupby(["game_id", "book"])["hma"].median().reset_index()
    consensus = per_book.groupby("game_id").agg(
        market_spread_raw=("hma", "median"),
        n_books=("book", "nunique"),
    )
    consensus = consensus.reset_index()
    thin = consensus["n_books"] < min_books
    if thin.any():
        logger.info("Dropping %s games with fewer than %s books", int(thin.sum()), min_books)
    return consensus[~thin][cols].reset_index(drop=True)


# ---------------------------------------------------------------------------
# Calibration rows
# ---------------------------------------------------------------------------


def _season_talent_z(store: StatsStore, season: int) -> Dict[str, float]:
    priors = store.team_priors(season)
    talent = to_float_array(priors["talent"])
    valid = np.isfinite(talent)
    if valid.sum() < 2 or talent[valid].std() == 0:
        return {}
    z = (talent - talent[valid].mean()) / talent[valid].std()
    return {team: float(v) for team, v in zip(priors["team"], z) if np.isfinite(v)}


def _rating_map(df: pd.DataFrame) -> Dict[str, float]:
    values = to_float_array(df["rating"])
    return {team: float(v) for team, v in zip(df["team"], values) if np.isfinite(v)}


def _rows_for_spec(
    store: StatsStore,
    season: int,
    spec: DatasetSpec,
    blender: RatingBlender,
    hfa: HFAConfig,
    loader_config: LoaderConfig,
) -> pd.DataFrame:
    games = store.games(season, spec.weeks)
    games = games[games["status"] == loader_config.completed_status].copy()
    if games.empty:
        return pd.DataFrame()

    members = store.memberships(season).drop_duplicates(subset=["team"], keep="last").set_index("team")

    def _tier(team: str) -> Optional[str]:
        if team not in members.index:
            return None
        row = members.loc[team]
        return team_tier(team, row["level"], row["conference"], loader_config)

    games["home_tier"] = games["home_team"].map(_tier)
    games["away_tier"] = games["away_team"].map(_tier)
    games["matchup_tier"] = [matchup_tier(h, a) for h, a in zip(games["home_tier"], games["away_tier"])]

    outside = games["matchup_tier"].isna()
    if outside.any():
        logger.info("Set %s: dropping %s games outside the five matchup tiers", spec.label, int(outside.sum()))
    games = games[~outside]
    if spec.fbs_only:
        games = games[(games["home_tier"] != "FCS") & (games["away_tier"] != "FCS")]
    if spec.allowed_tiers is not None:
        games = games[games["matchup_tier"].isin(spec.allowed_tiers)]
    if games.empty:
        return pd.DataFrame()

    market = consensus_spreads(store.market_lines(games["game_id"]), games, spec.min_books, spec.pre_kick_hours)
    df = games.merge(market, on="game_id", how="inner")

    primary = _rating_map(store.ratings(season))
    secondary = _rating_map(store.secondary_ratings(season))
    df["home_rating"] = df["home_team"].map(primary)
    df["away_rating"] = df["away_team"].map(primary)
    unrated = df["home_rating"].isna() | df["away_rating"].isna()
    if unrated.any():
        logger.info("Set %s: dropping %s games without a primary rating for both teams", spec.label, int(unrated.sum()))
    df = df[~unrated].copy()

    df["rating_diff"] = blender.blend_diff_array(
        df["home_rating"].to_numpy(dtype=float),
        df["away_rating"].to_numpy(dtype=float),
        to_float_array(df["home_team"].map(secondary)),
        to_float_array(df["away_team"].map(secondary)),
    )
    df["hfa_points"] = [
        hfa.points(team, bool(neutral))
        for team, neutral in zip(df["home_team"], df["neutral_site"].fillna(False))
    ]
    for tier, col in TIER_DUMMIES.items():
        df[col] = (df["matchup_tier"] == tier).astype(float)

    talent_z = _season_talent_z(store, season)
    df["talent_diff_z"] = to_float_array(df["home_team"].map(talent_z)) - to_float_array(
        df["away_team"].map(talent_z)
    )

    df["market_spread"] = np.clip(to_float_array(df["market_spread_raw"]), -TARGET_CLIP, TARGET_CLIP)
    df["set_label"] = spec.label
    df["row_weight"] = spec.row_weight
    return df


CALIBRATION_COLUMNS: List[str] = [
    "game_id",
    "season",
    "week",
    "game_date",
    "home_team",
    "away_team",
    "neutral_site",
    "set_label",
    "row_weight",
    "matchup_tier",
    "home_rating",
    "away_rating",
    "rating_diff",
    "hfa_points",
    *TIER_DUMMIES.values(),
    "talent_diff_z",
    "n_books",
    "market_spread_raw",
    "market_spread",
]


def build_calibration_rows(
    store: StatsStore,
    season: int,
    specs: Sequence[DatasetSpec],
    hfa: HFAConfig,
    blender: RatingBlender | None = None,
    loader_config: LoaderConfig | None = None,
) -> pd.DataFrame:
    """
    Build CalibrationRows for the given subsets.

    A game qualifying for more than one subset is kept once, from the
    subset listed first (list the higher-quality subset first).

    Raises
    ------
    InsufficientDataError
        If no subset yields a single row.
    """
    if not specs:
        raise ValueError("At least one DatasetSpec is required.")
    if blender is None:
        blender = RatingBlender(None)
    if loader_config is None:
        loader_config = LoaderConfig()

    frames = []
    for spec in specs:
        rows = _rows_for_spec(store, season, spec, blender, hfa, loader_config)
        logger.info("Set %s: %s calibration rows (weeks %s-%s)", spec.label, len(rows), min(spec.weeks), max(spec.weeks))
        if not rows.empty:
            frames.append(rows[CALIBRATION_COLUMNS])

    if not frames:
        raise InsufficientDataError(f"No calibration rows for season {season} in sets {[s.label for s in specs]}")

    df = pd.concat(frames, ignore_index=True)
    df = df.drop_duplicates(subset=["game_id"], keep="first")
    return df.sort_values(["week", "game_date", "game_id"]).reset_index(drop=True)


def add_engineered_diffs(
    rows: pd.DataFrame,
    features: pd.DataFrame,
    columns: Iterable[str],
    flag_columns: Iterable[str] = ("low_sample_3g",),
) -> pd.DataFrame:
    """
    Attach home-minus-away differences of EngineeredFeatureRow columns.

    Adds ``diff_<col>`` for each column (null if either side is null) and
    ``home_<flag>`` / ``away_<flag>`` for each low-sample flag.
    """
    columns = list(columns)
    flag_columns = [c for c in flag_columns if c in features.columns]
    missing = [c for c in columns if c not in features.columns]
    if missing:
        raise KeyError(f"Engineered features missing columns: {missing}")

    side = features[["game_id", "team"] + columns + flag_columns]
    home = side.rename(columns={"team": "home_team", **{c: f"home_{c}" for c in columns + flag_columns}})
    away = side.rename(columns={"team": "away_team", **{c: f"away_{c}" for c in columns + flag_columns}})

    df = rows.merge(home, on=["game_id", "home_team"], how="left")
    df = df.merge(away, on=["game_id", "away_team"], how="left")
    for col in columns:
        df[f"diff_{col}"] = to_float_array(df[f"home_{col}"]) - to_float_array(df[f"away_{col}"])
    df = df.drop(columns=[f"{s}_{c}" for c in columns for s in ("home", "away")])
    for flag in flag_columns:
        for s in ("home", "away"):
            df[f"{s}_{flag}"] = df[f"{s}_{flag}"].fillna(True).astype(bool)
    return df
