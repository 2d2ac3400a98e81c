from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from cfb_spread_model.data.loaders.cache import SeasonCache
from cfb_spread_model.data.loaders.store import StatsStore
from cfb_spread_model.errors import InsufficientDataError
from cfb_spread_model.utils.numeric import finalize_nullable_columns, to_float_array

logger = logging.getLogger(__name__)

METRICS: Tuple[str, ...] = ("epa", "sr", "explosiveness", "ppa", "havoc")

P5_CONFERENCES: FrozenSet[str] = frozenset({"ACC", "Big Ten", "Big 12", "SEC", "Pac-12"})

_MATCH_KEY = ["season", "week", "home_team", "away_team"]


@dataclass(frozen=True)
class LoaderConfig:
    """
    Configuration for the aggregate statistics loader.

    Attributes
    ----------
    metrics:
        Efficiency metrics to assemble. Each must exist as ``off_<m>`` /
        ``def_<m>`` columns on the stats tables (absent columns read as null).
    p5_conferences:
        Conferences counted as power-five.
    p5_independents:
        FBS independents treated as power-five regardless of conference.
    completed_status:
        ``games.status`` value marking a completed game.
    strict_coverage:
        If True, a team with neither game-level nor season-level stats
        aborts the load with InsufficientDataError.
    """

    metrics: Tuple[str, ...] = METRICS
    p5_conferences: FrozenSet[str] = P5_CONFERENCES
    p5_independents: FrozenSet[str] = frozenset({"Notre Dame"})
    completed_status: str = "final"
    strict_coverage: bool = True

    def __post_init__(self) -> None:
        if not self.metrics:
            raise ValueError("LoaderConfig.metrics must not be empty.")
        if len(set(self.metrics)) != len(self.metrics):
            raise ValueError(f"LoaderConfig.metrics contains duplicates: {self.metrics}")


def metric_columns(metrics: Iterable[str]) -> List[str]:
    """Raw TeamGameRecord metric columns, in a stable order."""
    cols: List[str] = []
    for m in metrics:
        cols += [f"team_off_{m}", f"team_def_{m}", f"opp_off_{m}", f"opp_def_{m}"]
    return cols


def _side_columns(metrics: Iterable[str]) -> List[str]:
    return [f"{side}_{m}" for m in metrics for side in ("off", "def")]


def _select_metrics(df: pd.DataFrame, keys: List[str], metrics: Iterable[str]) -> pd.DataFrame:
    """Keep ``keys`` plus off/def metric columns, adding absent metrics as NaN."""
    out = df[keys].copy()
    for col in _side_columns(metrics):
        out[col] = to_float_array(df[col]) if col in df.columns else np.nan
    return out


class AggregateStatsLoader:
    """
    Assemble TeamGameRecords for a season and week window.

    One record is produced per team per completed game: the team's own
    offensive/defensive metrics and the opponent's complementary metrics.
    Each metric prefers the game-level value and falls back to the team's
    season-level aggregate; when both are absent it stays null.

    Internal games are joined to the external stats source on
    (season, week, home_team, away_team). Games without a match are skipped.
    """

    def __init__(
        self,
        store: StatsStore,
        config: Optional[LoaderConfig] = None,
        cache: Optional[SeasonCache] = None,
    ) -> None:
        self.store = store
        self.config = config or LoaderConfig()
        self.cache = cache if cache is not None else SeasonCache()

    # ------------------------------------------------------------------
    # Season-level lookups (cached)
    # ------------------------------------------------------------------
    def _compute_season_stats(self, season: int) -> pd.DataFrame:
        raw = self.store.team_season_stats(season)
        if raw["team"].duplicated().any():
            dupes = sorted(raw.loc[raw["team"].duplicated(), "team"].unique())
            raise ValueError(f"Duplicate season-level stats rows for teams: {dupes}")
        return _select_metrics(raw, ["team"], self.config.metrics)

    def season_stats(self, season: int) -> pd.DataFrame:
        return self.cache.get_or_compute(season, "team_season_stats", self._compute_season_stats)

    def _compute_priors(self, season: int) -> pd.DataFrame:
        priors = self.store.team_priors(season)[
            ["team", "talent", "returning_prod_off", "returning_prod_def"]
        ].copy()
        talent = to_float_array(priors["talent"])
        valid = np.isfinite(talent)
        priors["talent_prior"] = np.nan
        if valid.sum() >= 2:
            std = talent[valid].std()
            if std > 0:
                priors["talent_prior"] = (talent - talent[valid].mean()) / std
        return priors

    def priors(self, season: int) -> pd.DataFrame:
        return self.cache.get_or_compute(season, "team_priors", self._compute_priors)

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------
    def _matched_games(self, season: int, weeks: Optional[Iterable[int]]) -> pd.DataFrame:
        games = self.store.games(season, weeks)
        games = games[games["status"] == self.config.completed_status].copy()
        if games.empty:
            raise InsufficientDataError(
                f"No completed games for season {season}, weeks {list(weeks) if weeks else 'all'}"
            )

        ext = self.store.external_games(season, weeks)[_MATCH_KEY + ["ext_game_id"]]
        dupes = ext.duplicated(subset=_MATCH_KEY, keep="first")
        if dupes.any():
            logger.warning("Dropping %s duplicate external games on %s", int(dupes.sum()), _MATCH_KEY)
            ext = ext[~dupes]

        merged = games.merge(ext, on=_MATCH_KEY, how="left")
        unmatched = merged["ext_game_id"].isna()
        if unmatched.any():
            logger.info(
                "Skipping %s of %s completed games with no external match (season=%s)",
                int(unmatched.sum()),
                len(merged),
                season,
            )
        return merged[~unmatched].copy()

    @staticmethod
    def _to_team_long(games: pd.DataFrame) -> pd.DataFrame:
        """Expand one row per game into two rows (home and away)."""
        keep = ["game_id", "ext_game_id", "season", "week", "game_date", "neutral_site"]

        home = games[keep].copy()
        home["team"] = games["home_team"].to_numpy()
        home["opponent"] = games["away_team"].to_numpy()
        home["is_home"] = True

        away = games[keep].copy()
        away["team"] = games["away_team"].to_numpy()
        away["opponent"] = games["home_team"].to_numpy()
        away["is_home"] = False

        team_df = pd.concat([home, away], ignore_index=True)
        team_df["neutral_site"] = team_df["neutral_site"].fillna(False).astype(bool)
        return team_df

    def _resolve_metrics(self, team_df: pd.DataFrame, season: int) -> pd.DataFrame:
        """Per (ext_game_id, team): game-level metric, else season-level, else null."""
        metrics = self.config.metrics
        side_cols = _side_columns(metrics)

        game_stats = _select_metrics(self.store.team_game_stats(season), ["ext_game_id", "team"], metrics)
        game_stats = game_stats.drop_duplicates(subset=["ext_game_id", "team"], keep="first")
        season_stats = self.season_stats(season)

        keyed = team_df[["ext_game_id", "team"]].drop_duplicates()
        with_game = keyed.merge(game_stats, on=["ext_game_id", "team"], how="left", indicator="_game")
        with_season = keyed.merge(season_stats, on="team", how="left", indicator="_season")

        resolved = with_game[["ext_game_id", "team"]].copy()
        for col in side_cols:
            resolved[col] = with_game[col].to_numpy()
            missing = resolved[col].isna().to_numpy()
            resolved.loc[missing, col] = with_season.loc[missing, col].to_numpy()

        no_source = (with_game["_game"] == "left_only").to_numpy() & (
            with_season["_season"] == "left_only"
        ).to_numpy()
        if no_source.any():
            teams = sorted(set(resolved.loc[no_source, "team"]))
            message = f"Teams with neither game-level nor season-level stats in season {season}: {teams}"
            if self.config.strict_coverage:
                raise InsufficientDataError(message)
            logger.warning(message)

        return resolved

    def _add_memberships(self, team_df: pd.DataFrame, season: int) -> pd.DataFrame:
        members = self.store.memberships(season)[["team", "level", "conference"]]
        members = members.drop_duplicates(subset=["team"], keep="last")

        df = team_df.merge(members, on="team", how="left")
        opp = members.rename(
            columns={"team": "opponent", "level": "opp_level", "conference": "opp_conference"}
        )
        df = df.merge(opp, on="opponent", how="left")

        cfg = self.config
        level = df["level"].astype("string").str.lower()
        df["fbs"] = (level == "fbs").fillna(False).astype(bool)
        df["fcs"] = (level == "fcs").fillna(False).astype(bool)
        df["p5"] = df["fbs"] & (df["conference"].isin(cfg.p5_conferences) | df["team"].isin(cfg.p5_independents))
        df["g5"] = df["fbs"] & ~df["p5"]
        df["conference_game"] = (
            df["conference"].notna() & df["opp_conference"].notna() & (df["conference"] == df["opp_conference"])
        ).astype(bool)
        return df.drop(columns=["level", "opp_level"])

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def load(self, season: int, weeks: Optional[Iterable[int]] = None) -> pd.DataFrame:
        """
        Load TeamGameRecords for ``season`` restricted to ``weeks``.

        Returns
        -------
        pd.DataFrame
            Two rows per matched completed game with identifiers (game_id,
            ext_game_id, season, week, game_date, team, opponent, is_home),
            raw metrics (team_off_*, team_def_*, opp_off_*, opp_def_*) as
            nullable Float64, priors (talent, talent_prior, returning_prod_*),
            and context flags (neutral_site, conference_game, fbs, fcs, p5, g5).
        """
        weeks = list(weeks) if weeks is not None else None
        games = self._matched_games(season, weeks)
        if games.empty:
            raise InsufficientDataError(f"No completed games matched the external source for season {season}")

        team_df = self._to_team_long(games)
        resolved = self._resolve_metrics(team_df, season)

        own = resolved.rename(columns={c: f"team_{c}" for c in _side_columns(self.config.metrics)})
        opp = resolved.rename(
            columns={"team": "opponent", **{c: f"opp_{c}" for c in _side_columns(self.config.metrics)}}
        )
        df = team_df.merge(own, on=["ext_game_id", "team"], how="left")
        df = df.merge(opp, on=["ext_game_id", "opponent"], how="left")

        df = df.merge(self.priors(season), on="team", how="left")
        df = self._add_memberships(df, season)

        numeric_cols = metric_columns(self.config.metrics) + [
            "talent",
            "talent_prior",
            "returning_prod_off",
            "returning_prod_def",
        ]
        df = finalize_nullable_columns(df, numeric_cols)

        df = df.sort_values(["game_date", "game_id", "is_home"], ascending=[True, True, False])
        df = df.reset_index(drop=True)
        logger.info(
            "Loaded %s team-game records from %s games (season=%s)",
            len(df),
            df["game_id"].nunique(),
            season,
        )
        return df
