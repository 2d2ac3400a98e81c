from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

import pandas as pd

from cfb_spread_model.config import DATA_CONFIG

logger = logging.getLogger(__name__)

# Minimum columns each store table must expose. Metric columns on the stats
# tables are optional: a missing metric column reads as null.
TABLE_COLUMNS: Dict[str, List[str]] = {
    "games": [
        "game_id",
        "season",
        "week",
        "game_date",
        "home_team",
        "away_team",
        "neutral_site",
        "status",
    ],
    "external_games": ["ext_game_id", "season", "week", "home_team", "away_team"],
    "team_game_stats": ["ext_game_id", "season", "team"],
    "team_season_stats": ["season", "team"],
    "team_priors": ["season", "team", "talent", "returning_prod_off", "returning_prod_def"],
    "memberships": ["season", "team", "level", "conference"],
    "market_lines": ["game_id", "book", "team", "line_value", "timestamp", "line_type"],
    "ratings": ["season", "team", "rating"],
    "secondary_ratings": ["season", "team", "rating"],
}

_DATETIME_COLUMNS = {"games": "game_date", "market_lines": "timestamp"}


def _weeks_list(weeks: Optional[Iterable[int]]) -> List[int]:
    if weeks is None:
        return []
    return sorted(int(w) for w in weeks)


class StatsStore:
    """
    Read-only bulk accessor over the statistics/market data store.

    The store itself (schema, ingestion, provider adapters) lives outside
    this package; what this class sees is a set of named tables, each read
    in bulk by season and, where it applies, by week range.

    Typical usage
    -------------
        store = StatsStore.from_parquet_dir()          # data/raw/<table>.parquet
        games = store.games(2025, weeks=range(8, 12))

    Tests and notebooks build it directly from DataFrames:

        store = StatsStore({"games": games_df, "team_game_stats": stats_df, ...})
    """

    def __init__(self, tables: Mapping[str, pd.DataFrame]) -> None:
        unknown = set(tables) - set(TABLE_COLUMNS)
        if unknown:
            raise KeyError(f"Unknown store tables: {sorted(unknown)}")

        self._tables: Dict[str, pd.DataFrame] = {}
        for name, required in TABLE_COLUMNS.items():
            df = tables.get(name)
            if df is None:
                df = pd.DataFrame(columns=required)
            missing = [c for c in required if c not in df.columns]
            if missing:
                raise ValueError(f"Store table '{name}' is missing required columns: {missing}")

            df = df.copy()
            dt_col = _DATETIME_COLUMNS.get(name)
            if dt_col is not None and not pd.api.types.is_datetime64_any_dtype(df[dt_col]):
                df[dt_col] = pd.to_datetime(df[dt_col])
            self._tables[name] = df

    @classmethod
    def from_parquet_dir(cls, path: Path | None = None) -> "StatsStore":
        """Build a store from ``<path>/<table>.parquet`` files; absent files read as empty tables."""
        if path is None:
            path = DATA_CONFIG.raw_data_dir
        path = Path(path)
        if not path.is_dir():
            raise FileNotFoundError(f"Data store directory not found: {path}")

        tables: Dict[str, pd.DataFrame] = {}
        for name in TABLE_COLUMNS:
            filepath = path / f"{name}.parquet"
            if filepath.exists():
                tables[name] = pd.read_parquet(filepath)
            else:
                logger.warning("Store table %s not found at %s; treating as empty", name, filepath)
        return cls(tables)

    # ------------------------------------------------------------------
    # Bulk readers
    # ------------------------------------------------------------------
    def table(self, name: str) -> pd.DataFrame:
        if name not in self._tables:
            raise KeyError(f"Unknown store table: {name}")
        return self._tables[name].copy()

    def _by_season(self, name: str, season: int, weeks: Optional[Iterable[int]] = None) -> pd.DataFrame:
        df = self._tables[name]
        mask = df["season"] == season
        week_list = _weeks_list(weeks)
        if week_list:
            mask &= df["week"].isin(week_list)
        return df[mask].copy()

    def games(self, season: int, weeks: Optional[Iterable[int]] = None) -> pd.DataFrame:
        return self._by_season("games", season, weeks)

    def external_games(self, season: int, weeks: Optional[Iterable[int]] = None) -> pd.DataFrame:
        return self._by_season("external_games", season, weeks)

    def team_game_stats(self, season: int) -> pd.DataFrame:
        return self._by_season("team_game_stats", season)

    def team_season_stats(self, season: int) -> pd.DataFrame:
        return self._by_season("team_season_stats", season)

    def team_priors(self, season: int) -> pd.DataFrame:
        return self._by_season("team_priors", season)

    def memberships(self, season: int) -> pd.DataFrame:
        return self._by_season("memberships", season)

    def ratings(self, season: int) -> pd.DataFrame:
        return self._by_season("ratings", season)

    def secondary_ratings(self, season: int) -> pd.DataFrame:
        return self._by_season("secondary_ratings", season)

    def market_lines(self, game_ids: Iterable[str]) -> pd.DataFrame:
        df = self._tables["market_lines"]
        return df[df["game_id"].isin(list(game_ids))].copy()
