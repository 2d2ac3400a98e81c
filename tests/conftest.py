from typing import Dict

import numpy as np
import pandas as pd
import pytest

from cfb_spread_model.data.loaders.store import StatsStore

SEASON = 2025

# team -> (level, conference)
TEAMS = {
    "Alpha": ("fbs", "SEC"),
    "Bravo": ("fbs", "SEC"),
    "Charlie": ("fbs", "MAC"),
    "Delta": ("fcs", "Big Sky"),
}


def _make_games() -> pd.DataFrame:
    """
    Six completed games over three weeks, every team playing once a week.

    Alpha skips a week before g5 (2025-09-13 -> 2025-09-27).
    """
    rows = [
        ("g1", 1, "2025-09-06", "Alpha", "Bravo", False),
        ("g2", 1, "2025-09-06", "Charlie", "Delta", False),
        ("g3", 2, "2025-09-13", "Bravo", "Charlie", False),
        ("g4", 2, "2025-09-13", "Delta", "Alpha", False),
        ("g5", 3, "2025-09-27", "Alpha", "Charlie", True),
        ("g6", 3, "2025-09-20", "Bravo", "Delta", False),
    ]
    df = pd.DataFrame(rows, columns=["game_id", "week", "game_date", "home_team", "away_team", "neutral_site"])
    df["season"] = SEASON
    df["game_date"] = pd.to_datetime(df["game_date"])
    df["status"] = "final"
    df["home_score"] = [24, 35, 21, 10, 28, 42]
    df["away_score"] = [17, 14, 20, 31, 27, 7]
    return df


def _make_external_games(games: pd.DataFrame) -> pd.DataFrame:
    ext = games[["season", "week", "home_team", "away_team"]].copy()
    ext["ext_game_id"] = [f"e{i}" for i in range(1, len(ext) + 1)]
    return ext


def _team_strength(team: str) -> float:
    return {"Alpha": 0.3, "Bravo": 0.2, "Charlie": 0.0, "Delta": -0.2}[team]


def _make_team_game_stats(games: pd.DataFrame, ext: pd.DataFrame) -> pd.DataFrame:
    """Deterministic per-game metrics: strength plus a small week drift."""
    merged = games.merge(ext, on=["season", "week", "home_team", "away_team"])
    rows = []
    for _, g in merged.iterrows():
        for team in (g["home_team"], g["away_team"]):
            s = _team_strength(team)
            rows.append(
                {
                    "ext_game_id": g["ext_game_id"],
                    "season": SEASON,
                    "team": team,
                    "off_epa": s + 0.01 * g["week"],
                    "def_epa": -s / 2 + 0.02 * g["week"],
                    "off_sr": 0.40 + s / 10,
                    "def_sr": 0.40 - s / 10 + 0.005 * g["week"],
                }
            )
    return pd.DataFrame(rows)


def _make_team_season_stats() -> pd.DataFrame:
    rows = []
    for team in TEAMS:
        s = _team_strength(team)
        rows.append(
            {
                "season": SEASON,
                "team": team,
                "off_epa": s,
                "def_epa": -s / 2,
                "off_sr": 0.40 + s / 10,
                "def_sr": 0.40 - s / 10,
            }
        )
    return pd.DataFrame(rows)


def _make_team_priors() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "season": SEASON,
            "team": list(TEAMS),
            "talent": [950.0, 900.0, 650.0, 400.0],
            "returning_prod_off": [0.6, 0.5, 0.7, 0.4],
            "returning_prod_def": [0.5, 0.6, 0.4, 0.5],
        }
    )


def _make_memberships() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "season": SEASON,
            "team": list(TEAMS),
            "level": [v[0] for v in TEAMS.values()],
            "conference": [v[1] for v in TEAMS.values()],
        }
    )


def _make_ratings(scale: float = 1.0) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "season": SEASON,
            "team": list(TEAMS),
            "rating": [scale * r for r in (20.0, 12.0, -2.0, -15.0)],
        }
    )


def make_store_tables() -> Dict[str, pd.DataFrame]:
    games = _make_games()
    ext = _make_external_games(games)
    return {
        "games": games,
        "external_games": ext,
        "team_game_stats": _make_team_game_stats(games, ext),
        "team_season_stats": _make_team_season_stats(),
        "team_priors": _make_team_priors(),
        "memberships": _make_memberships(),
        "ratings": _make_ratings(),
    }


@pytest.fixture
def store_tables() -> Dict[str, pd.DataFrame]:
    """Synthetic store tables for one season (no files, no network)."""
    return make_store_tables()


@pytest.fixture
def store(store_tables) -> StatsStore:
    return StatsStore(store_tables)


@pytest.fixture
def synthetic_calibration_rows() -> pd.DataFrame:
    """
    200 CalibrationRows over weeks 1-10 where the market spread is
    0.8 * rating_diff + 2 * hfa_points + N(0, 3).
    """
    rng = np.random.default_rng(7)
    n = 200
    week = np.repeat(np.arange(1, 11), n // 10)
    rating_diff = rng.normal(0.0, 10.0, n)
    neutral = rng.random(n) < 0.25
    hfa_points = np.where(neutral, 0.0, rng.uniform(1.5, 3.5, n))
    market = 0.8 * rating_diff + 2.0 * hfa_points + rng.normal(0.0, 3.0, n)
    return pd.DataFrame(
        {
            "game_id": [f"s{i:03d}" for i in range(n)],
            "week": week,
            "home_team": [f"H{i % 40}" for i in range(n)],
            "away_team": [f"A{i % 40}" for i in range(n)],
            "rating_diff": rating_diff,
            "hfa_points": hfa_points,
            "market_spread": market,
            "row_weight": 1.0,
        }
    )
