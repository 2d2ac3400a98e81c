import pandas as pd
import pytest

from cfb_spread_model.data.loaders.aggregate_stats import (
    AggregateStatsLoader,
    LoaderConfig,
    metric_columns,
)
from cfb_spread_model.data.loaders.cache import SeasonCache
from cfb_spread_model.data.loaders.store import StatsStore
from cfb_spread_model.errors import InsufficientDataError

SEASON = 2025
EPA_SR = LoaderConfig(metrics=("epa", "sr"))


def _row(df: pd.DataFrame, game_id: str, team: str) -> pd.Series:
    match = df[(df["game_id"] == game_id) & (df["team"] == team)]
    assert len(match) == 1
    return match.iloc[0]


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# SeasonCache
# ---------------------------------------------------------------------------


def test_season_cache_reuses_value_until_ttl_expires():
    clock = _FakeClock()
    cache = SeasonCache(ttl_seconds=10.0, clock=clock)
    calls = []

    def compute(season):
        calls.append(season)
        return f"value-{season}-{len(calls)}"

    assert cache.get_or_compute(2025, "k", compute) == "value-2025-1"
    clock.now = 5.0
    assert cache.get_or_compute(2025, "k", compute) == "value-2025-1"
    assert calls == [2025]

    clock.now = 11.0
    assert cache.get_or_compute(2025, "k", compute) == "value-2025-2"
    assert calls == [2025, 2025]


def test_season_cache_keys_by_season_and_generation():
    cache = SeasonCache(ttl_seconds=None)
    cache.get_or_compute(2024, "k", lambda s: s)
    cache.get_or_compute(2025, "k", lambda s: s)
    assert len(cache) == 2

    generation = cache.bump_generation()
    assert generation == 1
    assert len(cache) == 0
    assert cache.get_or_compute(2025, "k", lambda s: s + 1) == 2026


def test_season_cache_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        SeasonCache(ttl_seconds=0)


# ---------------------------------------------------------------------------
# StatsStore
# ---------------------------------------------------------------------------


def test_store_rejects_unknown_table_and_missing_columns(store_tables):
    with pytest.raises(KeyError):
        StatsStore({"not_a_table": pd.DataFrame()})

    bad = dict(store_tables)
    bad["games"] = store_tables["games"].drop(columns=["status"])
    with pytest.raises(ValueError, match="status"):
        StatsStore(bad)


def test_store_filters_by_season_and_weeks(store):
    games = store.games(SEASON, weeks=[1, 2])
    assert set(games["week"]) == {1, 2}
    assert len(games) == 4
    assert store.games(SEASON - 1).empty
    # absent table reads as empty with its required columns
    assert store.market_lines(["g1"]).empty
    assert "line_value" in store.market_lines(["g1"]).columns


def test_store_from_parquet_dir_round_trip(tmp_path, store_tables):
    for name, df in store_tables.items():
        df.to_parquet(tmp_path / f"{name}.parquet", index=False)

    store = StatsStore.from_parquet_dir(tmp_path)
    assert len(store.games(SEASON)) == len(store_tables["games"])
    assert pd.api.types.is_datetime64_any_dtype(store.table("games")["game_date"])


def test_store_from_missing_dir_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        StatsStore.from_parquet_dir(tmp_path / "nope")


# ---------------------------------------------------------------------------
# AggregateStatsLoader
# ---------------------------------------------------------------------------


def test_loader_emits_two_rows_per_game_in_date_order(store):
    df = AggregateStatsLoader(store, EPA_SR).load(SEASON)

    assert len(df) == 12
    assert df.groupby("game_id").size().eq(2).all()
    assert df["game_date"].is_monotonic_increasing
    assert list(df.loc[df["is_home"], "game_id"]) == ["g1", "g2", "g3", "g4", "g6", "g5"]

    for col in metric_columns(("epa", "sr")):
        assert str(df[col].dtype) == "Float64"


def test_loader_pairs_team_and_opponent_metrics(store):
    df = AggregateStatsLoader(store, EPA_SR).load(SEASON)

    alpha = _row(df, "g1", "Alpha")
    bravo = _row(df, "g1", "Bravo")
    assert alpha["opponent"] == "Bravo"
    assert alpha["team_off_epa"] == pytest.approx(0.31)
    assert alpha["opp_off_epa"] == pytest.approx(bravo["team_off_epa"])
    assert alpha["opp_def_epa"] == pytest.approx(bravo["team_def_epa"])


def test_loader_falls_back_to_season_stats(store_tables):
    stats = store_tables["team_game_stats"]
    store_tables["team_game_stats"] = stats[~((stats["ext_game_id"] == "e3") & (stats["team"] == "Bravo"))]
    df = AggregateStatsLoader(StatsStore(store_tables), EPA_SR).load(SEASON)

    # game-level would have been 0.2 + 0.02 for week 2
    assert _row(df, "g3", "Bravo")["team_off_epa"] == pytest.approx(0.2)
    assert _row(df, "g3", "Charlie")["opp_off_epa"] == pytest.approx(0.2)
    assert _row(df, "g1", "Bravo")["team_off_epa"] == pytest.approx(0.21)


def test_loader_keeps_unavailable_metrics_null(store):
    df = AggregateStatsLoader(store, LoaderConfig(metrics=("epa", "havoc"))).load(SEASON)

    assert df["team_off_havoc"].isna().all()
    assert df["opp_def_havoc"].isna().all()
    assert df["team_off_epa"].notna().all()


def test_loader_raises_when_team_has_no_stats_at_all(store_tables):
    stats = store_tables["team_game_stats"]
    store_tables["team_game_stats"] = stats[~((stats["ext_game_id"] == "e3") & (stats["team"] == "Bravo"))]
    season = store_tables["team_season_stats"]
    store_tables["team_season_stats"] = season[season["team"] != "Bravo"]

    with pytest.raises(InsufficientDataError, match="Bravo"):
        AggregateStatsLoader(StatsStore(store_tables), EPA_SR).load(SEASON)

    lenient = LoaderConfig(metrics=("epa", "sr"), strict_coverage=False)
    df = AggregateStatsLoader(StatsStore(store_tables), lenient).load(SEASON)
    assert pd.isna(_row(df, "g3", "Bravo")["team_off_epa"])
    assert pd.isna(_row(df, "g3", "Charlie")["opp_def_epa"])


def test_loader_skips_unmatched_and_incomplete_games(store_tables):
    ext = store_tables["external_games"]
    store_tables["external_games"] = ext[ext["home_team"] != "Bravo"]
    games = store_tables["games"].copy()
    games.loc[games["game_id"] == "g2", "status"] = "scheduled"
    store_tables["games"] = games

    df = AggregateStatsLoader(StatsStore(store_tables), EPA_SR).load(SEASON)
    assert set(df["game_id"]) == {"g1", "g4", "g5"}


def test_loader_raises_without_completed_games(store):
    with pytest.raises(InsufficientDataError):
        AggregateStatsLoader(store, EPA_SR).load(SEASON, weeks=[9])


def test_loader_tier_flags_and_conference_games(store):
    df = AggregateStatsLoader(store, EPA_SR).load(SEASON)

    alpha = _row(df, "g1", "Alpha")
    charlie = _row(df, "g2", "Charlie")
    delta = _row(df, "g2", "Delta")
    assert alpha["p5"] and alpha["fbs"] and not alpha["g5"]
    assert charlie["g5"] and not charlie["p5"]
    assert delta["fcs"] and not delta["fbs"] and not delta["p5"] and not delta["g5"]

    assert bool(alpha["conference_game"]) is True
    assert bool(_row(df, "g3", "Bravo")["conference_game"]) is False


def test_loader_talent_prior_is_season_z_score(store):
    df = AggregateStatsLoader(store, EPA_SR).load(SEASON)
    priors = df.drop_duplicates("team").set_index("team")["talent_prior"].astype(float)

    assert priors.mean() == pytest.approx(0.0, abs=1e-9)
    assert priors["Alpha"] > priors["Bravo"] > priors["Charlie"] > priors["Delta"]


def test_loader_caches_season_tables(store):
    cache = SeasonCache()
    loader = AggregateStatsLoader(store, EPA_SR, cache=cache)
    loader.load(SEASON)
    assert len(cache) == 2
    loader.load(SEASON, weeks=[1, 2])
    assert len(cache) == 2
