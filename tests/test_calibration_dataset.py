import numpy as np
import pandas as pd
import pytest

from cfb_spread_model.data.loaders.store import StatsStore
from cfb_spread_model.data.preprocessing.calibration_dataset import (
    CALIBRATION_COLUMNS,
    DATASET_PRESETS,
    DatasetSpec,
    add_engineered_diffs,
    build_calibration_rows,
    consensus_spreads,
    matchup_tier,
    team_tier,
)
from cfb_spread_model.errors import InsufficientDataError
from cfb_spread_model.models.hfa import HFAConfig
from cfb_spread_model.serving.blend import BlendConfig, RatingBlender

SEASON = 2025


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_single_game() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "game_id": ["g1"],
            "home_team": ["Alpha"],
            "away_team": ["Bravo"],
            "game_date": pd.to_datetime(["2025-09-06 19:00"]),
        }
    )


def _line(game_id, book, team, value, hours_before=2.0, kickoff="2025-09-06 19:00", line_type="spread"):
    return {
        "game_id": game_id,
        "book": book,
        "team": team,
        "line_value": value,
        "timestamp": pd.Timestamp(kickoff) - pd.Timedelta(hours=hours_before),
        "line_type": line_type,
    }


def _make_lines() -> pd.DataFrame:
    """
    Home-minus-away per book: b1 +7, b2 +6.5 (quoted for the away team),
    b3 median of +7.5/+8.5 = +8. b4 is junk, b5 quotes a team not in the game.
    """
    return pd.DataFrame(
        [
            _line("g1", "b1", "Alpha", -7.0),
            _line("g1", "b2", "Bravo", 6.5, hours_before=30.0),
            _line("g1", "b3", "Alpha", -7.5, hours_before=1.0),
            _line("g1", "b3", "Alpha", -8.5, hours_before=3.0),
            _line("g1", "b4", "Alpha", -75.0),
            _line("g1", "b5", "Zulu", -3.0),
            _line("g1", "b1", "Alpha", 52.5, line_type="total"),
        ]
    )


def _store_with_lines(store_tables) -> StatsStore:
    games = store_tables["games"]
    lines = []
    for g in games.itertuples():
        kickoff = g.game_date + pd.Timedelta(hours=19)
        spread = {"g1": -8.0, "g2": -21.0, "g3": -3.0, "g4": 14.0, "g5": -45.0, "g6": -17.0}[g.game_id]
        for book in ("b1", "b2", "b3"):
            lines.append(_line(g.game_id, book, g.home_team, spread, kickoff=kickoff))
    tables = dict(store_tables)
    tables["games"] = games.assign(game_date=games["game_date"] + pd.Timedelta(hours=19))
    tables["market_lines"] = pd.DataFrame(lines)
    tables["secondary_ratings"] = pd.DataFrame(
        {"season": SEASON, "team": ["Alpha", "Bravo"], "rating": [30.0, 25.0]}
    )
    return StatsStore(tables)


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


def test_team_and_matchup_tiers():
    assert team_tier("Georgia", "fbs", "SEC") == "P5"
    assert team_tier("Notre Dame", "FBS", "FBS Independents") == "P5"
    assert team_tier("Toledo", "fbs", "MAC") == "G5"
    assert team_tier("Montana", "fcs", "Big Sky") == "FCS"
    assert team_tier("Somebody", None, None) is None

    assert matchup_tier("G5", "P5") == "P5_G5"
    assert matchup_tier("FCS", "G5") == "G5_FCS"
    assert matchup_tier("FCS", "FCS") is None
    assert matchup_tier("P5", None) is None


# ---------------------------------------------------------------------------
# Market consensus
# ---------------------------------------------------------------------------


def test_consensus_is_home_minus_away_median_of_book_medians():
    out = consensus_spreads(_make_lines(), _make_single_game())

    assert len(out) == 1
    assert out.loc[0, "market_spread_raw"] == pytest.approx(7.0)
    assert out.loc[0, "n_books"] == 3


def test_consensus_requires_min_books():
    assert consensus_spreads(_make_lines(), _make_single_game(), min_books=4).empty


def test_consensus_pre_kick_window():
    out = consensus_spreads(_make_lines(), _make_single_game(), pre_kick_hours=24.0)

    # b2 was stamped 30h before kickoff
    assert out.loc[0, "n_books"] == 2
    assert out.loc[0, "market_spread_raw"] == pytest.approx(7.5)


def test_consensus_ignores_lines_after_kickoff():
    lines = pd.DataFrame([_line("g1", "b1", "Alpha", -7.0, hours_before=-1.0)])
    assert consensus_spreads(lines, _make_single_game(), pre_kick_hours=24.0).empty


# ---------------------------------------------------------------------------
# Calibration rows
# ---------------------------------------------------------------------------


def test_build_rows_fbs_only(store_tables):
    store = _store_with_lines(store_tables)
    spec = DatasetSpec(label="T", weeks=(1, 2, 3), fbs_only=True, min_books=3)
    rows = build_calibration_rows(store, SEASON, [spec], hfa=HFAConfig())

    assert list(rows.columns) == CALIBRATION_COLUMNS
    assert list(rows["game_id"]) == ["g1", "g3", "g5"]
    by_id = rows.set_index("game_id")

    assert by_id.loc["g1", "matchup_tier"] == "P5_P5"
    assert by_id.loc["g1", "is_p5_p5"] == 1.0
    assert by_id.loc["g3", "is_p5_g5"] == 1.0
    assert by_id.loc["g3", "is_p5_p5"] == 0.0

    assert by_id.loc["g1", "market_spread"] == pytest.approx(8.0)
    assert by_id.loc["g3", "market_spread"] == pytest.approx(3.0)
    assert by_id.loc["g5", "market_spread_raw"] == pytest.approx(45.0)
    assert by_id.loc["g5", "market_spread"] == pytest.approx(35.0)

    assert by_id.loc["g1", "hfa_points"] == pytest.approx(2.0)
    assert by_id.loc["g5", "hfa_points"] == 0.0
    assert by_id.loc["g1", "talent_diff_z"] > 0


def test_build_rows_blends_ratings_when_secondary_available(store_tables):
    store = _store_with_lines(store_tables)
    blender = RatingBlender(
        BlendConfig(weight=0.5, primary_mean=0.0, primary_std=10.0, secondary_mean=0.0, secondary_std=20.0)
    )
    spec = DatasetSpec(label="T", weeks=(1, 2, 3), fbs_only=True)
    by_id = build_calibration_rows(store, SEASON, [spec], hfa=HFAConfig(), blender=blender).set_index("game_id")

    # g1: 0.5 * (20 - 12) / 10 + 0.5 * (30 - 25) / 20 = 0.525 -> 5.25 points
    assert by_id.loc["g1", "rating_diff"] == pytest.approx(5.25)
    # g3: Charlie has no secondary rating -> raw primary difference
    assert by_id.loc["g3", "rating_diff"] == pytest.approx(12.0 - (-2.0))


def test_build_rows_tier_filter_and_dedup(store_tables):
    store = _store_with_lines(store_tables)
    first = DatasetSpec(label="P", weeks=(1,), allowed_tiers=frozenset({"P5_P5"}), row_weight=1.0)
    second = DatasetSpec(label="Q", weeks=(1, 2), row_weight=0.6)
    rows = build_calibration_rows(store, SEASON, [first, second], hfa=HFAConfig())

    assert rows["game_id"].is_unique
    by_id = rows.set_index("game_id")
    assert by_id.loc["g1", "set_label"] == "P"
    assert by_id.loc["g1", "row_weight"] == 1.0
    assert by_id.loc["g2", "set_label"] == "Q"
    assert by_id.loc["g2", "matchup_tier"] == "G5_FCS"
    assert by_id.loc["g2", "row_weight"] == pytest.approx(0.6)


def test_build_rows_without_data_raises(store_tables):
    store = _store_with_lines(store_tables)
    with pytest.raises(InsufficientDataError):
        build_calibration_rows(store, SEASON, [DATASET_PRESETS["A"]], hfa=HFAConfig())


def test_dataset_presets():
    a, b = DATASET_PRESETS["A"], DATASET_PRESETS["B"]
    assert a.weeks == (8, 9, 10, 11) and a.fbs_only and a.min_books == 3
    assert a.gate_preset == "high_quality"
    assert b.weeks == tuple(range(1, 12)) and b.row_weight == 0.6
    assert b.allowed_tiers == {"P5_P5", "P5_G5"}
    with pytest.raises(ValueError):
        DatasetSpec(label="X", weeks=(1,), allowed_tiers=frozenset({"FCS_FCS"}))


def test_add_engineered_diffs():
    rows = pd.DataFrame({"game_id": ["g1", "g2"], "home_team": ["A", "C"], "away_team": ["B", "D"]})
    features = pd.DataFrame(
        {
            "game_id": ["g1", "g1", "g2", "g2"],
            "team": ["A", "B", "C", "D"],
            "x": pd.array([1.0, 0.25, None, 2.0], dtype="Float64"),
            "low_sample_3g": [False, True, False, False],
        }
    )
    out = add_engineered_diffs(rows, features, ["x"])

    assert out.loc[0, "diff_x"] == pytest.approx(0.75)
    assert np.isnan(out.loc[1, "diff_x"])
    assert list(out["home_low_sample_3g"]) == [False, False]
    assert list(out["away_low_sample_3g"]) == [True, False]
    assert "home_x" not in out.columns

    with pytest.raises(KeyError):
        add_engineered_diffs(rows, features, ["missing"])
