import json

import numpy as np
import pandas as pd
import pytest

from cfb_spread_model import cli
from cfb_spread_model.config import DataConfig, LogConfig
from cfb_spread_model.data.feature_engineering import feature_pipeline
from cfb_spread_model.evaluation.diagnostics import (
    feature_completeness,
    frame_check_sample,
    write_calibration_artifacts,
)
from cfb_spread_model.models.calibration import CalibrationConfig, calibrate
from cfb_spread_model.models.registry import ModelRegistry, json_restore, json_safe
from cfb_spread_model.models.selection import GridConfig

SMALL_GRID = GridConfig(alphas=(0.01, 1.0), l1_ratios=(0.0, 0.5))


@pytest.fixture
def calibration_result(synthetic_calibration_rows):
    config = CalibrationConfig(
        features=("rating_diff", "hfa_points"),
        grid=SMALL_GRID,
        season=2025,
        model_version="v_reg",
    )
    return calibrate(synthetic_calibration_rows, config)


# ---------------------------------------------------------------------------
# ModelRegistry
# ---------------------------------------------------------------------------


def test_json_safe_replaces_non_finite_values():
    payload = {"a": float("nan"), "b": [1.0, float("inf")], "c": {"d": 2.0}}
    safe = json_safe(payload)
    assert safe == {"a": None, "b": [1.0, None], "c": {"d": 2.0}}
    json.dumps(safe, allow_nan=False)

    restored = json_restore({"x": None, "y": 3.0})
    assert np.isnan(restored["x"]) and restored["y"] == 3.0


def test_registry_save_and_load_round_trip(tmp_path, calibration_result):
    model = calibration_result.model
    registry = ModelRegistry(tmp_path)
    path = registry.save(model)

    assert path == tmp_path / "2025" / "fe_v1" / "core" / "v_reg.json"
    assert not list(path.parent.glob("*.tmp"))

    loaded = registry.load(2025, "fe_v1", "core", "v_reg")
    assert loaded.features == model.features
    assert loaded.coefficients == pytest.approx(model.coefficients)
    assert loaded.wf_week_rmse == pytest.approx(model.wf_week_rmse)
    assert loaded.gates_passed == model.gates_passed
    assert [r.name for r in loaded.gate_report.results] == [r.name for r in model.gate_report.results]
    assert registry.list_versions(2025, "fe_v1", "core") == ["v_reg"]


def test_registry_overwrite_replaces_whole_record(tmp_path, calibration_result):
    registry = ModelRegistry(tmp_path)
    registry.save(calibration_result.model)
    path = registry.save(calibration_result.model)

    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    assert payload["model_version"] == "v_reg"
    assert len(list(path.parent.iterdir())) == 1


def test_registry_load_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        ModelRegistry(tmp_path).load(2025, "fe_v1", "core", "nope")
    assert ModelRegistry(tmp_path).list_versions(2025, "fe_v1", "core") == []


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def test_feature_completeness_counts_nulls_per_week():
    df = pd.DataFrame({"week": [1, 1, 2, 2], "x": [1.0, np.nan, 2.0, 3.0]})
    out = feature_completeness(df, ["x"])

    assert list(out["week"]) == [1, 2]
    assert list(out["nulls"]) == [1, 0]
    assert list(out["completeness_pct"]) == [50.0, 100.0]


def test_frame_check_sample_has_edge_and_sign(calibration_result):
    sample = frame_check_sample(calibration_result.predictions, n=10)

    assert len(sample) == 10
    assert sample["wf_predicted"].notna().all()
    np.testing.assert_allclose(sample["edge"], sample["wf_predicted"] - sample["market_spread"])


def test_write_calibration_artifacts(tmp_path, calibration_result):
    paths = write_calibration_artifacts(calibration_result, tmp_path, prefix="t_")

    for path in paths.values():
        assert path.exists()
        assert path.name.startswith("t_")
    stats = pd.read_csv(paths["feature_store_stats"])
    assert set(stats["feature"]) == {"rating_diff", "hfa_points"}
    with open(paths["report"], "r", encoding="utf-8") as f:
        report = json.load(f)
    assert len(report["candidates"]) == 4
    assert report["model"]["model_version"] == "v_reg"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _make_season_tables(seed: int = 3):
    """
    A 40-team season (24 power-five, 16 group-of-five) over ten weeks where
    the consensus line is 0.8 * rating_diff + HFA + noise.
    """
    rng = np.random.default_rng(seed)
    teams = [f"T{i:02d}" for i in range(40)]
    conferences = ["SEC"] * 12 + ["Big Ten"] * 12 + ["MAC"] * 16
    ratings = dict(zip(teams, rng.normal(0.0, 10.0, len(teams))))

    games, lines = [], []
    for week in range(1, 11):
        kickoff = pd.Timestamp("2025-08-30 19:00") + pd.Timedelta(days=7 * (week - 1))
        order = rng.permutation(len(teams))
        for k in range(0, len(order), 2):
            home, away = teams[order[k]], teams[order[k + 1]]
            game_id = f"w{week:02d}_{home}_{away}"
            neutral = bool(rng.random() < 0.1)
            hma = 0.8 * (ratings[home] - ratings[away]) + (0.0 if neutral else 2.0) + rng.normal(0.0, 3.0)
            games.append(
                {
                    "game_id": game_id,
                    "season": 2025,
                    "week": week,
                    "game_date": kickoff,
                    "home_team": home,
                    "away_team": away,
                    "neutral_site": neutral,
                    "status": "final",
                }
            )
            for book in ("b1", "b2", "b3"):
                lines.append(
                    {
                        "game_id": game_id,
                        "book": book,
                        "team": home,
                        "line_value": -round(hma + rng.normal(0.0, 0.25), 1),
                        "timestamp": kickoff - pd.Timedelta(hours=3),
                        "line_type": "spread",
                    }
                )

    return {
        "games": pd.DataFrame(games),
        "market_lines": pd.DataFrame(lines),
        "memberships": pd.DataFrame(
            {"season": 2025, "team": teams, "level": "fbs", "conference": conferences}
        ),
        "ratings": pd.DataFrame({"season": 2025, "team": teams, "rating": [ratings[t] for t in teams]}),
        "team_priors": pd.DataFrame(
            {
                "season": 2025,
                "team": teams,
                "talent": rng.normal(700.0, 100.0, len(teams)),
                "returning_prod_off": 0.5,
                "returning_prod_def": 0.5,
            }
        ),
    }


def _write_tables(tables, directory):
    directory.mkdir(parents=True, exist_ok=True)
    for name, df in tables.items():
        df.to_parquet(directory / f"{name}.parquet", index=False)
    return directory


@pytest.fixture
def isolated_dirs(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "LOG_CONFIG", LogConfig(logs_dir=tmp_path / "logs"))
    monkeypatch.setattr(cli, "DATA_CONFIG", DataConfig(config_dir=tmp_path / "config"))
    monkeypatch.setattr(feature_pipeline, "DATA_CONFIG", DataConfig(features_dir=tmp_path / "features"))
    return tmp_path


def test_parse_weeks():
    assert cli.parse_weeks("8-11") == [8, 9, 10, 11]
    assert cli.parse_weeks("3, 1,2") == [1, 2, 3]
    with pytest.raises(Exception):
        cli.parse_weeks("5-2")


def test_cli_engineer_persists_features(isolated_dirs, store_tables):
    raw = _write_tables(store_tables, isolated_dirs / "raw")
    code = cli.main(["engineer", "--season", "2025", "--data-dir", str(raw), "--feature-version", "fe_cli"])

    assert code == cli.EXIT_OK
    saved = isolated_dirs / "features" / "team_game_features_2025_fe_cli.parquet"
    assert saved.exists()
    assert (pd.read_parquet(saved)["feature_version"] == "fe_cli").all()


def test_cli_calibrate_without_rows_exits_with_insufficient_data(isolated_dirs, store_tables):
    raw = _write_tables(store_tables, isolated_dirs / "raw")
    code = cli.main(
        [
            "calibrate",
            "--season", "2025",
            "--sets", "A",
            "--data-dir", str(raw),
            "--models-dir", str(isolated_dirs / "models"),
        ]
    )

    assert code == cli.EXIT_INSUFFICIENT_DATA
    assert not (isolated_dirs / "models").exists()


def test_cli_calibrate_persists_model_and_diagnostics(isolated_dirs, capsys):
    raw = _write_tables(_make_season_tables(), isolated_dirs / "raw")
    models_dir = isolated_dirs / "models"
    diag_dir = isolated_dirs / "diagnostics"

    code = cli.main(
        [
            "calibrate",
            "--season", "2025",
            "--sets", "B",
            "--weeks", "1-10",
            "--model-version", "v_cli",
            "--data-dir", str(raw),
            "--models-dir", str(models_dir),
            "--diagnostics-dir", str(diag_dir),
        ]
    )

    assert code in (cli.EXIT_OK, cli.EXIT_GATES_FAILED)
    model = ModelRegistry(models_dir).load(2025, "fe_v1", "core", "v_cli")
    assert model.coefficients["rating_diff"] > 0
    assert (code == cli.EXIT_OK) == model.gates_passed
    assert "is_g5_g5" in model.dropped_features["zero_variance"]
    assert (diag_dir / "2025_core_v_cli_calibration_report.json").exists()
    assert "gates_passed=" in capsys.readouterr().out


def _add_efficiency_stats(tables, seed: int = 5):
    """
    Attach external games and game-level EPA / success-rate stats to a season.
    No explosiveness columns, so those engineered features never exist.
    """
    rng = np.random.default_rng(seed)
    games = tables["games"]
    ext = games[["season", "week", "home_team", "away_team"]].copy()
    ext["ext_game_id"] = [f"x{i}" for i in range(len(ext))]

    stats = []
    for row in ext.itertuples(index=False):
        for team in (row.home_team, row.away_team):
            stats.append(
                {
                    "ext_game_id": row.ext_game_id,
                    "season": 2025,
                    "team": team,
                    "off_epa": rng.normal(0.1, 0.1),
                    "def_epa": rng.normal(0.1, 0.1),
                    "off_sr": rng.normal(0.42, 0.05),
                    "def_sr": rng.normal(0.42, 0.05),
                }
            )
    stats = pd.DataFrame(stats)
    season_stats = stats.groupby(["season", "team"], as_index=False)[["off_epa", "def_epa", "off_sr", "def_sr"]].mean()
    return {**tables, "external_games": ext, "team_game_stats": stats, "team_season_stats": season_stats}


def test_cli_extended_fit_uses_only_engineered_columns_that_exist(isolated_dirs):
    raw = _write_tables(_add_efficiency_stats(_make_season_tables()), isolated_dirs / "raw")
    models_dir = isolated_dirs / "models"
    common = ["--season", "2025", "--weeks", "1-10", "--data-dir", str(raw)]

    assert cli.main(["engineer", *common]) == cli.EXIT_OK

    code = cli.main(
        [
            "calibrate",
            *common,
            "--sets", "B",
            "--fit-label", "extended",
            "--model-version", "v_ext",
            "--models-dir", str(models_dir),
            "--diagnostics-dir", str(isolated_dirs / "diagnostics"),
        ]
    )

    assert code in (cli.EXIT_OK, cli.EXIT_GATES_FAILED)
    model = ModelRegistry(models_dir).load(2025, "fe_v1", "extended", "v_ext")
    assert model.fit_label == "extended"
    assert "diff_off_adj_epa" in model.features
    assert "diff_off_adj_sr" in model.features
    for absent in ("diff_off_adj_explosiveness", "diff_edge_explosiveness", "diff_rest_days"):
        assert absent not in model.features


def test_cli_extended_fit_without_engineered_features_exits_cleanly(isolated_dirs, capsys):
    raw = _write_tables(_make_season_tables(), isolated_dirs / "raw")
    code = cli.main(
        [
            "calibrate",
            "--season", "2025",
            "--sets", "B",
            "--weeks", "1-10",
            "--fit-label", "extended",
            "--feature-version", "fe_never_built",
            "--data-dir", str(raw),
            "--models-dir", str(isolated_dirs / "models"),
        ]
    )

    assert code == cli.EXIT_INSUFFICIENT_DATA
    assert "cfb-spread engineer" in capsys.readouterr().out
    assert not (isolated_dirs / "models").exists()
