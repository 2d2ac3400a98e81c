"""
Quick Calibration Check

Builds engineered features and a core calibration for one season from the
parquet tables in the raw data directory, then prints the fitted model and
gate outcomes. Nothing is persisted.

Example:
    python run_calibration_check.py 2025
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure src/ is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from cfb_spread_model.config import DATA_CONFIG  # noqa: E402
from cfb_spread_model.data.feature_engineering.feature_pipeline import (  # noqa: E402
    FeaturePipeline,
    FeaturePipelineConfig,
)
from cfb_spread_model.data.loaders.store import StatsStore  # noqa: E402
from cfb_spread_model.data.preprocessing.calibration_dataset import (  # noqa: E402
    DATASET_PRESETS,
    build_calibration_rows,
)
from cfb_spread_model.models.calibration import CalibrationConfig, calibrate, format_summary  # noqa: E402
from cfb_spread_model.models.hfa import HFAConfig  # noqa: E402


def main() -> None:
    season = int(sys.argv[1]) if len(sys.argv) > 1 else 2025
    print(f"▶ Running calibration check for season {season}...\n")

    store = StatsStore.from_parquet_dir(DATA_CONFIG.raw_data_dir)

    try:
        pipeline = FeaturePipeline(store, FeaturePipelineConfig(season=season))
        features = pipeline.build()
    except Exception as exc:  # pragma: no cover - manual inspection script
        print("\n❌ ERROR while building features:\n")
        print(type(exc).__name__, ":", str(exc))
        return

    print("✅ Features built successfully.")
    print(f"Shape: {features.shape[0]} rows x {features.shape[1]} columns")
    assert not features.duplicated(["game_id", "team"]).any(), "One row per (game, team) expected."
    low = features["low_sample_3g"].mean()
    print(f"Low-sample share (3g): {low:.1%}\n")

    try:
        rows = build_calibration_rows(store, season, [DATASET_PRESETS["A"]], hfa=HFAConfig())
        result = calibrate(rows, CalibrationConfig(season=season))
    except Exception as exc:  # pragma: no cover - manual inspection script
        print("\n❌ ERROR while calibrating:\n")
        print(type(exc).__name__, ":", str(exc))
        return

    print(format_summary(result.model))
    verdict = "✅ Gates passed." if result.model.gates_passed else "⚠️  Gates failed."
    print(f"\n{verdict}")


if __name__ == "__main__":
    main()
