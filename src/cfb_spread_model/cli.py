"""
Command-line entry point.

Examples:
    cfb-spread engineer --season 2025 --weeks 1-11 --feature-version fe_v1
    cfb-spread calibrate --season 2025 --sets A B --fit-label core --model-version v2
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from cfb_spread_model.config import DATA_CONFIG, LOG_CONFIG, MODEL_CONFIG
from cfb_spread_model.data.feature_engineering.feature_pipeline import (
    FeaturePipeline,
    FeaturePipelineConfig,
    load_features,
)
from cfb_spread_model.data.loaders.store import StatsStore
from cfb_spread_model.data.preprocessing.calibration_dataset import (
    DATASET_PRESETS,
    add_engineered_diffs,
    build_calibration_rows,
)
from cfb_spread_model.errors import InsufficientDataError
from cfb_spread_model.evaluation.diagnostics import write_calibration_artifacts
from cfb_spread_model.evaluation.gates import GateThresholds
from cfb_spread_model.models.calibration import (
    EXTENDED_SOURCE_COLUMNS,
    FIT_LABELS,
    CalibrationConfig,
    calibrate,
    extended_features,
    format_summary,
)
from cfb_spread_model.models.hfa import HFAConfig
from cfb_spread_model.models.registry import ModelRegistry
from cfb_spread_model.serving.blend import BlendConfig, RatingBlender

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_GATES_FAILED = 1
EXIT_INSUFFICIENT_DATA = 2


def parse_weeks(text: str) -> List[int]:
    """Parse "8-11", "1,2,5" or "3" into a sorted list of weeks."""
    weeks: set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = (int(x) for x in part.split("-", 1))
            if start > end:
                raise argparse.ArgumentTypeError(f"Bad week range: {part}")
            weeks.update(range(start, end + 1))
        else:
            weeks.add(int(part))
    if not weeks:
        raise argparse.ArgumentTypeError(f"No weeks in '{text}'")
    return sorted(weeks)


def setup_logging(level: str = LOG_CONFIG.log_level, log_dir: Path | None = None) -> None:
    log_dir = Path(log_dir) if log_dir is not None else LOG_CONFIG.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(log_dir / "cfb_spread.log", encoding="utf-8"),
        ],
    )


def _load_hfa(path: Optional[Path]) -> HFAConfig:
    if path is None:
        default = DATA_CONFIG.config_dir / "hfa.json"
        if not default.exists():
            logger.info("No HFA config at %s; using league default", default)
            return HFAConfig()
        path = default
    return HFAConfig.from_json(path)


def _load_blender(path: Optional[Path]) -> RatingBlender:
    if path is None:
        default = DATA_CONFIG.config_dir / "blend.json"
        if not default.exists():
            logger.info("No blend config at %s; using the primary rating alone", default)
            return RatingBlender(None)
        path = default
    return RatingBlender(BlendConfig.from_json(path))


def run_engineer(args: argparse.Namespace) -> int:
    store = StatsStore.from_parquet_dir(args.data_dir)
    config = FeaturePipelineConfig(
        season=args.season,
        weeks=tuple(args.weeks or DATA_CONFIG.default_weeks),
        feature_version=args.feature_version,
        save_parquet=True,
    )
    pipeline = FeaturePipeline(store, config)
    try:
        features = pipeline.build()
    except InsufficientDataError as exc:
        print(f"Insufficient data: {exc}")
        return EXIT_INSUFFICIENT_DATA

    report = pipeline.hygiene_report
    print(f"Built {len(features)} feature rows for season {args.season} ({args.feature_version})")
    if report is not None and report.dropped:
        print(f"Dropped zero-variance features: {', '.join(report.dropped)}")
    return EXIT_OK


def _attach_engineered_diffs(rows, season: int, feature_version: str):
    """
    Add ``diff_*`` columns for the engineered features this build actually
    kept and return the matching extended feature list.
    """
    features = load_features(season, feature_version)
    available = [c for c in EXTENDED_SOURCE_COLUMNS if c in features.columns]
    unavailable = [c for c in EXTENDED_SOURCE_COLUMNS if c not in available]
    if unavailable:
        logger.warning(
            "Extended fit skipping engineered columns absent from %s features: %s", feature_version, unavailable
        )
    return add_engineered_diffs(rows, features, available), extended_features(available)


def run_calibrate(args: argparse.Namespace) -> int:
    store = StatsStore.from_parquet_dir(args.data_dir)
    specs = [DATASET_PRESETS[label] for label in args.sets]
    if args.weeks:
        specs = [dataclasses.replace(spec, weeks=tuple(args.weeks)) for spec in specs]

    preset = "broad" if any(spec.gate_preset == "broad" for spec in specs) else "high_quality"
    gates = GateThresholds.preset(preset)
    if args.rmse_ceiling is not None:
        gates = dataclasses.replace(gates, rmse_max=args.rmse_ceiling)

    try:
        rows = build_calibration_rows(
            store,
            args.season,
            specs,
            hfa=_load_hfa(args.hfa_config),
            blender=_load_blender(args.blend_config),
        )
        feature_list = None
        if args.fit_label == "extended":
            rows, feature_list = _attach_engineered_diffs(rows, args.season, args.feature_version)

        config = CalibrationConfig(
            fit_label=args.fit_label,
            features=feature_list,
            include_quadratic=args.include_quadratic,
            min_rows=args.min_rows,
            gates=gates,
            season=args.season,
            model_version=args.model_version,
            feature_version=args.feature_version,
        )
        result = calibrate(rows, config)
    except FileNotFoundError as exc:
        print(f"{exc}. Run `cfb-spread engineer` for this season and feature version first.")
        return EXIT_INSUFFICIENT_DATA
    except InsufficientDataError as exc:
        print(f"Insufficient data, calibration aborted before fitting: {exc}")
        return EXIT_INSUFFICIENT_DATA

    model = result.model
    registry = ModelRegistry(args.models_dir)
    model_path = registry.save(model)
    prefix = f"{args.season}_{args.fit_label}_{args.model_version}_"
    write_calibration_artifacts(result, args.diagnostics_dir, prefix=prefix)

    print(format_summary(model))
    print(f"\nSaved model: {model_path}")
    if not model.gates_passed:
        print("Model FAILED gates; persisted for diagnostics only.")
        return EXIT_GATES_FAILED
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cfb-spread",
        description="Feature engineering and spread-model calibration",
    )
    parser.add_argument("--log-level", default=LOG_CONFIG.log_level, help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--season", type=int, required=True, help="Season to process")
    common.add_argument("--weeks", type=parse_weeks, default=None, help='Week range, e.g. "1-11" or "8,9,10"')
    common.add_argument(
        "--feature-version",
        default=MODEL_CONFIG.default_feature_version,
        help="Feature version tag",
    )
    common.add_argument("--data-dir", type=Path, default=None, help="Directory of store parquet tables")

    sub.add_parser("engineer", parents=[common], help="Build and persist engineered team-game features")

    cal = sub.add_parser("calibrate", parents=[common], help="Fit, validate and gate the spread model")
    cal.add_argument("--sets", nargs="+", choices=sorted(DATASET_PRESETS), default=["A"], help="Data subsets")
    cal.add_argument("--fit-label", choices=FIT_LABELS, default="core", help="Feature set")
    cal.add_argument("--model-version", default=MODEL_CONFIG.default_model_version, help="Model version tag")
    cal.add_argument("--include-quadratic", action="store_true", help="Add rating_diff squared")
    cal.add_argument("--min-rows", type=int, default=50, help="Minimum calibration rows")
    cal.add_argument("--rmse-ceiling", type=float, default=None, help="Override the walk-forward RMSE gate")
    cal.add_argument("--blend-config", type=Path, default=None, help="BlendConfig JSON")
    cal.add_argument("--hfa-config", type=Path, default=None, help="HFAConfig JSON")
    cal.add_argument("--models-dir", type=Path, default=None, help="Where to persist the model")
    cal.add_argument("--diagnostics-dir", type=Path, default=None, help="Where to write review artifacts")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "engineer":
        return run_engineer(args)
    return run_calibrate(args)


if __name__ == "__main__":
    sys.exit(main())
