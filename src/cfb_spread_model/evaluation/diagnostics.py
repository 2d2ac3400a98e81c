from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from cfb_spread_model.config import LOG_CONFIG
from cfb_spread_model.data.preprocessing.hygiene import HygieneReport
from cfb_spread_model.models.calibration import CalibrationResult
from cfb_spread_model.models.registry import json_safe
from cfb_spread_model.utils.numeric import to_float_array

logger = logging.getLogger(__name__)


def feature_completeness(df: pd.DataFrame, feature_cols: Sequence[str], week_col: str = "week") -> pd.DataFrame:
    """Per (feature, week): total rows, nulls and completeness percentage."""
    records = []
    for week, group in df.groupby(week_col, sort=True):
        total = len(group)
        for col in feature_cols:
            if col not in group.columns:
                continue
            nulls = int(group[col].isna().sum())
            records.append(
                {
                    "feature": col,
                    "week": week,
                    "total": total,
                    "nulls": nulls,
                    "completeness_pct": 100.0 * (total - nulls) / total if total else 0.0,
                }
            )
    return pd.DataFrame.from_records(
        records, columns=["feature", "week", "total", "nulls", "completeness_pct"]
    )


def feature_store_stats(
    df: pd.DataFrame,
    feature_cols: Sequence[str],
    hygiene_report: Optional[HygieneReport] = None,
    n_processed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Per feature: mean, std, min, max, nulls and the share of rows winsorized.

    ``n_processed`` is the row count hygiene ran on (defaults to len(df)).
    """
    if n_processed is None:
        n_processed = len(df)
    records = []
    for col in feature_cols:
        if col not in df.columns:
            continue
        values = to_float_array(df[col])
        finite = values[np.isfinite(values)]
        winsorized_pct = 0.0
        if hygiene_report is not None:
            winsorized_pct = 100.0 * hygiene_report.clipped_fraction(col, n_processed)
        records.append(
            {
                "feature": col,
                "mean": float(finite.mean()) if len(finite) else np.nan,
                "std": float(finite.std()) if len(finite) else np.nan,
                "min": float(finite.min()) if len(finite) else np.nan,
                "max": float(finite.max()) if len(finite) else np.nan,
                "nulls": int(len(values) - len(finite)),
                "winsorized_pct": winsorized_pct,
            }
        )
    return pd.DataFrame.from_records(
        records, columns=["feature", "mean", "std", "min", "max", "nulls", "winsorized_pct"]
    )


def frame_check_sample(predictions: pd.DataFrame, n: int = 25, seed: int = 42) -> pd.DataFrame:
    """
    Sample of games for eyeballing the home-minus-away frame.

    ``edge`` is model minus market; ``sign_agree`` marks rows where the
    walk-forward prediction and the market agree on the favorite.
    """
    cols = ["game_id", "week", "home_team", "away_team", "rating_diff", "hfa_points", "market_spread", "wf_predicted"]
    df = predictions[[c for c in cols if c in predictions.columns]].copy()
    df = df[df["wf_predicted"].notna()]
    if len(df) > n:
        df = df.sample(n=n, random_state=seed)
    df["edge"] = df["wf_predicted"] - df["market_spread"]
    df["sign_agree"] = np.sign(df["wf_predicted"]) == np.sign(df["market_spread"])
    return df.sort_values(["week", "game_id"]).reset_index(drop=True)


def write_calibration_artifacts(
    result: CalibrationResult,
    out_dir: Path | None = None,
    prefix: str = "",
) -> Dict[str, Path]:
    """
    Write the human-review artifacts for a calibration run.

    Files: feature_completeness.csv, feature_store_stats.csv,
    frame_check_sample.csv, calibration_predictions.csv,
    calibration_report.json (optionally prefixed).
    """
    if out_dir is None:
        out_dir = LOG_CONFIG.diagnostics_dir
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    model = result.model
    features = list(model.features) + [f for names in model.dropped_features.values() for f in names]
    features = [f for f in dict.fromkeys(features) if f in result.rows.columns]

    paths = {
        "feature_completeness": out_dir / f"{prefix}feature_completeness.csv",
        "feature_store_stats": out_dir / f"{prefix}feature_store_stats.csv",
        "frame_check_sample": out_dir / f"{prefix}frame_check_sample.csv",
        "predictions": out_dir / f"{prefix}calibration_predictions.csv",
        "report": out_dir / f"{prefix}calibration_report.json",
    }

    feature_completeness(result.rows, features).to_csv(paths["feature_completeness"], index=False)
    feature_store_stats(result.rows, features, result.hygiene_report, n_processed=len(result.predictions)).to_csv(
        paths["feature_store_stats"], index=False
    )
    frame_check_sample(result.predictions).to_csv(paths["frame_check_sample"], index=False)
    result.predictions.to_csv(paths["predictions"], index=False)

    report = {
        "model": model.to_dict(),
        "candidates": [
            {"alpha": c.alpha, "l1_ratio": c.l1_ratio, "cv_rmse": c.cv_rmse, "wf_rmse": c.wf_rmse}
            for c in result.candidates
        ],
    }
    with open(paths["report"], "w", encoding="utf-8") as f:
        json.dump(json_safe(report), f, indent=2, sort_keys=True)

    logger.info("Wrote calibration diagnostics to %s", out_dir)
    return paths
