from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import pandas as pd

from cfb_spread_model.config import DATA_CONFIG, MODEL_CONFIG
from cfb_spread_model.data.feature_engineering.context_features import add_schedule_features
from cfb_spread_model.data.feature_engineering.opponent_adjustment import (
    add_opponent_adjustments,
    adjusted_columns,
)
from cfb_spread_model.data.feature_engineering.recency import (
    RecencySpec,
    add_recency_features,
)
from cfb_spread_model.data.loaders.aggregate_stats import AggregateStatsLoader, LoaderConfig
from cfb_spread_model.data.loaders.cache import SeasonCache
from cfb_spread_model.data.loaders.store import StatsStore
from cfb_spread_model.data.preprocessing.hygiene import HygieneConfig, HygieneReport, apply_hygiene
from cfb_spread_model.utils.numeric import finalize_nullable_columns

logger = logging.getLogger(__name__)

CONTEXT_FEATURES: Tuple[str, ...] = ("rest_days", "rest_delta")


@dataclass(frozen=True)
class FeaturePipelineConfig:
    """
    Configuration for building EngineeredFeatureRows for one season.

    Attributes
    ----------
    season:
        Season to build.
    weeks:
        Week window; None means every week in the store for the season.
    feature_version:
        Tag stamped on every row and used in the persisted filename.
    loader:
        Aggregate loader configuration (metrics, tier sets).
    ewma_cols:
        Opponent-adjusted columns that get 3/5-game EWMAs.
    talent_prior_scale:
        Metric units per talent standard deviation, used to put the
        preseason talent prior on the EWMA's scale.
    hygiene:
        Winsorize/standardize configuration.
    save_parquet:
        If True, persist the result under DATA_CONFIG.features_dir.
    """

    season: int
    weeks: Optional[Tuple[int, ...]] = None
    feature_version: str = MODEL_CONFIG.default_feature_version
    loader: LoaderConfig = field(default_factory=LoaderConfig)
    ewma_cols: Tuple[str, ...] = ("off_adj_epa", "def_adj_epa")
    talent_prior_scale: float = 0.1
    hygiene: HygieneConfig = field(default_factory=HygieneConfig)
    save_parquet: bool = False

    def __post_init__(self) -> None:
        if not self.feature_version:
            raise ValueError("feature_version must be a non-empty tag.")
        adjusted = set(adjusted_columns(self.loader.metrics))
        unknown = [c for c in self.ewma_cols if c not in adjusted]
        if unknown:
            raise ValueError(f"ewma_cols must be opponent-adjusted columns; unknown: {unknown}")


def features_path(season: int, feature_version: str, features_dir: Path | None = None) -> Path:
    if features_dir is None:
        features_dir = DATA_CONFIG.features_dir
    return Path(features_dir) / f"team_game_features_{season}_{feature_version}.parquet"


def save_features_atomic(df: pd.DataFrame, path: Path) -> Path:
    """Write parquet to a temp file beside ``path`` and swap it in with ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    df.to_parquet(tmp_path, index=False)
    os.replace(tmp_path, path)
    return path


def load_features(season: int, feature_version: str, features_dir: Path | None = None) -> pd.DataFrame:
    """
    Load previously built EngineeredFeatureRows from parquet.

    Raises
    ------
    FileNotFoundError
        If the features for (season, feature_version) have not been built.
    """
    filepath = features_path(season, feature_version, features_dir)
    if not filepath.exists():
        raise FileNotFoundError(
            f"Engineered features not found: {filepath}\n"
            f"Run FeaturePipeline(...).build() with save_parquet=True first."
        )
    df = pd.read_parquet(filepath)
    required = ["game_id", "team", "opponent", "season", "week", "feature_version"]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Loaded features missing required columns: {missing}")
    return df


class FeaturePipeline:
    """
    End-to-end orchestration for EngineeredFeatureRows.

    Typical usage
    -------------
        store = StatsStore.from_parquet_dir()
        pipeline = FeaturePipeline(store, FeaturePipelineConfig(season=2025, weeks=tuple(range(1, 12))))
        features_df = pipeline.build()

    This will:
        - Load TeamGameRecords (game-level metrics with season fallbacks).
        - Add opponent-adjusted nets and matchup edges.
        - Add rest/bye context from the full season schedule.
        - Add leak-free 3/5-game EWMAs blended with the talent prior.
        - Winsorize/standardize engineered columns and drop zero-variance ones.
        - Stamp the feature version and null out any non-finite value.
    """

    def __init__(
        self,
        store: StatsStore,
        config: FeaturePipelineConfig,
        cache: SeasonCache | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.loader = AggregateStatsLoader(store, config.loader, cache=cache)
        self.hygiene_report: HygieneReport | None = None

    def recency_specs(self) -> List[RecencySpec]:
        return [
            RecencySpec(col=col, prior_col="talent_prior", prior_scale=self.config.talent_prior_scale)
            for col in self.config.ewma_cols
        ]

    def engineered_columns(self) -> List[str]:
        cols = adjusted_columns(self.config.loader.metrics)
        for spec in self.recency_specs():
            cols += [spec.output_name(w) for w in spec.windows]
        return cols + list(CONTEXT_FEATURES)

    def build_unscaled(self) -> pd.DataFrame:
        """Loader -> adjustment -> context -> recency, before hygiene."""
        cfg = self.config
        records = self.loader.load(cfg.season, cfg.weeks)
        df = add_opponent_adjustments(records, cfg.loader.metrics)
        df = add_schedule_features(df, schedule=self.store.games(cfg.season))
        df = add_recency_features(
            df,
            group_cols=["team", "season"],
            order_cols=["game_date", "game_id"],
            specs=self.recency_specs(),
        )
        return df

    def build(self) -> pd.DataFrame:
        cfg = self.config
        df = self.build_unscaled()

        engineered = [c for c in self.engineered_columns() if c in df.columns]
        df, report = apply_hygiene(df, engineered, cfg.hygiene)
        self.hygiene_report = report
        if report.dropped:
            logger.warning("Feature build dropped zero-variance columns: %s", report.dropped)

        float_cols = [c for c in df.columns if pd.api.types.is_float_dtype(df[c])]
        df = finalize_nullable_columns(df, float_cols)
        df["feature_version"] = cfg.feature_version

        if cfg.save_parquet:
            path = save_features_atomic(df, features_path(cfg.season, cfg.feature_version))
            logger.info("Saved %s engineered rows to %s", len(df), path)
        return df
