from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

# Repo root (src/cfb_spread_model/config.py -> two levels up)
PROJECT_ROOT = Path(__file__).resolve().parents[2]


@dataclass(frozen=True)
class DataConfig:
    """
    Where the data store, engineered features and static run inputs live.

    ``raw_data_dir`` holds one ``<table>.parquet`` per store table;
    ``config_dir`` holds the blend.json / hfa.json artifacts.
    """

    raw_data_dir: Path = PROJECT_ROOT / "data" / "raw"
    features_dir: Path = PROJECT_ROOT / "data" / "features"
    config_dir: Path = PROJECT_ROOT / "config"
    default_weeks: Optional[List[int]] = None

    def __post_init__(self):
        if self.default_weeks is None:
            # Regular-season window the calibration sets are drawn from
            object.__setattr__(self, "default_weeks", list(range(1, 12)))


@dataclass(frozen=True)
class ModelConfig:
    """Fitted-model storage and default version tags."""

    models_dir: Path = PROJECT_ROOT / "models"
    default_model_version: str = "v1"
    default_feature_version: str = "fe_v1"


@dataclass(frozen=True)
class LogConfig:
    """Log file location and human-review diagnostics."""

    logs_dir: Path = PROJECT_ROOT / "logs"
    diagnostics_dir: Path = PROJECT_ROOT / "results" / "diagnostics"
    log_level: str = "INFO"


DATA_CONFIG = DataConfig()
MODEL_CONFIG = ModelConfig()
LOG_CONFIG = LogConfig()
