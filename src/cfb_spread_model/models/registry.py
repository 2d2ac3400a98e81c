from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from cfb_spread_model.config import MODEL_CONFIG
from cfb_spread_model.models.calibration import FittedModel

logger = logging.getLogger(__name__)


def json_safe(value: Any) -> Any:
    """Replace non-finite floats with None so the file stays strict JSON."""
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def json_restore(value: Any) -> Any:
    """Inverse of ``json_safe`` for numeric fields: None reads back as NaN."""
    if value is None:
        return float("nan")
    if isinstance(value, dict):
        return {k: json_restore(v) for k, v in value.items()}
    return value


class ModelRegistry:
    """
    File-backed store of FittedModels keyed by
    (season, feature_version, fit_label, model_version).

    Layout: ``<models_dir>/<season>/<feature_version>/<fit_label>/<model_version>.json``.

    Writes go to a temp file in the target directory and are swapped in with
    ``os.replace``, so readers see either the previous complete record or
    the new complete record, never a partial one.
    """

    def __init__(self, models_dir: Path | None = None) -> None:
        self.models_dir = Path(models_dir) if models_dir is not None else MODEL_CONFIG.models_dir

    def path_for(self, season: Optional[int], feature_version: str, fit_label: str, model_version: str) -> Path:
        season_part = str(season) if season is not None else "all"
        return self.models_dir / season_part / feature_version / fit_label / f"{model_version}.json"

    def save(self, model: FittedModel) -> Path:
        path = self.path_for(model.season, model.feature_version, model.fit_label, model.model_version)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json_safe(model.to_dict())

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info("Saved model %s to %s (gates_passed=%s)", model.key, path, model.gates_passed)
        return path

    def load(self, season: Optional[int], feature_version: str, fit_label: str, model_version: str) -> FittedModel:
        path = self.path_for(season, feature_version, fit_label, model_version)
        if not path.exists():
            raise FileNotFoundError(f"No saved model at {path}")
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        for key in (
            "cv_rmse",
            "wf_rmse",
            "intercept",
            "intercept_standardized",
            "baselines",
            "calibration_head",
            "wf_week_rmse",
        ):
            payload[key] = json_restore(payload.get(key))
        return FittedModel.from_dict(payload)

    def list_versions(self, season: Optional[int], feature_version: str, fit_label: str) -> List[str]:
        directory = self.path_for(season, feature_version, fit_label, "_").parent
        if not directory.is_dir():
            return []
        return sorted(p.stem for p in directory.glob("*.json"))
