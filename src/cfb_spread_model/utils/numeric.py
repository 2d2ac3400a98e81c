from __future__ import annotations

from typing import Iterable

import numpy as np
import pandas as pd


def to_float_array(values: pd.Series | Iterable[float]) -> np.ndarray:
    """Numeric view as float64 with every missing value as NaN."""
    series = pd.to_numeric(pd.Series(values), errors="coerce")
    return series.to_numpy(dtype=float, na_value=np.nan)


def to_nullable_float(values: pd.Series) -> pd.Series:
    """
    Convert to pandas' nullable ``Float64`` dtype.

    NaN and +/-inf become ``<NA>``, so downstream arithmetic propagates nulls
    instead of silently carrying non-finite values.
    """
    arr = to_float_array(values)
    arr = np.where(np.isfinite(arr), arr, np.nan)
    index = values.index if isinstance(values, pd.Series) else None
    name = values.name if isinstance(values, pd.Series) else None
    return pd.Series(pd.array(arr, dtype="Float64"), index=index, name=name)


def finalize_nullable_columns(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """Return a copy of ``df`` with ``columns`` cast to finite-or-null ``Float64``."""
    out = df.copy()
    for col in columns:
        out[col] = to_nullable_float(out[col])
    return out
