import numpy as np
import pandas as pd
import pytest

from cfb_spread_model.data.preprocessing.hygiene import (
    HygieneConfig,
    apply_hygiene,
    percentile_bounds,
)


def _make_feature_frame() -> pd.DataFrame:
    """
    101 rows: ``x`` is 0..99 plus one outlier, ``flag`` a 0/1 dummy,
    ``const`` constant, ``gappy`` has nulls, ``intercept`` is excluded.
    """
    x = np.append(np.arange(100, dtype=float), 1000.0)
    rng = np.random.default_rng(0)
    gappy = rng.normal(5.0, 2.0, len(x))
    gappy[::10] = np.nan
    return pd.DataFrame(
        {
            "x": x,
            "flag": (np.arange(len(x)) % 3 == 0).astype(float),
            "const": 5.0,
            "gappy": gappy,
            "intercept": 1.0,
        }
    )


FEATURES = ["x", "flag", "const", "gappy", "intercept"]


def test_percentile_bounds_are_order_statistics():
    lo, hi = percentile_bounds(np.append(np.arange(100, dtype=float), 1000.0), 0.01)
    assert (lo, hi) == (1.0, 99.0)
    assert np.isnan(percentile_bounds(np.array([np.nan]), 0.01)[0])


def test_winsorize_then_standardize():
    df = _make_feature_frame()
    out, report = apply_hygiene(df, FEATURES, HygieneConfig(winsorize_pct=0.01))

    assert report.bounds["x"] == (1.0, 99.0)
    assert set(report.clipped["x"]) == {0, 100}

    clipped = np.clip(df["x"].to_numpy(), 1.0, 99.0)
    assert report.means["x"] == pytest.approx(clipped.mean())
    assert report.stds["x"] == pytest.approx(clipped.std(ddof=0))

    x = out["x"].astype(float)
    assert x.mean() == pytest.approx(0.0, abs=1e-12)
    assert x.std(ddof=0) == pytest.approx(1.0)
    assert x.max() == pytest.approx((99.0 - clipped.mean()) / clipped.std(ddof=0))


def test_zero_variance_feature_dropped_and_reported():
    out, report = apply_hygiene(_make_feature_frame(), FEATURES)

    assert "const" not in out.columns
    assert report.dropped == ["const"]
    assert "const" not in report.kept


def test_binary_and_excluded_columns_pass_through():
    df = _make_feature_frame()
    out, report = apply_hygiene(df, FEATURES)

    assert report.binary == ["flag"]
    assert "flag" not in report.means
    np.testing.assert_array_equal(out["flag"].astype(float).to_numpy(), df["flag"].to_numpy())
    np.testing.assert_array_equal(out["intercept"].to_numpy(), df["intercept"].to_numpy())


def test_nulls_stay_null():
    df = _make_feature_frame()
    out, _ = apply_hygiene(df, FEATURES)

    assert out["gappy"].isna().sum() == df["gappy"].isna().sum()
    assert str(out["gappy"].dtype) == "Float64"


def test_hygiene_is_idempotent():
    first, _ = apply_hygiene(_make_feature_frame(), FEATURES)
    kept = [c for c in FEATURES if c in first.columns]
    second, report = apply_hygiene(first, kept)

    assert report.dropped == []
    for col in kept:
        np.testing.assert_allclose(
            second[col].astype(float).to_numpy(),
            first[col].astype(float).to_numpy(),
            atol=1e-9,
        )


def test_missing_feature_column_raises():
    with pytest.raises(KeyError):
        apply_hygiene(_make_feature_frame(), ["nope"])


def test_hygiene_config_validation():
    with pytest.raises(ValueError):
        HygieneConfig(winsorize_pct=0.5)
    with pytest.raises(ValueError):
        HygieneConfig(min_std=0.0)
