"""Data access, feature engineering and preprocessing."""
