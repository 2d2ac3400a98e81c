"""Time-respecting splits, metrics, acceptance gates and diagnostics."""
