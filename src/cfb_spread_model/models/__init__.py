"""Elastic net solver, model selection, calibration runs and persistence."""

__all__: list[str] = []
