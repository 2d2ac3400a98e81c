"""Prediction helpers consumed by downstream serving code.

This package contains:

- the rating blender (two rating systems into one blended difference),
- the spread predictor that applies a persisted FittedModel and
  reports the model-vs-market edge.

It intentionally does not execute any code at import time.
"""

__all__: list[str] = []
