"""
cfb_spread_model

Core package for the college-football spread calibration system.

Structure:
- data: store access, aggregate loading, feature engineering, hygiene
- models: elastic net solver, model selection, calibration, persistence
- evaluation: splits, metrics, gates, diagnostic artifacts
- serving: rating blend and spread/edge prediction
"""

__all__ = ["config", "errors"]
