"""
Feature engineering pipeline for team-game records.

Responsibilities
----------------
- Load one TeamGameRecord per team per completed game (aggregate loader).
- Convert raw efficiency metrics into opponent-adjusted nets and edges.
- Add schedule context (rest days, rest delta, bye week).
- Add leak-free 3/5-game EWMAs blended with a preseason talent prior.
- Winsorize and standardize, dropping zero-variance columns.
- Persist EngineeredFeatureRows tagged with a feature version.

Usage example
-------------
    from cfb_spread_model.data.feature_engineering.feature_pipeline import (
        FeaturePipeline,
        FeaturePipelineConfig,
    )

    pipeline = FeaturePipeline(store, FeaturePipelineConfig(season=2025))
    features_df = pipeline.build()
"""

# Import concrete modules where you need them rather than relying on this
# package to re-export everything.
