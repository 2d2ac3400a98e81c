"""Read-only access to the statistics/market store and the aggregate loader."""

__all__: list[str] = []
