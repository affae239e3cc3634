"""
Costing configuration — single source of truth for adjustment defaults,
batch sizing and popularity normalisation.

Import from here in the calculator, services and workers rather than
hardcoding values.
"""
from __future__ import annotations

import os

# ── Adjustment defaults (percentages are 0-100, factors are multipliers) ──────
DEFAULT_INDIRECT_COST_PCT: float = 15.0
DEFAULT_OVERHEAD_PCT: float = 10.0
DEFAULT_CONTINGENCY_PCT: float = 5.0
DEFAULT_BULK_DISCOUNT_PCT: float = 0.0
DEFAULT_LOCATION_FACTOR: float = 1.0
DEFAULT_SEASONAL_FACTOR: float = 1.0

# Neutral multipliers substituted when a factor field is absent
NEUTRAL_PRODUCTIVITY: float = 1.0
NEUTRAL_CREW_SIZE: float = 1.0
NEUTRAL_UTILIZATION: float = 1.0

# Presentation rounding (2 dp money)
MONEY_DP: int = 2

# ── Batch calculation ──────────────────────────────────────────────────────────
BATCH_MAX_CONCURRENCY: int = int(os.getenv("BATCH_MAX_CONCURRENCY", "8"))
# Upper bound on ids accepted in one calculate_many call
BATCH_MAX_ITEMS: int = int(os.getenv("BATCH_MAX_ITEMS", "5000"))
# Batch progress is reported every this many finished items
BATCH_PROGRESS_INTERVAL: int = 50

# ── Popularity aggregation ─────────────────────────────────────────────────────
POPULARITY_WINDOW_DAYS: int = int(os.getenv("POPULARITY_WINDOW_DAYS", "30"))
POPULARITY_RETENTION_DAYS: int = int(os.getenv("POPULARITY_RETENTION_DAYS", "90"))
# Usage count that maps to a score of 100 on the log scale
POPULARITY_WINDOW_MAX: int = 1000
POPULARITY_MAX_SCORE: float = 100.0
POPULARITY_TOP_PAIRS: int = 5

# ── Price snapshots ────────────────────────────────────────────────────────────
SNAPSHOT_VERSION: str = "1.0"
SNAPSHOT_METHOD_PROJECT: str = "project_specific"
SNAPSHOT_METHOD_ALL_ITEMS: str = "all_library_items"
