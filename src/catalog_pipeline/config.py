# src/catalog_pipeline/config.py
"""
Catalog Relevance Configuration

SCORING WEIGHTS:
These weights control how the per-candidate signals combine into the base
composite score. Total must sum to 1.0 (100%).

- POPULARITY: log-compressed cumulative play count
- RECENCY: linear decay over a one-year window
- EDITORIAL: curator-assigned boost

PERSONALIZATION BOOSTS:
Added to a starting multiplier of 1.0 when a listener profile matches.
Release matches weigh slightly more than track matches.
"""

import os
from pathlib import Path


class RelevanceWeights:
    POPULARITY = 0.6
    RECENCY = 0.3
    EDITORIAL = 0.1

    @classmethod
    def validate(cls):
        """Ensure weights sum to 1.0"""
        total = sum([
            cls.POPULARITY,
            cls.RECENCY,
            cls.EDITORIAL,
        ])
        if abs(total - 1.0) >= 0.001:
            raise AssertionError(f"Weights must sum to 1.0, got {total}")
        return True


class PersonalizationBoosts:
    # Release candidates
    RELEASE_FOLLOWED_CREATOR = 0.25
    RELEASE_FAVORED_GENRE = 0.15

    # Track candidates (matched against the owning release's creator)
    TRACK_FOLLOWED_CREATOR = 0.20
    TRACK_FAVORED_GENRE = 0.10


# Validate on import
RelevanceWeights.validate()


# Normalization
POPULARITY_LOG_DIVISOR = 6.0  # log10(1M plays) ~= 6
EDITORIAL_DIVISOR = 5.0
RECENCY_WINDOW_DAYS = 365.0

# Personalization reason tags
REASON_FOLLOWED_CREATOR = "followed-creator"
REASON_FAVORED_GENRE = "favored-genre"

# Search
DEFAULT_REGION = "global"
DEFAULT_RELEASE_TAKE = 5
DEFAULT_TRACK_TAKE = 5
MAX_TAKE = 50

# Browsing
DEFAULT_LIST_TAKE = 20
DEFAULT_AUDIT_LIMIT = 20
MAX_AUDIT_LIMIT = 100

# Refresh pipeline
REFRESH_INTERVAL_SECONDS = 60
REINDEX_TIMEOUT_SECONDS = 30.0


def get_db_path() -> str:
    """Resolve the sqlite path from CATALOG_DB_PATH or the default home directory."""
    db_path = os.getenv("CATALOG_DB_PATH", "")
    if db_path:
        return db_path
    db_dir = Path.home() / ".catalog-pipeline"
    db_dir.mkdir(parents=True, exist_ok=True)
    return str(db_dir / "catalog.db")


def get_reindex_service_url() -> str | None:
    return os.getenv("REINDEX_SERVICE_URL") or None
