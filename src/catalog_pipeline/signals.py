"""Read-only access to aggregated catalog signals and listener profiles."""

import json

from .db import Database
from .models import ListenerProfile, ReleaseSignal, TrackSignal


def _json_list(value: str | None) -> list[str]:
    if not value:
        return []
    parsed = json.loads(value)
    return [str(item) for item in parsed] if isinstance(parsed, list) else []


def _placeholders(count: int) -> str:
    return ", ".join("?" * count)


class SignalRepository:
    """Batch lookups bounded by an already-fetched candidate id list."""

    def __init__(self, db: Database):
        self.db = db

    def fetch_release_signals(self, release_ids: list[str]) -> dict[str, ReleaseSignal]:
        """Signals keyed by release id. Releases without a row are simply absent."""
        if not release_ids:
            return {}

        ids = list(dict.fromkeys(release_ids))
        rows = self.db.fetch_dicts(
            f"""
            SELECT release_id, play_count, editorial_weight, genres, trending_regions
            FROM catalog_release_signals
            WHERE release_id IN ({_placeholders(len(ids))})
            """,
            tuple(ids),
        )
        return {
            row["release_id"]: ReleaseSignal(
                release_id=row["release_id"],
                play_count=row["play_count"] or 0,
                editorial_weight=row["editorial_weight"] or 0,
                genres=_json_list(row["genres"]),
                trending_regions=_json_list(row["trending_regions"]),
            )
            for row in rows
        }

    def fetch_track_signals(self, track_ids: list[str]) -> dict[str, TrackSignal]:
        """Signals keyed by track id. Tracks without a row are simply absent."""
        if not track_ids:
            return {}

        ids = list(dict.fromkeys(track_ids))
        rows = self.db.fetch_dicts(
            f"""
            SELECT track_id, play_count, editorial_weight, genres
            FROM catalog_track_signals
            WHERE track_id IN ({_placeholders(len(ids))})
            """,
            tuple(ids),
        )
        return {
            row["track_id"]: TrackSignal(
                track_id=row["track_id"],
                play_count=row["play_count"] or 0,
                editorial_weight=row["editorial_weight"] or 0,
                genres=_json_list(row["genres"]),
            )
            for row in rows
        }

    def fetch_listener_profile(self, user_id: str) -> ListenerProfile | None:
        """Return the listener's profile, or None when they have none.

        Driver errors propagate so callers can tell a failure from "not found".
        """
        rows = self.db.fetch_dicts(
            """
            SELECT user_id, favorite_genres, followed_creators
            FROM listener_personalization_profiles
            WHERE user_id = ?
            LIMIT 1
            """,
            (user_id,),
        )
        if not rows:
            return None

        row = rows[0]
        return ListenerProfile(
            user_id=row["user_id"],
            favorite_genres=_json_list(row["favorite_genres"]),
            followed_creators=_json_list(row["followed_creators"]),
        )
