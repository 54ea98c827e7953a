import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

from .config import get_db_path
from .events import MutationBus
from .models import (
    AuditEvent,
    ListenerProfile,
    MutationEvent,
    Release,
    ReleaseDetail,
    ReleaseSignal,
    ReleaseTrack,
    TrackCandidate,
    TrackReleaseSummary,
    TrackSignal,
)

RELEASE_COLUMNS = ("id", "title", "description", "cover_art", "release_type", "creator_id", "created_at", "updated_at")
TRACK_COLUMNS = ("id", "title", "duration", "position", "release_id", "audio_url")

# Columns a caller may change through update_*; identity and ownership stay fixed.
RELEASE_MUTABLE = {"title", "description", "cover_art", "release_type"}
TRACK_MUTABLE = {"title", "duration", "position", "audio_url"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _like_pattern(query: str) -> str:
    escaped = query.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Database:
    """SQLite store for the catalog, its signal side-tables and the audit log.

    Writes to releases and tracks publish a MutationEvent on the bus once
    they have committed. The connection is shared across threads (telemetry
    sinks may write from a worker thread), so every use holds the lock.
    """

    def __init__(self, db_path: str | None = None, bus: MutationBus | None = None):
        if db_path is None:
            db_path = get_db_path()

        self.db_path = db_path
        self.bus = bus or MutationBus()
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        """Initialize database tables if they don't exist."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute("PRAGMA foreign_keys = ON")

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS releases (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                cover_art TEXT,
                release_type TEXT NOT NULL DEFAULT 'album',
                creator_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS release_tracks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                duration INTEGER,
                position INTEGER NOT NULL DEFAULT 0,
                release_id TEXT NOT NULL REFERENCES releases(id) ON DELETE CASCADE,
                audio_url TEXT
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS catalog_release_signals (
                release_id TEXT PRIMARY KEY,
                play_count REAL DEFAULT 0,
                editorial_weight REAL DEFAULT 0,
                genres TEXT,
                trending_regions TEXT
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS catalog_track_signals (
                track_id TEXT PRIMARY KEY,
                play_count REAL DEFAULT 0,
                editorial_weight REAL DEFAULT 0,
                genres TEXT
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS listener_personalization_profiles (
                user_id TEXT PRIMARY KEY,
                favorite_genres TEXT,
                followed_creators TEXT
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_user_id TEXT,
                actor_type TEXT NOT NULL,
                event TEXT NOT NULL,
                target TEXT,
                metadata TEXT,
                request_id TEXT,
                created_at TEXT DEFAULT (datetime('now'))
            )
        """
        )

    def close(self):
        with self._lock:
            self.conn.close()

    def fetch_dicts(self, sql: str, params: tuple = ()) -> list[dict]:
        with self._lock:
            self.conn.row_factory = sqlite3.Row
            try:
                rows = self.conn.execute(sql, params).fetchall()
                return [dict(row) for row in rows]
            finally:
                self.conn.row_factory = None

    def _write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor

    def _publish(self, model: str, action: str, args: dict[str, Any], result: Any):
        self.bus.publish(MutationEvent(model=model, action=action, args=args, result=result))

    # --- Releases ---

    def create_release(self, release: Release, context: dict | None = None) -> Release:
        """Insert a release and announce the write."""
        row = release.model_dump(mode="json")
        self._write(
            f"INSERT INTO releases ({', '.join(RELEASE_COLUMNS)}) VALUES ({', '.join('?' * len(RELEASE_COLUMNS))})",
            tuple(row[col] for col in RELEASE_COLUMNS),
        )
        self._publish("Release", "create", {"data": row, "context": context or {}}, row)
        return release

    def update_release(self, release_id: str, changes: dict[str, Any], context: dict | None = None) -> Release | None:
        """Apply metadata changes; returns None when the release does not exist."""
        unknown = set(changes) - RELEASE_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update release columns: {sorted(unknown)}")

        assignments = {**changes, "updated_at": _utcnow().isoformat()}
        cursor = self._write(
            f"UPDATE releases SET {', '.join(f'{col} = ?' for col in assignments)} WHERE id = ?",
            (*assignments.values(), release_id),
        )
        if cursor.rowcount == 0:
            return None

        release = self.get_release(release_id)
        self._publish(
            "Release",
            "update",
            {"where": {"id": release_id}, "data": changes, "context": context or {}},
            release.model_dump(mode="json") if release else None,
        )
        return release

    def delete_release(self, release_id: str, context: dict | None = None) -> Release | None:
        release = self.get_release(release_id)
        if release is None:
            return None

        self._write("DELETE FROM releases WHERE id = ?", (release_id,))
        self._publish(
            "Release",
            "delete",
            {"where": {"id": release_id}, "context": context or {}},
            release.model_dump(mode="json"),
        )
        return release

    def get_release(self, release_id: str) -> Release | None:
        rows = self.fetch_dicts(
            f"SELECT {', '.join(RELEASE_COLUMNS)} FROM releases WHERE id = ?", (release_id,)
        )
        return Release(**rows[0]) if rows else None

    def get_release_detail(self, release_id: str) -> ReleaseDetail | None:
        """A release with its tracks in running order."""
        release = self.get_release(release_id)
        if release is None:
            return None
        return ReleaseDetail(**release.model_dump(), tracks=self.list_tracks(release_id))

    def list_release_ids(self) -> list[str]:
        """Every release id in the catalog, oldest first."""
        rows = self.fetch_dicts("SELECT id FROM releases ORDER BY julianday(created_at) ASC, id ASC")
        return [row["id"] for row in rows]

    def list_releases(
        self,
        search: str | None = None,
        creator_id: str | None = None,
        skip: int = 0,
        take: int = 20,
    ) -> dict:
        """Page through releases, newest first, with pagination totals."""
        clauses = []
        params: list[Any] = []
        if search:
            pattern = _like_pattern(search)
            clauses.append(
                "(LOWER(title) LIKE ? ESCAPE '\\' OR LOWER(COALESCE(description, '')) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        if creator_id:
            clauses.append("creator_id = ?")
            params.append(creator_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            total = self.conn.execute(f"SELECT COUNT(*) FROM releases {where}", tuple(params)).fetchone()[0]
            rows = self.fetch_dicts(
                f"""
                SELECT {', '.join(RELEASE_COLUMNS)} FROM releases {where}
                ORDER BY julianday(created_at) DESC
                LIMIT ? OFFSET ?
                """,
                (*params, take, skip),
            )
        return {
            "releases": [Release(**row) for row in rows],
            "pagination": {
                "skip": skip,
                "take": take,
                "total": total,
                "has_more": skip + take < total,
            },
        }

    # --- Tracks ---

    def create_track(self, track: ReleaseTrack, context: dict | None = None) -> ReleaseTrack:
        row = track.model_dump(mode="json")
        self._write(
            f"INSERT INTO release_tracks ({', '.join(TRACK_COLUMNS)}) VALUES ({', '.join('?' * len(TRACK_COLUMNS))})",
            tuple(row[col] for col in TRACK_COLUMNS),
        )
        self._publish("ReleaseTrack", "create", {"data": row, "context": context or {}}, row)
        return track

    def create_tracks(self, tracks: list[ReleaseTrack], context: dict | None = None) -> list[ReleaseTrack]:
        """Bulk insert; a single event covers every release touched."""
        rows = [track.model_dump(mode="json") for track in tracks]
        with self._lock:
            self.conn.executemany(
                f"INSERT INTO release_tracks ({', '.join(TRACK_COLUMNS)}) VALUES ({', '.join('?' * len(TRACK_COLUMNS))})",
                [tuple(row[col] for col in TRACK_COLUMNS) for row in rows],
            )
            self.conn.commit()
        self._publish("ReleaseTrack", "create_many", {"data": rows, "context": context or {}}, rows)
        return tracks

    def update_track(self, track_id: str, changes: dict[str, Any], context: dict | None = None) -> ReleaseTrack | None:
        unknown = set(changes) - TRACK_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update track columns: {sorted(unknown)}")
        if not changes:
            return self.get_track(track_id)

        cursor = self._write(
            f"UPDATE release_tracks SET {', '.join(f'{col} = ?' for col in changes)} WHERE id = ?",
            (*changes.values(), track_id),
        )
        if cursor.rowcount == 0:
            return None

        track = self.get_track(track_id)
        self._publish(
            "ReleaseTrack",
            "update",
            {"where": {"id": track_id}, "data": changes, "context": context or {}},
            track.model_dump(mode="json") if track else None,
        )
        return track

    def delete_track(self, track_id: str, context: dict | None = None) -> ReleaseTrack | None:
        track = self.get_track(track_id)
        if track is None:
            return None

        self._write("DELETE FROM release_tracks WHERE id = ?", (track_id,))
        self._publish(
            "ReleaseTrack",
            "delete",
            {"where": {"id": track_id}, "context": context or {}},
            track.model_dump(mode="json"),
        )
        return track

    def get_track(self, track_id: str) -> ReleaseTrack | None:
        rows = self.fetch_dicts(
            f"SELECT {', '.join(TRACK_COLUMNS)} FROM release_tracks WHERE id = ?", (track_id,)
        )
        return ReleaseTrack(**rows[0]) if rows else None

    def list_tracks(self, release_id: str) -> list[ReleaseTrack]:
        rows = self.fetch_dicts(
            f"SELECT {', '.join(TRACK_COLUMNS)} FROM release_tracks WHERE release_id = ? ORDER BY position ASC",
            (release_id,),
        )
        return [ReleaseTrack(**row) for row in rows]

    # --- Search candidates ---

    def find_releases(self, query: str, take: int) -> list[Release]:
        """Releases whose title or description contains the query, newest first."""
        if not query.strip():
            return []
        pattern = _like_pattern(query)
        rows = self.fetch_dicts(
            f"""
            SELECT {', '.join(RELEASE_COLUMNS)} FROM releases
            WHERE LOWER(title) LIKE ? ESCAPE '\\'
               OR LOWER(COALESCE(description, '')) LIKE ? ESCAPE '\\'
            ORDER BY julianday(created_at) DESC
            LIMIT ?
            """,
            (pattern, pattern, take),
        )
        return [Release(**row) for row in rows]

    def find_tracks(self, query: str, take: int) -> list[TrackCandidate]:
        """Tracks whose title contains the query, by intra-release position."""
        if not query.strip():
            return []
        rows = self.fetch_dicts(
            """
            SELECT t.id, t.title, t.duration, t.position,
                   r.id AS release_id, r.title AS release_title, r.cover_art AS release_cover_art,
                   r.creator_id AS release_creator_id, r.created_at AS release_created_at
            FROM release_tracks t
            JOIN releases r ON r.id = t.release_id
            WHERE LOWER(t.title) LIKE ? ESCAPE '\\'
            ORDER BY t.position ASC
            LIMIT ?
            """,
            (_like_pattern(query), take),
        )
        return [
            TrackCandidate(
                id=row["id"],
                title=row["title"],
                duration=row["duration"],
                position=row["position"],
                release=TrackReleaseSummary(
                    id=row["release_id"],
                    title=row["release_title"],
                    cover_art=row["release_cover_art"],
                    creator_id=row["release_creator_id"],
                    created_at=row["release_created_at"],
                ),
            )
            for row in rows
        ]

    # --- Signal side-tables (populated by the analytics job) ---

    def upsert_release_signal(self, signal: ReleaseSignal):
        self._write(
            """INSERT OR REPLACE INTO catalog_release_signals
               (release_id, play_count, editorial_weight, genres, trending_regions)
               VALUES (?, ?, ?, ?, ?)""",
            (
                signal.release_id,
                signal.play_count,
                signal.editorial_weight,
                json.dumps(signal.genres),
                json.dumps(signal.trending_regions),
            ),
        )

    def upsert_track_signal(self, signal: TrackSignal):
        self._write(
            """INSERT OR REPLACE INTO catalog_track_signals
               (track_id, play_count, editorial_weight, genres)
               VALUES (?, ?, ?, ?)""",
            (signal.track_id, signal.play_count, signal.editorial_weight, json.dumps(signal.genres)),
        )

    def upsert_listener_profile(self, profile: ListenerProfile):
        self._write(
            """INSERT OR REPLACE INTO listener_personalization_profiles
               (user_id, favorite_genres, followed_creators)
               VALUES (?, ?, ?)""",
            (profile.user_id, json.dumps(profile.favorite_genres), json.dumps(profile.followed_creators)),
        )

    # --- Audit log ---

    def insert_audit_event(self, event: AuditEvent) -> int:
        cursor = self._write(
            """
            INSERT INTO audit_log (actor_user_id, actor_type, event, target, metadata, request_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
            (
                event.actor_user_id,
                event.actor_type,
                event.event,
                event.target,
                json.dumps(event.metadata, default=str) if event.metadata is not None else None,
                event.request_id,
                _utcnow().isoformat(),
            ),
        )
        return cursor.lastrowid or 0

    def latest_audit_events(self, limit: int = 20) -> list[dict]:
        rows = self.fetch_dicts(
            """
            SELECT id, actor_user_id, actor_type, event, target, metadata, request_id, created_at
            FROM audit_log
            ORDER BY id DESC
            LIMIT ?
        """,
            (limit,),
        )
        for row in rows:
            row["metadata"] = json.loads(row["metadata"]) if row["metadata"] else None
        return rows
