from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .config import DEFAULT_REGION, DEFAULT_RELEASE_TAKE, DEFAULT_TRACK_TAKE, MAX_TAKE

RefreshReason = Literal["release-mutated", "track-mutated", "manual-rebuild"]


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are read as UTC; aware ones are converted to it."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- Catalog rows ---


class Release(BaseModel):
    id: str
    title: str
    description: str | None = None
    cover_art: str | None = None
    release_type: str = "album"
    creator_id: str
    created_at: datetime
    updated_at: datetime

    # Stored as ISO text, so every row must share one offset to sort correctly
    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime) -> datetime:
        return as_utc(value)


class ReleaseTrack(BaseModel):
    id: str
    title: str
    duration: int | None = None  # seconds
    position: int = 0
    release_id: str
    audio_url: str | None = None


class TrackReleaseSummary(BaseModel):
    id: str
    title: str
    cover_art: str | None = None
    creator_id: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class TrackCandidate(BaseModel):
    id: str
    title: str
    duration: int | None = None
    position: int = 0
    release: TrackReleaseSummary


class ReleaseDetail(Release):
    tracks: list[ReleaseTrack] = Field(default_factory=list)


# --- Derived side-tables ---


class ReleaseSignal(BaseModel):
    release_id: str
    play_count: float = 0
    editorial_weight: float = 0
    genres: list[str] = Field(default_factory=list)
    trending_regions: list[str] = Field(default_factory=list)


class TrackSignal(BaseModel):
    track_id: str
    play_count: float = 0
    editorial_weight: float = 0
    genres: list[str] = Field(default_factory=list)


class ListenerProfile(BaseModel):
    user_id: str
    favorite_genres: list[str] = Field(default_factory=list)
    followed_creators: list[str] = Field(default_factory=list)


# --- Refresh pipeline ---


class RefreshTask(BaseModel):
    release_id: str
    regions: list[str] = Field(default_factory=lambda: [DEFAULT_REGION])
    reason: RefreshReason
    scheduled_at: datetime
    triggered_by: str | None = None


class MutationEvent(BaseModel):
    model: str  # Release | ReleaseTrack
    action: str  # create | update | delete | create_many
    args: dict[str, Any] = Field(default_factory=dict)  # where / data / context
    result: Any = None


class AuditEvent(BaseModel):
    actor_user_id: str | None = None
    actor_type: str
    event: str
    target: str | None = None
    metadata: Any = None
    request_id: str | None = None


# --- Search ---


class SearchParams(BaseModel):
    query: str
    release_take: int = Field(default=DEFAULT_RELEASE_TAKE, ge=1, le=MAX_TAKE)
    track_take: int = Field(default=DEFAULT_TRACK_TAKE, ge=1, le=MAX_TAKE)
    region: str = DEFAULT_REGION
    personalized: bool = False
    user_id: str | None = None
    request_id: str | None = None


class SignalBreakdown(BaseModel):
    popularity: float
    recency: float
    editorial_boost: float
    listener_affinity: float


class Personalization(BaseModel):
    applied: bool
    reasons: list[str] = Field(default_factory=list)
    matched_genres: list[str] = Field(default_factory=list)
    boost_multiplier: float = 1.0


class ReleaseSearchResult(BaseModel):
    id: str
    title: str
    description: str | None = None
    cover_art: str | None = None
    release_type: str
    creator_id: str
    created_at: datetime
    updated_at: datetime
    score: float
    signals: SignalBreakdown
    personalization: Personalization | None = None


class TrackSearchResult(BaseModel):
    id: str
    title: str
    duration: int | None = None
    position: int
    release: TrackReleaseSummary
    score: float
    signals: SignalBreakdown
    personalization: Personalization | None = None


class MatchedSignals(BaseModel):
    followed_creators: int = 0
    favored_genres: int = 0


class PersonalizationSummary(BaseModel):
    requested: bool
    applied: bool
    profile_unavailable: bool
    matched_signals: MatchedSignals = Field(default_factory=MatchedSignals)


class SearchMeta(BaseModel):
    query: str
    region: str
    personalization: PersonalizationSummary


class SearchResults(BaseModel):
    releases: list[ReleaseSearchResult] = Field(default_factory=list)
    tracks: list[TrackSearchResult] = Field(default_factory=list)
    meta: SearchMeta
