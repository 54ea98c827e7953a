# src/catalog_pipeline/scoring.py
"""
Scoring functions for catalog search ranking.

Per-signal scores are normalized to 0.0-1.0:
- 1.0 = strongest signal
- 0.0 = no signal

The base composite is a weighted sum (weights in config.py, summing to 1.0),
then scaled by a listener personalization multiplier >= 1.0.
"""

import math
from datetime import datetime, timezone
from typing import Literal, NamedTuple

from catalog_pipeline.config import (
    EDITORIAL_DIVISOR,
    POPULARITY_LOG_DIVISOR,
    REASON_FAVORED_GENRE,
    REASON_FOLLOWED_CREATOR,
    RECENCY_WINDOW_DAYS,
    PersonalizationBoosts,
    RelevanceWeights,
)
from catalog_pipeline.models import ListenerProfile, Personalization, SignalBreakdown

CandidateKind = Literal["release", "track"]


class CandidateScore(NamedTuple):
    score: float
    signals: SignalBreakdown
    personalization: Personalization | None


def normalize_popularity(play_count: float) -> float:
    """
    Score based on cumulative play count (0.0-1.0).

    Log-compressed so heavy-tailed counts stay comparable:
    - 0 or fewer plays: 0.0
    - ~1,000 plays: 0.5
    - ~1,000,000 plays and up: 1.0

    Args:
        play_count: Cumulative plays; non-finite values score 0.0

    Returns:
        Score between 0.0 and 1.0
    """
    if play_count is None or not math.isfinite(play_count) or play_count <= 0:
        return 0.0

    return min(1.0, math.log10(play_count + 1) / POPULARITY_LOG_DIVISOR)


def compute_recency_score(created_at: datetime, now: datetime | None = None) -> float:
    """
    Score based on creation date (0.0-1.0, newer = higher).

    Linear decay over one year:
    - created now (or in the future): 1.0
    - ~6 months old: ~0.5
    - 365+ days old: 0.0

    Args:
        created_at: Creation timestamp; naive values are treated as UTC
        now: Reference time, defaults to the current UTC time

    Returns:
        Score between 0.0 and 1.0
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    score = max(0.0, 1.0 - min(age_days, RECENCY_WINDOW_DAYS) / RECENCY_WINDOW_DAYS)

    return score if math.isfinite(score) else 0.0


def normalize_editorial_boost(editorial_weight: float) -> float:
    """
    Score based on curator weight (0.0-1.0).

    Linear up to a weight of 5, capped there. Zero, negative and
    non-finite weights score 0.0.
    """
    if editorial_weight is None or not math.isfinite(editorial_weight) or editorial_weight <= 0:
        return 0.0

    return min(1.0, editorial_weight / EDITORIAL_DIVISOR)


def compute_personalization(
    kind: CandidateKind,
    creator_id: str,
    genres: list[str],
    profile: ListenerProfile | None,
) -> Personalization | None:
    """
    Match a candidate against a listener profile.

    Boosts are additive on top of 1.0. Releases earn 0.25 for a followed
    creator and 0.15 for any favored genre; tracks earn 0.20 and 0.10,
    matched against their release's creator.

    Args:
        kind: "release" or "track"
        creator_id: Owning creator (for tracks, the release's creator)
        genres: Candidate genre tags
        profile: Listener profile, or None when none was loaded

    Returns:
        None without a profile, otherwise the applied boost and its reasons
    """
    if profile is None:
        return None

    if kind == "release":
        creator_boost = PersonalizationBoosts.RELEASE_FOLLOWED_CREATOR
        genre_boost = PersonalizationBoosts.RELEASE_FAVORED_GENRE
    else:
        creator_boost = PersonalizationBoosts.TRACK_FOLLOWED_CREATOR
        genre_boost = PersonalizationBoosts.TRACK_FAVORED_GENRE

    multiplier = 1.0
    reasons: list[str] = []

    if creator_id in set(profile.followed_creators):
        multiplier += creator_boost
        reasons.append(REASON_FOLLOWED_CREATOR)

    favorite_genres = set(profile.favorite_genres)
    matched_genres = [genre for genre in genres if genre in favorite_genres]
    if matched_genres:
        multiplier += genre_boost
        reasons.append(REASON_FAVORED_GENRE)

    return Personalization(
        applied=bool(reasons),
        reasons=reasons,
        matched_genres=matched_genres,
        boost_multiplier=multiplier,
    )


def calculate_composite_score(
    popularity_score: float,
    recency_score: float,
    editorial_boost: float,
    personalization_multiplier: float = 1.0,
    weights: type[RelevanceWeights] = RelevanceWeights,
) -> float:
    """
    Weighted combination of the normalized signals, scaled by personalization.

    The unboosted base lies in 0.0-1.0; personalization can lift it above 1.0.
    """
    base = (
        popularity_score * weights.POPULARITY +
        recency_score * weights.RECENCY +
        editorial_boost * weights.EDITORIAL
    )
    return base * personalization_multiplier


def score_candidate(
    kind: CandidateKind,
    *,
    play_count: float,
    editorial_weight: float,
    created_at: datetime,
    creator_id: str,
    genres: list[str],
    profile: ListenerProfile | None,
    now: datetime | None = None,
) -> CandidateScore:
    """Score one release or track candidate with its full signal breakdown."""
    popularity = normalize_popularity(play_count)
    recency = compute_recency_score(created_at, now)
    editorial = normalize_editorial_boost(editorial_weight)

    personalization = compute_personalization(kind, creator_id, genres, profile)
    multiplier = personalization.boost_multiplier if personalization else 1.0

    return CandidateScore(
        score=calculate_composite_score(popularity, recency, editorial, multiplier),
        signals=SignalBreakdown(
            popularity=popularity,
            recency=recency,
            editorial_boost=editorial,
            listener_affinity=multiplier,
        ),
        personalization=personalization,
    )
