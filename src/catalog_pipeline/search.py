"""Catalog search: candidate fetch, signal lookup, scoring and ranking."""

import logging
from datetime import datetime, timezone

from .config import REASON_FAVORED_GENRE, REASON_FOLLOWED_CREATOR
from .db import Database
from .models import (
    ListenerProfile,
    MatchedSignals,
    PersonalizationSummary,
    Release,
    ReleaseSearchResult,
    ReleaseSignal,
    SearchMeta,
    SearchParams,
    SearchResults,
    TrackCandidate,
    TrackSearchResult,
    TrackSignal,
)
from .scoring import score_candidate
from .signals import SignalRepository
from .telemetry import TelemetryEmitter

logger = logging.getLogger(__name__)


class CatalogSearchService:
    def __init__(self, db: Database, signals: SignalRepository, telemetry: TelemetryEmitter):
        self.db = db
        self.signals = signals
        self.telemetry = telemetry

    async def search(self, params: SearchParams) -> SearchResults:
        """Rank releases and tracks matching the query.

        Candidate fetch failures propagate. A failed profile lookup only
        degrades the result to unpersonalized ranking.
        """
        releases = self.db.find_releases(params.query, params.release_take)
        tracks = self.db.find_tracks(params.query, params.track_take)

        release_signals = self.signals.fetch_release_signals([release.id for release in releases])
        track_signals = self.signals.fetch_track_signals([track.id for track in tracks])

        profile, profile_unavailable = self._load_profile(params)

        now = datetime.now(timezone.utc)
        release_results = [
            self._score_release(release, release_signals.get(release.id), profile, now)
            for release in releases
        ]
        track_results = [
            self._score_track(track, track_signals.get(track.id), profile, now)
            for track in tracks
        ]

        # list.sort is stable: equal scores keep fetch order
        release_results.sort(key=lambda result: result.score, reverse=True)
        track_results.sort(key=lambda result: result.score, reverse=True)

        meta = SearchMeta(
            query=params.query,
            region=params.region,
            personalization=PersonalizationSummary(
                requested=params.personalized,
                applied=profile is not None,
                profile_unavailable=profile_unavailable,
                matched_signals=self._matched_signals(release_results),
            ),
        )

        self._emit_search_events(params, meta, len(release_results), len(track_results))

        return SearchResults(releases=release_results, tracks=track_results, meta=meta)

    def _load_profile(self, params: SearchParams) -> tuple[ListenerProfile | None, bool]:
        if not (params.personalized and params.user_id):
            return None, False

        try:
            return self.signals.fetch_listener_profile(params.user_id), False
        except Exception as e:
            logger.warning(f"Failed to load listener profile for {params.user_id}: {e}")
            return None, True

    def _score_release(
        self,
        release: Release,
        signal: ReleaseSignal | None,
        profile: ListenerProfile | None,
        now: datetime,
    ) -> ReleaseSearchResult:
        signal = signal or ReleaseSignal(release_id=release.id)
        scored = score_candidate(
            "release",
            play_count=signal.play_count,
            editorial_weight=signal.editorial_weight,
            created_at=release.created_at,
            creator_id=release.creator_id,
            genres=signal.genres,
            profile=profile,
            now=now,
        )
        return ReleaseSearchResult(
            **release.model_dump(),
            score=scored.score,
            signals=scored.signals,
            personalization=scored.personalization,
        )

    def _score_track(
        self,
        track: TrackCandidate,
        signal: TrackSignal | None,
        profile: ListenerProfile | None,
        now: datetime,
    ) -> TrackSearchResult:
        signal = signal or TrackSignal(track_id=track.id)
        scored = score_candidate(
            "track",
            play_count=signal.play_count,
            editorial_weight=signal.editorial_weight,
            created_at=track.release.created_at,
            creator_id=track.release.creator_id,
            genres=signal.genres,
            profile=profile,
            now=now,
        )
        return TrackSearchResult(
            id=track.id,
            title=track.title,
            duration=track.duration,
            position=track.position,
            release=track.release,
            score=scored.score,
            signals=scored.signals,
            personalization=scored.personalization,
        )

    @staticmethod
    def _matched_signals(results: list[ReleaseSearchResult]) -> MatchedSignals:
        def count(reason: str) -> int:
            return sum(
                1 for result in results
                if result.personalization and reason in result.personalization.reasons
            )

        return MatchedSignals(
            followed_creators=count(REASON_FOLLOWED_CREATOR),
            favored_genres=count(REASON_FAVORED_GENRE),
        )

    def _emit_search_events(self, params: SearchParams, meta: SearchMeta, release_count: int, track_count: int):
        personalization = meta.personalization
        summary = {
            "query": params.query,
            "region": params.region,
            "release_count": release_count,
            "track_count": track_count,
            "personalization_requested": personalization.requested,
            "personalization_applied": personalization.applied,
            "profile_unavailable": personalization.profile_unavailable,
        }

        self.telemetry.audit(
            "catalog.search",
            metadata=summary,
            actor_user_id=params.user_id,
            request_id=params.request_id,
        )
        self.telemetry.analytics(
            "catalog.search.performed",
            summary,
            user_id=params.user_id,
            request_id=params.request_id,
        )

        if personalization.applied:
            self.telemetry.analytics(
                "catalog.search.personalized",
                {
                    "region": params.region,
                    "matched_signals": personalization.matched_signals.model_dump(),
                },
                user_id=params.user_id,
                request_id=params.request_id,
            )
        elif personalization.requested and personalization.profile_unavailable:
            self.telemetry.analytics(
                "catalog.search.profile_unavailable",
                {"region": params.region},
                user_id=params.user_id,
                request_id=params.request_id,
            )
