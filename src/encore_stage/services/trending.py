"""Trending scores for setlist songs and setlists.

``score = w_net * net_score + w_velocity * vote_velocity
          + w_recency * recency_decay + w_popularity * popularity``

* ``vote_velocity`` counts live votes cast or changed inside a trailing window.
* ``recency_decay`` halves every ``half_life_hours`` since the first live vote
  and is 0 when nothing has been voted on.
* ``popularity`` is the externally supplied base popularity.

Song rankings are computed on read from the counters and vote rows, so they
are never stale. Setlist scores are additionally cached on the ``setlist`` row
by :class:`TrendingRefreshWorker`, whose interval bounds how stale the cached
value can get. The scorer never writes votes or song counters.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from encore_stage.core.settings import settings
from encore_stage.db.session import SessionLocal, begin_write
from encore_stage.db.time import as_utc, utcnow
from encore_stage.models import Setlist, SetlistSong, Vote
from encore_stage.services.errors import CollectionNotFoundError, SubjectNotFoundError

# Configure logger for this module
logger = logging.getLogger(__name__)

__all__ = [
    "RankedSubject",
    "ScoreComponents",
    "TrendingRefreshWorker",
    "TrendingScorer",
    "TrendingWeights",
    "composite_score",
    "recency_decay",
]

PopularityProvider = Callable[[Union[SetlistSong, Setlist]], float]

SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class TrendingWeights:
    """Weights for net score, velocity, recency decay and popularity."""

    net: float = 1.0
    velocity: float = 2.0
    recency: float = 5.0
    popularity: float = 0.1

    @classmethod
    def from_settings(cls) -> TrendingWeights:
        net, velocity, recency, popularity = settings.trending_weights
        return cls(net=net, velocity=velocity, recency=recency, popularity=popularity)


@dataclass(frozen=True)
class ScoreComponents:
    """Raw inputs to the composite score."""

    net_score: float
    velocity: float
    recency_decay: float
    popularity: float


@dataclass(frozen=True)
class RankedSubject:
    """A song's place in its setlist's trending order."""

    subject_id: int
    score: float
    net_score: int
    created_at: datetime
    components: ScoreComponents


def composite_score(components: ScoreComponents, weights: TrendingWeights) -> float:
    """Combine score components with ``weights``."""
    return (
        weights.net * components.net_score
        + weights.velocity * components.velocity
        + weights.recency * components.recency_decay
        + weights.popularity * components.popularity
    )


def recency_decay(hours_since_first_vote: float | None, half_life_hours: float) -> float:
    """Return the exponential decay factor for activity that started this long ago.

    Returns 1.0 for activity starting now, 0.5 after one half-life, and 0.0
    when there has been no activity at all.
    """
    if hours_since_first_vote is None:
        return 0.0
    if half_life_hours <= 0:
        raise ValueError("half_life_hours must be positive")
    return 0.5 ** (max(0.0, hours_since_first_vote) / half_life_hours)


def _hours_between(earlier: datetime | None, now: datetime) -> float | None:
    if earlier is None:
        return None
    return (now - as_utc(earlier)).total_seconds() / SECONDS_PER_HOUR


class TrendingScorer:
    """Read-only scorer over vote counters and vote rows."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        weights: TrendingWeights | None = None,
        velocity_window_hours: float | None = None,
        half_life_hours: float | None = None,
        popularity_provider: PopularityProvider | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.weights = weights or TrendingWeights.from_settings()
        self.velocity_window = timedelta(
            hours=velocity_window_hours or settings.trending_velocity_window_hours
        )
        self.half_life_hours = half_life_hours or settings.trending_half_life_hours
        self._popularity_provider = popularity_provider
        self._clock = clock

    def with_velocity_window(self, hours: float) -> TrendingScorer:
        """Return a scorer identical to this one but counting votes over ``hours``."""
        return TrendingScorer(
            self._session_factory,
            weights=self.weights,
            velocity_window_hours=hours,
            half_life_hours=self.half_life_hours,
            popularity_provider=self._popularity_provider,
            clock=self._clock,
        )

    def _popularity(self, row: SetlistSong | Setlist) -> float:
        if self._popularity_provider is not None:
            return float(self._popularity_provider(row))
        return float(row.external_popularity or 0.0)

    # --- Songs -------------------------------------------------------------------

    def _song_activity(
        self,
        session: Session,
        song_ids: Sequence[int],
        now: datetime,
    ) -> tuple[dict[int, int], dict[int, datetime]]:
        """Return per-song recent vote counts and first-vote timestamps."""
        if not song_ids:
            return {}, {}
        window_start = now - self.velocity_window
        velocity_rows = session.execute(
            select(Vote.subject_id, func.count())
            .where(Vote.subject_id.in_(song_ids), Vote.updated_at >= window_start)
            .group_by(Vote.subject_id)
        )
        first_vote_rows = session.execute(
            select(Vote.subject_id, func.min(Vote.created_at))
            .where(Vote.subject_id.in_(song_ids))
            .group_by(Vote.subject_id)
        )
        velocity = {song_id: count for song_id, count in velocity_rows}
        first_votes = {song_id: first for song_id, first in first_vote_rows}
        return velocity, first_votes

    def _rank_songs(self, session: Session, songs: Sequence[SetlistSong]) -> list[RankedSubject]:
        now = self._clock()
        velocity, first_votes = self._song_activity(session, [song.id for song in songs], now)
        ranked = []
        for song in songs:
            components = ScoreComponents(
                net_score=song.net_score,
                velocity=velocity.get(song.id, 0),
                recency_decay=recency_decay(
                    _hours_between(first_votes.get(song.id), now),
                    self.half_life_hours,
                ),
                popularity=self._popularity(song),
            )
            ranked.append(
                RankedSubject(
                    subject_id=song.id,
                    score=composite_score(components, self.weights),
                    net_score=song.net_score,
                    created_at=as_utc(song.created_at),
                    components=components,
                )
            )
        ranked.sort(key=lambda item: (-item.score, -item.net_score, item.created_at, item.subject_id))
        return ranked

    def score_subject(self, subject_id: int) -> float:
        """Return the trending score of one setlist song."""
        with self._session_factory() as session:
            song = session.get(SetlistSong, subject_id)
            if song is None:
                raise SubjectNotFoundError(subject_id)
            return self._rank_songs(session, [song])[0].score

    def ranked_subjects(self, collection_id: int) -> list[RankedSubject]:
        """Return the setlist's songs with scores, best first.

        Ties fall back to higher net score, then the earlier-added song.
        """
        with self._session_factory() as session:
            if session.get(Setlist, collection_id) is None:
                raise CollectionNotFoundError(collection_id)
            songs = session.scalars(
                select(SetlistSong).where(SetlistSong.setlist_id == collection_id)
            ).all()
            return self._rank_songs(session, songs)

    def rank(self, collection_id: int) -> list[int]:
        """Return the setlist's song ids ordered by trending score."""
        return [item.subject_id for item in self.ranked_subjects(collection_id)]

    # --- Setlists ----------------------------------------------------------------

    def _collection_components(
        self,
        session: Session,
        setlist: Setlist,
        now: datetime,
    ) -> ScoreComponents:
        net_total = session.scalar(
            select(func.coalesce(func.sum(SetlistSong.net_score), 0)).where(
                SetlistSong.setlist_id == setlist.id
            )
        )
        first_vote = session.scalar(
            select(func.min(Vote.created_at))
            .join(SetlistSong, SetlistSong.id == Vote.subject_id)
            .where(SetlistSong.setlist_id == setlist.id)
        )
        recent = session.scalar(
            select(func.count())
            .select_from(Vote)
            .join(SetlistSong, SetlistSong.id == Vote.subject_id)
            .where(
                SetlistSong.setlist_id == setlist.id,
                Vote.updated_at >= now - self.velocity_window,
            )
        )
        return ScoreComponents(
            net_score=net_total or 0,
            velocity=recent or 0,
            recency_decay=recency_decay(_hours_between(first_vote, now), self.half_life_hours),
            popularity=self._popularity(setlist),
        )

    def score_collection(self, collection_id: int) -> float:
        """Return the live trending score of a whole setlist."""
        with self._session_factory() as session:
            setlist = session.get(Setlist, collection_id)
            if setlist is None:
                raise CollectionNotFoundError(collection_id)
            components = self._collection_components(session, setlist, self._clock())
            return composite_score(components, self.weights)

    def refresh_collection(self, collection_id: int) -> float:
        """Recompute and cache one setlist's score; return it.

        The score is computed from a read-only session; only the final
        UPDATE takes the write lock, so voters never wait on the computation.
        """
        with self._session_factory() as session:
            setlist = session.get(Setlist, collection_id)
            if setlist is None:
                raise CollectionNotFoundError(collection_id)
            now = self._clock()
            score = composite_score(
                self._collection_components(session, setlist, now),
                self.weights,
            )

        with self._session_factory() as session, session.begin():
            begin_write(session)
            result = session.execute(
                update(Setlist)
                .where(Setlist.id == collection_id)
                .values(trending_score=score, trending_refreshed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise CollectionNotFoundError(collection_id)
        return score

    def refresh_all(self) -> int:
        """Recompute every setlist's cached score; return how many were refreshed."""
        with self._session_factory() as session:
            collection_ids = list(session.scalars(select(Setlist.id)))
        refreshed = 0
        for collection_id in collection_ids:
            try:
                self.refresh_collection(collection_id)
            except CollectionNotFoundError:
                continue
            refreshed += 1
        logger.debug("Refreshed trending scores for %d setlists", refreshed)
        return refreshed

    def top_collections(self, limit: int = 10) -> list[tuple[int, float]]:
        """Return ``(setlist_id, cached_score)`` pairs, best first."""
        with self._session_factory() as session:
            rows = session.execute(
                select(Setlist.id, Setlist.trending_score)
                .order_by(Setlist.trending_score.desc(), Setlist.id)
                .limit(limit)
            )
            return [(setlist_id, score) for setlist_id, score in rows]


class TrendingRefreshWorker:
    """Periodically refreshes cached setlist trending scores in the background."""

    def __init__(
        self,
        scorer: TrendingScorer | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.scorer = scorer or TrendingScorer()
        self.interval = max(
            0.1,
            float(interval_seconds or settings.trending_refresh_interval_seconds),
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background refresh loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background refresh loop."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def run_once(self) -> int:
        """Refresh every setlist once off the event loop."""
        return await asyncio.to_thread(self.scorer.refresh_all)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.warning("TrendingRefreshWorker encountered database error: %s", e)
            except Exception:
                logger.exception("TrendingRefreshWorker refresh pass failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                continue
