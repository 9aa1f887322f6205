"""Denormalized vote counters for setlist songs.

The counters on ``setlist_song`` are a cache of the ``vote`` table. They are
written only through :meth:`AggregateCounter.apply_delta`, which the vote
ledger calls inside the same transaction as its vote row mutation. Updates
are single ``UPDATE ... SET col = col + :delta`` statements so concurrent
voters on one song never overwrite each other's increments.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from encore_stage.models import Direction, Setlist, SetlistSong, Vote
from encore_stage.services.errors import (
    CollectionNotFoundError,
    CounterInvariantError,
    SubjectNotFoundError,
)

__all__ = ["AggregateCounter", "SubjectCounts", "direction_delta"]

_COUNT_COLUMNS = (
    SetlistSong.id,
    SetlistSong.setlist_id,
    SetlistSong.upvotes,
    SetlistSong.downvotes,
    SetlistSong.net_score,
    SetlistSong.version,
)


@dataclass(frozen=True)
class SubjectCounts:
    """Snapshot of a setlist song's cached counters."""

    subject_id: int
    collection_id: int
    upvotes: int
    downvotes: int
    net_score: int
    version: int

    @property
    def total_votes(self) -> int:
        return self.upvotes + self.downvotes

    def as_dict(self) -> dict[str, int]:
        return {
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "net_score": self.net_score,
        }


def _counts_from_row(row: Any) -> SubjectCounts:
    return SubjectCounts(
        subject_id=row.id,
        collection_id=row.setlist_id,
        upvotes=row.upvotes,
        downvotes=row.downvotes,
        net_score=row.net_score,
        version=row.version,
    )


def direction_delta(
    old_direction: Direction | None,
    new_direction: Direction | None,
) -> tuple[int, int]:
    """Return the ``(upvote_delta, downvote_delta)`` for a vote transition."""
    up_delta = 0
    down_delta = 0
    if old_direction is Direction.UP:
        up_delta -= 1
    elif old_direction is Direction.DOWN:
        down_delta -= 1
    if new_direction is Direction.UP:
        up_delta += 1
    elif new_direction is Direction.DOWN:
        down_delta += 1
    return up_delta, down_delta


class AggregateCounter:
    """Bookkeeping for per-song upvote/downvote/net score counters."""

    def apply_delta(
        self,
        session: Session,
        subject_id: int,
        old_direction: Direction | None,
        new_direction: Direction | None,
    ) -> SubjectCounts:
        """Apply a vote transition to the song's counters.

        Must be called inside the caller's open transaction; nothing is
        committed here.

        Args:
            session: Session bound to the ledger's transaction.
            subject_id: Song whose counters change.
            old_direction: Direction of the vote before the call, or None.
            new_direction: Direction of the vote after the call, or None.

        Returns:
            The counters as they stand after the update.

        Raises:
            SubjectNotFoundError: If the song row does not exist.
            CounterInvariantError: If the update would drive a counter negative.
        """
        up_delta, down_delta = direction_delta(old_direction, new_direction)
        if up_delta == 0 and down_delta == 0:
            return self.get_counts(session, subject_id)

        stmt = (
            update(SetlistSong)
            .where(SetlistSong.id == subject_id)
            .values(
                upvotes=SetlistSong.upvotes + up_delta,
                downvotes=SetlistSong.downvotes + down_delta,
                net_score=SetlistSong.net_score + (up_delta - down_delta),
                version=SetlistSong.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = session.execute(stmt)
        except IntegrityError as err:
            raise CounterInvariantError(
                f"Counter update for setlist song {subject_id} violates a constraint"
            ) from err
        if result.rowcount == 0:
            raise SubjectNotFoundError(subject_id)

        counts = self.get_counts(session, subject_id)
        if counts.upvotes < 0 or counts.downvotes < 0:
            raise CounterInvariantError(
                f"Negative counter on setlist song {subject_id}: "
                f"{counts.upvotes} up / {counts.downvotes} down"
            )
        return counts

    def get_counts(self, session: Session, subject_id: int) -> SubjectCounts:
        """Return the cached counters for one song."""
        row = session.execute(
            select(*_COUNT_COLUMNS).where(SetlistSong.id == subject_id)
        ).first()
        if row is None:
            raise SubjectNotFoundError(subject_id)
        return _counts_from_row(row)

    def get_counts_batch(
        self,
        session: Session,
        subject_ids: Iterable[int],
    ) -> dict[int, SubjectCounts]:
        """Return cached counters for many songs; unknown ids are omitted."""
        ids = sorted(set(subject_ids))
        if not ids:
            return {}
        rows = session.execute(select(*_COUNT_COLUMNS).where(SetlistSong.id.in_(ids)))
        return {row.id: _counts_from_row(row) for row in rows}

    def recount(self, session: Session, subject_id: int) -> tuple[int, int]:
        """Recompute ``(upvotes, downvotes)`` for a song from raw vote rows."""
        rows = session.execute(
            select(Vote.direction, func.count())
            .where(Vote.subject_id == subject_id)
            .group_by(Vote.direction)
        )
        tally = {direction: count for direction, count in rows}
        return tally.get(Direction.UP.value, 0), tally.get(Direction.DOWN.value, 0)

    def verify(self, session: Session, subject_id: int) -> bool:
        """Return True if the cached counters agree with a full recount."""
        counts = self.get_counts(session, subject_id)
        upvotes, downvotes = self.recount(session, subject_id)
        return (
            counts.upvotes == upvotes
            and counts.downvotes == downvotes
            and counts.net_score == upvotes - downvotes
        )

    def collection_stats(self, session: Session, collection_id: int) -> dict[str, Any]:
        """Summarize vote activity across one setlist.

        ``most_controversial`` is the song with the most total votes, matching
        the live setlist view.
        """
        if session.get(Setlist, collection_id) is None:
            raise CollectionNotFoundError(collection_id)

        rows = session.execute(
            select(*_COUNT_COLUMNS)
            .where(SetlistSong.setlist_id == collection_id)
            .order_by(SetlistSong.position, SetlistSong.id)
        )
        songs = [_counts_from_row(row) for row in rows]

        most_upvoted: SubjectCounts | None = None
        most_controversial: SubjectCounts | None = None
        for song in songs:
            if most_upvoted is None or song.upvotes > most_upvoted.upvotes:
                most_upvoted = song
            if most_controversial is None or song.total_votes > most_controversial.total_votes:
                most_controversial = song

        return {
            "total_subjects": len(songs),
            "total_votes": sum(song.total_votes for song in songs),
            "most_upvoted": most_upvoted.subject_id if most_upvoted else None,
            "most_controversial": most_controversial.subject_id if most_controversial else None,
        }
