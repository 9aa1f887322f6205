"""Vote ledger: the authoritative record of who voted which way on which song.

Each cast runs the toggle state machine inside one database transaction
together with the counter update:

* no existing vote -> insert it, counter +1 in that direction;
* same direction again -> delete it (toggle off), counter -1;
* opposite direction -> flip it in place, -1 old / +1 new.

The ``(voter_id, subject_id)`` unique constraint is the arbiter when two
requests race to create the same vote. The loser's transaction fails with an
integrity error, is rolled back in full, and is re-run; on the second pass it
sees the winner's row and takes the delete or flip branch. Transient lock
failures are retried the same way. Retries are bounded by count and by a
deadline so callers fail fast instead of queueing behind a hot row.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from encore_stage.core.settings import settings
from encore_stage.db.session import SessionLocal, begin_write
from encore_stage.db.time import utcnow
from encore_stage.models import Direction, SetlistSong, Vote
from encore_stage.models.vote import VOTER_ID_MAX_LENGTH
from encore_stage.services.counter import AggregateCounter, SubjectCounts
from encore_stage.services.errors import (
    FeedUnavailableError,
    InvalidVoteError,
    LedgerBusyError,
    SubjectNotFoundError,
    VoteConflictError,
    VoterUnauthorizedError,
)
from encore_stage.services.feed import ChangeEvent, ChangeFeed

# Configure logger for this module
logger = logging.getLogger(__name__)

__all__ = [
    "BatchVotes",
    "VoteAction",
    "VoteLedger",
    "VoteResult",
    "parse_direction",
    "validate_subject_id",
    "validate_voter_id",
]

# SQLSTATEs for deadlock, serialization failure and lock_timeout.
_TRANSIENT_SQLSTATES = frozenset({"40P01", "40001", "55P03"})
_TRANSIENT_MESSAGES = ("database is locked", "deadlock", "lock timeout", "could not serialize")


class VoteAction(StrEnum):
    """Which branch of the toggle state machine a cast took."""

    CREATED = "created"
    REMOVED = "removed"
    SWITCHED = "switched"


@dataclass(frozen=True)
class VoteResult:
    """Post-commit state of a song as seen by the voter who just cast."""

    subject_id: int
    collection_id: int
    upvotes: int
    downvotes: int
    net_score: int
    voter_direction: Direction | None
    sequence_number: int
    action: VoteAction

    def to_event(self) -> ChangeEvent:
        return ChangeEvent(
            collection_id=self.collection_id,
            subject_id=self.subject_id,
            upvotes=self.upvotes,
            downvotes=self.downvotes,
            net_score=self.net_score,
            sequence_number=self.sequence_number,
        )


@dataclass(frozen=True)
class BatchVotes:
    """Counters for many songs plus, optionally, one voter's directions."""

    counts: dict[int, SubjectCounts]
    voter_directions: dict[int, Direction | None] | None = None


def parse_direction(value: Any) -> Direction:
    """Coerce ``value`` to a :class:`Direction`.

    Raises:
        InvalidVoteError: If ``value`` is not ``"up"`` or ``"down"``.
    """
    if isinstance(value, Direction):
        return value
    if isinstance(value, str):
        try:
            return Direction(value.strip().lower())
        except ValueError:
            pass
    raise InvalidVoteError(f"Invalid direction {value!r}; expected 'up' or 'down'")


def validate_voter_id(voter_id: Any) -> str:
    """Return ``voter_id`` if it is usable as a ledger key.

    Raises:
        VoterUnauthorizedError: If no voter identity was supplied.
        InvalidVoteError: If the identity is not a string or is too long.
    """
    if voter_id is None or (isinstance(voter_id, str) and not voter_id.strip()):
        raise VoterUnauthorizedError("A voter identity is required to vote")
    if not isinstance(voter_id, str) or len(voter_id) > VOTER_ID_MAX_LENGTH:
        raise InvalidVoteError("Malformed voter identifier")
    return voter_id


def validate_subject_id(subject_id: Any) -> int:
    """Return ``subject_id`` if it is a positive integer.

    Raises:
        InvalidVoteError: For anything else, including booleans.
    """
    if isinstance(subject_id, bool) or not isinstance(subject_id, int) or subject_id <= 0:
        raise InvalidVoteError(f"Malformed setlist song id {subject_id!r}")
    return subject_id


def _is_transient(err: OperationalError) -> bool:
    sqlstate = getattr(err.orig, "sqlstate", None) or getattr(err.orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(err.orig).lower()
    return any(fragment in message for fragment in _TRANSIENT_MESSAGES)


class VoteLedger:
    """Applies votes and keeps song counters in step within one transaction."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        counter: AggregateCounter | None = None,
        feed: ChangeFeed | None = None,
        *,
        max_retries: int | None = None,
        timeout_seconds: float | None = None,
        retry_backoff_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the ledger.

        Args:
            session_factory: Factory for sessions; defaults to the app's ``SessionLocal``.
            counter: Counter bookkeeping; a fresh :class:`AggregateCounter` if omitted.
            feed: Feed receiving a :class:`ChangeEvent` after each commit, or None.
            max_retries: Attempts per cast before giving up.
            timeout_seconds: Overall deadline per cast, including retries.
            retry_backoff_seconds: Base backoff between attempts.
            clock: Source of vote timestamps.
        """
        self._session_factory = session_factory or SessionLocal
        self._counter = counter or AggregateCounter()
        self._feed = feed
        self._max_retries = max(1, max_retries or settings.vote_max_retries)
        self._timeout = timeout_seconds or settings.vote_timeout_seconds
        self._backoff = (
            settings.vote_retry_backoff_seconds
            if retry_backoff_seconds is None
            else retry_backoff_seconds
        )
        self._clock = clock

    @property
    def counter(self) -> AggregateCounter:
        return self._counter

    def cast_vote(self, voter_id: Any, subject_id: Any, direction: Any) -> VoteResult:
        """Cast, flip or withdraw ``voter_id``'s vote on a song.

        Not idempotent: two identical calls toggle the vote on and off again.
        After an ambiguous failure, read the voter's current direction before
        retrying.

        Args:
            voter_id: Opaque, stable voter identity.
            subject_id: Setlist song id.
            direction: ``"up"``/``"down"`` or a :class:`Direction`.

        Returns:
            Counters after the commit and the voter's resulting direction.

        Raises:
            VoterUnauthorizedError: If ``voter_id`` is missing.
            InvalidVoteError: If the direction or an identifier is malformed.
            SubjectNotFoundError: If the song does not exist.
            LedgerBusyError: If the vote could not be applied in time.
        """
        voter = validate_voter_id(voter_id)
        song_id = validate_subject_id(subject_id)
        wanted = parse_direction(direction)

        deadline = time.monotonic() + self._timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._cast_once(voter, song_id, wanted, deadline)
                break
            except VoteConflictError as err:
                remaining = deadline - time.monotonic()
                if attempt >= self._max_retries or remaining <= 0:
                    logger.warning(
                        "Giving up on vote for song %s after %d attempts: %s",
                        song_id,
                        attempt,
                        err,
                    )
                    raise LedgerBusyError(
                        f"Vote on setlist song {song_id} could not be applied; try again"
                    ) from err
                logger.debug("Retrying vote on song %s (attempt %d): %s", song_id, attempt, err)
                pause = self._backoff * attempt + random.uniform(0, self._backoff)
                time.sleep(max(0.0, min(pause, remaining)))

        logger.info(
            "Vote %s on song %s: %d up / %d down (seq %d)",
            result.action.value,
            result.subject_id,
            result.upvotes,
            result.downvotes,
            result.sequence_number,
        )
        self._publish(result)
        return result

    def _cast_once(
        self,
        voter_id: str,
        subject_id: int,
        direction: Direction,
        deadline: float,
    ) -> VoteResult:
        with self._session_factory() as session:
            try:
                with session.begin():
                    begin_write(session)
                    self._set_lock_timeout(session, deadline)
                    return self._apply(session, voter_id, subject_id, direction)
            except IntegrityError as err:
                raise VoteConflictError(f"uniqueness race: {err.orig}") from err
            except OperationalError as err:
                if _is_transient(err):
                    raise VoteConflictError(f"transient lock failure: {err.orig}") from err
                raise

    @staticmethod
    def _set_lock_timeout(session: Session, deadline: float) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        remaining_ms = max(1, int((deadline - time.monotonic()) * 1000))
        session.execute(text(f"SET LOCAL lock_timeout = '{remaining_ms}ms'"))

    @staticmethod
    def _locked_vote(session: Session, voter_id: str, subject_id: int) -> Vote | None:
        return session.execute(
            select(Vote)
            .where(Vote.voter_id == voter_id, Vote.subject_id == subject_id)
            .with_for_update()
        ).scalar_one_or_none()

    def _apply(
        self,
        session: Session,
        voter_id: str,
        subject_id: int,
        direction: Direction,
    ) -> VoteResult:
        exists = session.execute(
            select(SetlistSong.id).where(SetlistSong.id == subject_id)
        ).first()
        if exists is None:
            raise SubjectNotFoundError(subject_id)

        existing = self._locked_vote(session, voter_id, subject_id)

        now = self._clock()
        old_direction: Direction | None
        new_direction: Direction | None
        if existing is None:
            session.add(
                Vote(
                    voter_id=voter_id,
                    subject_id=subject_id,
                    direction=direction.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            old_direction, new_direction, action = None, direction, VoteAction.CREATED
        else:
            old_direction = Direction(existing.direction)
            if old_direction is direction:
                session.delete(existing)
                new_direction, action = None, VoteAction.REMOVED
            else:
                existing.direction = direction.value
                existing.updated_at = now
                new_direction, action = direction, VoteAction.SWITCHED
        # Surfaces a concurrent insert for the same pair as IntegrityError here.
        session.flush()

        counts = self._counter.apply_delta(session, subject_id, old_direction, new_direction)
        return VoteResult(
            subject_id=subject_id,
            collection_id=counts.collection_id,
            upvotes=counts.upvotes,
            downvotes=counts.downvotes,
            net_score=counts.net_score,
            voter_direction=new_direction,
            sequence_number=counts.version,
            action=action,
        )

    def _publish(self, result: VoteResult) -> None:
        if self._feed is None:
            return
        try:
            self._feed.publish(result.to_event())
        except FeedUnavailableError as err:
            logger.warning(
                "Dropping change event for song %s (seq %d): %s",
                result.subject_id,
                result.sequence_number,
                err,
            )

    # --- Reads -------------------------------------------------------------------

    def get_counts(self, subject_id: Any) -> SubjectCounts:
        """Return the cached counters for one song."""
        song_id = validate_subject_id(subject_id)
        with self._session_factory() as session:
            return self._counter.get_counts(session, song_id)

    def get_voter_direction(self, voter_id: Any, subject_id: Any) -> Direction | None:
        """Return the voter's current direction on a song, or None."""
        voter = validate_voter_id(voter_id)
        song_id = validate_subject_id(subject_id)
        return self.get_voter_directions(voter, [song_id])[song_id]

    def get_voter_directions(
        self,
        voter_id: Any,
        subject_ids: Iterable[Any],
    ) -> dict[int, Direction | None]:
        """Return the voter's direction for each requested song (None if no vote)."""
        voter = validate_voter_id(voter_id)
        ids = [validate_subject_id(subject_id) for subject_id in subject_ids]
        directions: dict[int, Direction | None] = dict.fromkeys(ids)
        if not ids:
            return directions
        with self._session_factory() as session:
            rows = session.execute(
                select(Vote.subject_id, Vote.direction).where(
                    Vote.voter_id == voter,
                    Vote.subject_id.in_(ids),
                )
            )
            for song_id, direction in rows:
                directions[song_id] = Direction(direction)
        return directions

    def read_batch(self, subject_ids: Iterable[Any], voter_id: str | None = None) -> BatchVotes:
        """Return counters for many songs and, with a voter, their directions.

        Unknown song ids are omitted from both maps.
        """
        ids = [validate_subject_id(subject_id) for subject_id in subject_ids]
        if len(ids) > settings.max_batch_subjects:
            raise InvalidVoteError(
                f"At most {settings.max_batch_subjects} setlist songs may be read at once"
            )
        with self._session_factory() as session:
            counts = self._counter.get_counts_batch(session, ids)
        if voter_id is None:
            return BatchVotes(counts=counts)
        directions = self.get_voter_directions(voter_id, counts.keys())
        return BatchVotes(counts=counts, voter_directions=directions)
