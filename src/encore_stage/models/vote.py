# src/encore_stage/models/vote.py
"""Models capturing voting interactions on setlist songs."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from encore_stage.db.session import Base
from encore_stage.db.time import utcnow

VOTER_ID_MAX_LENGTH = 128


class Direction(StrEnum):
    """Polarity of a single vote."""

    UP = "up"
    DOWN = "down"


class Vote(Base):
    """Per-voter vote on a setlist song.

    At most one row exists per (voter, song); the row is deleted rather than
    zeroed when a vote is toggled off.
    """

    __tablename__ = "vote"
    __table_args__ = (
        UniqueConstraint("voter_id", "subject_id", name="uq_vote_voter_subject"),
        CheckConstraint("direction IN ('up', 'down')", name="ck_vote_direction"),
        Index("ix_vote_subject_updated", "subject_id", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    voter_id: Mapped[str] = mapped_column(String(VOTER_ID_MAX_LENGTH), nullable=False)
    subject_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("setlist_song.id", ondelete="CASCADE"),
        nullable=False,
    )
    direction: Mapped[str] = mapped_column(String(4), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
