# src/encore_stage/models/subject.py
"""SQLAlchemy model for votable setlist songs and their cached counters."""

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Float, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from encore_stage.db.session import Base
from encore_stage.db.time import utcnow


class SetlistSong(Base):
    """A single votable song within a predicted setlist.

    ``upvotes``/``downvotes``/``net_score`` cache the live rows of the
    ``vote`` table and are only written by the vote ledger's transaction.
    """

    __tablename__ = "setlist_song"
    __table_args__ = (
        CheckConstraint("upvotes >= 0", name="ck_setlist_song_upvotes"),
        CheckConstraint("downvotes >= 0", name="ck_setlist_song_downvotes"),
        CheckConstraint("net_score = upvotes - downvotes", name="ck_setlist_song_net"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    setlist_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("setlist.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    song_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    external_popularity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    upvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    downvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    net_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Bumped with every counter write; doubles as the change feed sequence number.
    version: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
