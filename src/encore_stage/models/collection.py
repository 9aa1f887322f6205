# src/encore_stage/models/collection.py
"""SQLAlchemy model for predicted setlists (vote collections)."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Float, Integer
from sqlalchemy.orm import Mapped, mapped_column

from encore_stage.db.session import Base
from encore_stage.db.time import utcnow


class Setlist(Base):
    """A show's predicted setlist, grouping the songs users vote on.

    Rows are owned by catalog sync; the voting subsystem only reads them and
    the trending scorer caches its collection score here.
    """

    __tablename__ = "setlist"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    show_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    # Base popularity supplied by catalog sync (e.g. artist followers).
    external_popularity: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    trending_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    trending_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
