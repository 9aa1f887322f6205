# src/encore_stage/schemas/collection.py
"""Schemas for setlist-level reads: live events, trending and stats."""

from pydantic import BaseModel, Field


class ChangeEventOut(BaseModel):
    """A live counter update pushed to setlist subscribers."""

    subject_id: int
    upvotes: int
    downvotes: int
    net_score: int
    sequence_number: int


class RankedSubjectOut(BaseModel):
    """One setlist song in trending order."""

    subject_id: int
    score: float
    net_score: int
    velocity: float
    recency_decay: float


class CollectionTrendingResponse(BaseModel):
    """A setlist's live score and its songs in trending order."""

    collection_id: int
    score: float
    subjects: list[RankedSubjectOut]


class CollectionStatsResponse(BaseModel):
    """Vote activity summary for a setlist."""

    collection_id: int
    total_subjects: int
    total_votes: int
    most_upvoted: int | None = Field(None, description="Song id with the most upvotes")
    most_controversial: int | None = Field(None, description="Song id with the most votes")


class TrendingCollectionOut(BaseModel):
    """A setlist and its cached trending score."""

    collection_id: int
    trending_score: float
