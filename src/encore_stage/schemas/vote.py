# src/encore_stage/schemas/vote.py
"""Vote-related Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, Field

DirectionLiteral = Literal["up", "down"]


class VoteCreate(BaseModel):
    """Schema for casting a vote on a setlist song."""

    subject_id: int = Field(..., gt=0, description="Setlist song being voted on")
    direction: DirectionLiteral = Field(..., description="'up' or 'down'")


class VoteCounts(BaseModel):
    """Cached counters for one setlist song."""

    upvotes: int
    downvotes: int
    net_score: int


class VoteResultResponse(VoteCounts):
    """Counters after a cast plus the caller's resulting direction."""

    subject_id: int
    voter_direction: DirectionLiteral | None = Field(
        None,
        description="The caller's vote after this cast; null once toggled off",
    )
    sequence_number: int = Field(..., description="Per-song change sequence after this cast")


class BatchVotesResponse(BaseModel):
    """Counters for many setlist songs and, if identified, the caller's votes."""

    vote_counts: dict[int, VoteCounts]
    voter_votes: dict[int, DirectionLiteral | None] | None = None


class MyVoteResponse(BaseModel):
    """The caller's current vote on one setlist song."""

    direction: DirectionLiteral | None = None
