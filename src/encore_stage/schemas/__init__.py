"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .collection import (
    ChangeEventOut,
    CollectionStatsResponse,
    CollectionTrendingResponse,
    RankedSubjectOut,
    TrendingCollectionOut,
)
from .vote import BatchVotesResponse, MyVoteResponse, VoteCounts, VoteCreate, VoteResultResponse

__all__ = [
    "ChangeEventOut", "CollectionStatsResponse", "CollectionTrendingResponse",
    "RankedSubjectOut", "TrendingCollectionOut",
    "BatchVotesResponse", "MyVoteResponse", "VoteCounts", "VoteCreate", "VoteResultResponse",
]
