# src/encore_stage/services/__init__.py
"""Business logic services for the Encore voting service."""

from .counter import AggregateCounter, SubjectCounts
from .feed import ChangeEvent, ChangeFeed, RedisChangeFeed, Subscription
from .ledger import VoteLedger, VoteResult
from .trending import TrendingRefreshWorker, TrendingScorer, TrendingWeights

__all__ = [
    "AggregateCounter", "SubjectCounts",
    "ChangeEvent", "ChangeFeed", "RedisChangeFeed", "Subscription",
    "VoteLedger", "VoteResult",
    "TrendingRefreshWorker", "TrendingScorer", "TrendingWeights",
]
