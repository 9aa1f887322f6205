# src/encore_stage/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import collections_router, votes_router

__all__ = [
    "collections_router",
    "votes_router",
]
