# src/encore_stage/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .collections import router as collections_router
from .votes import router as votes_router

__all__ = [
    "collections_router",
    "votes_router",
]
