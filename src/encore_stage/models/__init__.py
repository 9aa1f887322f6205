"""SQLAlchemy models for the Encore voting service."""

from .collection import Setlist
from .subject import SetlistSong
from .vote import Direction, Vote

__all__ = [
    "Setlist",
    "SetlistSong",
    "Direction", "Vote",
]
