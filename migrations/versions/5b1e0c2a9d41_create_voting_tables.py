"""create voting tables

Revision ID: 5b1e0c2a9d41
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1e0c2a9d41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create setlist, setlist_song and vote tables."""
    op.create_table(
        "setlist",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("show_id", sa.BigInteger(), nullable=True),
        sa.Column("external_popularity", sa.Float(), nullable=False),
        sa.Column("trending_score", sa.Float(), nullable=False),
        sa.Column("trending_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_setlist_show_id", "setlist", ["show_id"])

    op.create_table(
        "setlist_song",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("setlist_id", sa.Integer(), nullable=False),
        sa.Column("song_id", sa.BigInteger(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("external_popularity", sa.Float(), nullable=False),
        sa.Column("upvotes", sa.Integer(), nullable=False),
        sa.Column("downvotes", sa.Integer(), nullable=False),
        sa.Column("net_score", sa.Integer(), nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("upvotes >= 0", name="ck_setlist_song_upvotes"),
        sa.CheckConstraint("downvotes >= 0", name="ck_setlist_song_downvotes"),
        sa.CheckConstraint("net_score = upvotes - downvotes", name="ck_setlist_song_net"),
        sa.ForeignKeyConstraint(["setlist_id"], ["setlist.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_setlist_song_setlist_id", "setlist_song", ["setlist_id"])

    op.create_table(
        "vote",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("voter_id", sa.String(length=128), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(length=4), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("direction IN ('up', 'down')", name="ck_vote_direction"),
        sa.ForeignKeyConstraint(["subject_id"], ["setlist_song.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("voter_id", "subject_id", name="uq_vote_voter_subject"),
    )
    op.create_index("ix_vote_subject_updated", "vote", ["subject_id", "updated_at"])


def downgrade() -> None:
    """Drop the voting tables."""
    op.drop_index("ix_vote_subject_updated", table_name="vote")
    op.drop_table("vote")
    op.drop_index("ix_setlist_song_setlist_id", table_name="setlist_song")
    op.drop_table("setlist_song")
    op.drop_index("ix_setlist_show_id", table_name="setlist")
    op.drop_table("setlist")
