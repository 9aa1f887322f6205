"""Audit cached setlist song counters against a full recount of vote rows."""
from __future__ import annotations

import argparse
import sys

from sqlalchemy import select

from encore_stage.db.session import SessionLocal, create_tables
from encore_stage.models import SetlistSong
from encore_stage.services.counter import AggregateCounter


def find_mismatches(collection_id: int | None = None) -> list[tuple[int, tuple[int, int], tuple[int, int]]]:
    """Return ``(song_id, cached, recounted)`` for every song whose counters drifted."""
    counter = AggregateCounter()
    mismatches = []
    with SessionLocal() as session:
        stmt = select(SetlistSong.id).order_by(SetlistSong.id)
        if collection_id is not None:
            stmt = stmt.where(SetlistSong.setlist_id == collection_id)
        for song_id in list(session.scalars(stmt)):
            if counter.verify(session, song_id):
                continue
            counts = counter.get_counts(session, song_id)
            mismatches.append(
                (song_id, (counts.upvotes, counts.downvotes), counter.recount(session, song_id))
            )
    return mismatches


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify vote counters against the vote ledger")
    parser.add_argument("--setlist", type=int, default=None, help="Only check one setlist")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before checking (useful on a fresh SQLite file).",
    )
    args = parser.parse_args()

    if args.create_tables:
        create_tables()

    mismatches = find_mismatches(args.setlist)
    for song_id, cached, recounted in mismatches:
        print(
            f"[verify_counters] song {song_id}: cached {cached[0]}/{cached[1]} "
            f"!= ledger {recounted[0]}/{recounted[1]}"
        )
    if mismatches:
        print(f"[verify_counters] {len(mismatches)} song(s) out of sync", file=sys.stderr)
        sys.exit(1)
    print("[verify_counters] all counters match the ledger")


if __name__ == "__main__":
    main()
