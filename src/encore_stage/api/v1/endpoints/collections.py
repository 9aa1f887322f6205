# src/encore_stage/api/v1/endpoints/collections.py
"""Setlist-level endpoints: live vote stream, trending order and stats."""

from collections.abc import AsyncIterator
from typing import Literal

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from encore_stage.api.v1.dependencies import (
    FeedDep,
    ScorerDep,
    SessionDep,
    get_setlist_or_404,
    raise_for_voting_error,
)
from encore_stage.core.settings import settings
from encore_stage.schemas.collection import (
    ChangeEventOut,
    CollectionStatsResponse,
    CollectionTrendingResponse,
    RankedSubjectOut,
    TrendingCollectionOut,
)
from encore_stage.services.counter import AggregateCounter
from encore_stage.services.errors import VotingError
from encore_stage.services.feed import ChangeEvent, EventStream

router = APIRouter(prefix="/collections", tags=["collections"])

TIMEFRAME_HOURS = {"day": 24, "week": 24 * 7, "month": 24 * 30}


def _format_sse(event: ChangeEvent) -> str:
    payload = ChangeEventOut(
        subject_id=event.subject_id,
        upvotes=event.upvotes,
        downvotes=event.downvotes,
        net_score=event.net_score,
        sequence_number=event.sequence_number,
    ).model_dump_json()
    return f"id: {event.subject_id}:{event.sequence_number}\nevent: vote\ndata: {payload}\n\n"


async def _event_source(request: Request, stream: EventStream) -> AsyncIterator[str]:
    try:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            event = await stream.get(timeout=settings.feed_keepalive_seconds)
            if event is None:
                if stream.subscription.closed:
                    break
                yield ": keepalive\n\n"
                continue
            yield _format_sse(event)
    finally:
        stream.close()


@router.get("/trending", response_model=list[TrendingCollectionOut])
def get_trending_collections(
    scorer: ScorerDep,
    limit: int = Query(10, ge=1, le=50),
) -> list[TrendingCollectionOut]:
    """Return setlists ordered by their cached trending score."""
    return [
        TrendingCollectionOut(collection_id=collection_id, trending_score=score)
        for collection_id, score in scorer.top_collections(limit)
    ]


@router.get("/{collection_id}/events")
async def stream_collection_events(
    collection_id: int,
    request: Request,
    db: SessionDep,
    feed: FeedDep,
) -> StreamingResponse:
    """Stream live vote-count changes for every song in a setlist.

    Events are server-sent; each carries a per-song ``sequence_number`` and
    clients should ignore any event older than one already applied. Clients
    should still re-read counts after reconnecting since missed events are
    not replayed.
    """
    get_setlist_or_404(db, collection_id)
    # Release the connection now; the stream may stay open for hours.
    db.close()
    stream = feed.open_stream(collection_id)
    return StreamingResponse(
        _event_source(request, stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{collection_id}/trending", response_model=CollectionTrendingResponse)
def get_collection_trending(
    collection_id: int,
    scorer: ScorerDep,
    timeframe: Literal["day", "week", "month"] | None = Query(None),
) -> CollectionTrendingResponse:
    """Return a setlist's songs in trending order with their scores.

    ``timeframe`` sets the window that vote velocity is counted over; the
    configured window applies when it is omitted.
    """
    if timeframe is not None:
        scorer = scorer.with_velocity_window(TIMEFRAME_HOURS[timeframe])
    try:
        ranked = scorer.ranked_subjects(collection_id)
        score = scorer.score_collection(collection_id)
    except VotingError as err:
        raise_for_voting_error(err)

    return CollectionTrendingResponse(
        collection_id=collection_id,
        score=score,
        subjects=[
            RankedSubjectOut(
                subject_id=item.subject_id,
                score=item.score,
                net_score=item.net_score,
                velocity=item.components.velocity,
                recency_decay=item.components.recency_decay,
            )
            for item in ranked
        ],
    )


@router.get("/{collection_id}/stats", response_model=CollectionStatsResponse)
def get_collection_stats(collection_id: int, db: SessionDep) -> CollectionStatsResponse:
    """Summarize vote activity for a setlist."""
    try:
        stats = AggregateCounter().collection_stats(db, collection_id)
    except VotingError as err:
        raise_for_voting_error(err)
    return CollectionStatsResponse(collection_id=collection_id, **stats)
