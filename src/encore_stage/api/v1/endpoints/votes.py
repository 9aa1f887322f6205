# src/encore_stage/api/v1/endpoints/votes.py
"""Vote-related endpoints for the Encore API."""

from fastapi import APIRouter, HTTPException, Query, status

from encore_stage.api.v1.dependencies import (
    CurrentVoterDep,
    LedgerDep,
    OptionalVoterDep,
    raise_for_voting_error,
)
from encore_stage.schemas.vote import (
    BatchVotesResponse,
    MyVoteResponse,
    VoteCounts,
    VoteCreate,
    VoteResultResponse,
)
from encore_stage.services.errors import VotingError

router = APIRouter(prefix="/votes", tags=["votes"])


def _parse_subject_ids(raw: str) -> list[int]:
    parts = [part.strip() for part in raw.split(",") if part.strip()]
    try:
        return [int(part) for part in parts]
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="subject_ids must be a comma-separated list of integers",
        ) from err


@router.post("/", response_model=VoteResultResponse)
def cast_vote(
    vote_data: VoteCreate,
    voter_id: CurrentVoterDep,
    ledger: LedgerDep,
) -> VoteResultResponse:
    """Cast, switch or withdraw the caller's vote on a setlist song.

    Casting the same direction twice removes the vote, so clients should not
    blindly retry a request whose outcome is unknown.
    """
    try:
        result = ledger.cast_vote(voter_id, vote_data.subject_id, vote_data.direction)
    except VotingError as err:
        raise_for_voting_error(err)

    return VoteResultResponse(
        subject_id=result.subject_id,
        upvotes=result.upvotes,
        downvotes=result.downvotes,
        net_score=result.net_score,
        voter_direction=result.voter_direction.value if result.voter_direction else None,
        sequence_number=result.sequence_number,
    )


@router.get("/", response_model=BatchVotesResponse)
def get_votes(
    ledger: LedgerDep,
    voter_id: OptionalVoterDep,
    subject_ids: str = Query("", description="Comma-separated setlist song ids"),
) -> BatchVotesResponse:
    """Return counters for many setlist songs, plus the caller's votes if identified."""
    ids = _parse_subject_ids(subject_ids)
    if not ids:
        return BatchVotesResponse(vote_counts={}, voter_votes={} if voter_id else None)

    try:
        batch = ledger.read_batch(ids, voter_id=voter_id)
    except VotingError as err:
        raise_for_voting_error(err)

    voter_votes = None
    if batch.voter_directions is not None:
        voter_votes = {
            subject_id: direction.value if direction else None
            for subject_id, direction in batch.voter_directions.items()
        }
    return BatchVotesResponse(
        vote_counts={
            subject_id: VoteCounts(**counts.as_dict())
            for subject_id, counts in batch.counts.items()
        },
        voter_votes=voter_votes,
    )


@router.get("/{subject_id}/my-vote", response_model=MyVoteResponse)
def get_my_vote(
    subject_id: int,
    voter_id: CurrentVoterDep,
    ledger: LedgerDep,
) -> MyVoteResponse:
    """Get the caller's current vote on a specific setlist song."""
    try:
        direction = ledger.get_voter_direction(voter_id, subject_id)
    except VotingError as err:
        raise_for_voting_error(err)
    return MyVoteResponse(direction=direction.value if direction else None)
