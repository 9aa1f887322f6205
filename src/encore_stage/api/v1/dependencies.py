"""Shared API dependencies for voter identity and service wiring."""

from typing import Annotated, NoReturn

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from encore_stage.core.security import decode_voter_id
from encore_stage.core.settings import settings
from encore_stage.db.session import get_db
from encore_stage.models import Setlist
from encore_stage.models.vote import VOTER_ID_MAX_LENGTH
from encore_stage.services.errors import (
    CollectionNotFoundError,
    CounterInvariantError,
    InvalidVoteError,
    LedgerBusyError,
    SubjectNotFoundError,
    VoterUnauthorizedError,
    VotingError,
)
from encore_stage.services.feed import ChangeFeed, get_change_feed
from encore_stage.services.ledger import VoteLedger
from encore_stage.services.trending import TrendingScorer

# Anonymous tokens are namespaced so they can never collide with account ids.
ANONYMOUS_VOTER_PREFIX = "anon:"

# Optional bearer: anonymous voters may not send one
bearer_scheme = HTTPBearer(auto_error=False)

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_feed() -> ChangeFeed:
    """Return the shared change feed."""
    return get_change_feed()


FeedDep = Annotated[ChangeFeed, Depends(get_feed)]


def get_ledger(feed: FeedDep) -> VoteLedger:
    """Return a vote ledger publishing to the shared feed."""
    return VoteLedger(feed=feed)


def get_scorer() -> TrendingScorer:
    """Return a trending scorer configured from settings."""
    return TrendingScorer()


LedgerDep = Annotated[VoteLedger, Depends(get_ledger)]
ScorerDep = Annotated[TrendingScorer, Depends(get_scorer)]


def get_optional_voter(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    voter_token: Annotated[str | None, Header(alias="X-Voter-Token")] = None,
) -> str | None:
    """Resolve the caller's voter id, if any.

    A bearer token always wins. Under the anonymous policy a client-held
    ``X-Voter-Token`` is accepted as a stable pseudonymous id.

    Raises:
        HTTPException: If credentials were supplied but are invalid.
    """
    if credentials is not None:
        voter_id = decode_voter_id(credentials.credentials)
        if voter_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
            )
        return voter_id

    if voter_token is None or settings.requires_identified_voters:
        return None

    token = voter_token.strip()
    if not token or len(ANONYMOUS_VOTER_PREFIX) + len(token) > VOTER_ID_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid voter token",
        )
    return f"{ANONYMOUS_VOTER_PREFIX}{token}"


OptionalVoterDep = Annotated[str | None, Depends(get_optional_voter)]


def get_current_voter(voter_id: OptionalVoterDep) -> str:
    """Require a voter identity for the request.

    Raises:
        HTTPException: If no identity could be resolved.
    """
    if voter_id is None:
        detail = (
            "Authentication required to vote"
            if settings.requires_identified_voters
            else "A bearer token or X-Voter-Token header is required to vote"
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
    return voter_id


CurrentVoterDep = Annotated[str, Depends(get_current_voter)]


def get_setlist_or_404(db: Session, collection_id: int) -> Setlist:
    setlist = db.get(Setlist, collection_id)
    if setlist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Setlist not found")
    return setlist


def raise_for_voting_error(err: VotingError) -> NoReturn:
    """Translate a service-layer error into the matching HTTP error."""
    if isinstance(err, SubjectNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Setlist song not found",
        ) from err
    if isinstance(err, CollectionNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Setlist not found",
        ) from err
    if isinstance(err, InvalidVoteError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(err)) from err
    if isinstance(err, VoterUnauthorizedError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(err)) from err
    if isinstance(err, LedgerBusyError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Vote could not be applied right now; refresh and try again",
        ) from err
    if isinstance(err, CounterInvariantError):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Vote counters are inconsistent",
        ) from err
    raise err
