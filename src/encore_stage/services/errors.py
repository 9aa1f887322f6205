"""Exception hierarchy for the voting services.

Ledger and counter errors are raised synchronously to callers; feed errors
are caught and logged by the ledger so a live-update failure never fails a
vote. Endpoints map each kind onto an HTTP status.
"""

from __future__ import annotations


class VotingError(RuntimeError):
    """Base exception for all vote ledger, counter, feed and trending failures."""


class SubjectNotFoundError(VotingError):
    """Raised when a vote references a setlist song that does not exist."""

    def __init__(self, subject_id: object) -> None:
        super().__init__(f"Setlist song {subject_id!r} not found")
        self.subject_id = subject_id


class CollectionNotFoundError(VotingError):
    """Raised when a setlist id does not exist."""

    def __init__(self, collection_id: object) -> None:
        super().__init__(f"Setlist {collection_id!r} not found")
        self.collection_id = collection_id


class InvalidVoteError(VotingError, ValueError):
    """Raised for a malformed direction or malformed identifiers."""


class VoterUnauthorizedError(VotingError):
    """Raised when a voter identity is required but missing or invalid."""


class VoteConflictError(VotingError):
    """Transient uniqueness or lock race; retried inside the ledger, never surfaced."""


class UnavailableError(VotingError):
    """Base for failures of a downstream or contended resource."""


class FeedUnavailableError(UnavailableError):
    """Raised when a change event cannot be published."""


class LedgerBusyError(UnavailableError):
    """Raised when a vote could not be applied within its retry budget.

    The vote was not applied; callers should re-read state before retrying
    since repeating an identical cast toggles it.
    """


class CounterInvariantError(VotingError):
    """Raised when a counter update would leave a negative or inconsistent count."""
