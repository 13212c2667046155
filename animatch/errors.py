"""
AniMatch — Error kinds raised inside the matching core.

Components raise these; the public ``MatchingService`` facade converts them
into result models so that nothing escapes a matching pass.  Quota exhaustion
is deliberately absent: it is a normal ``can_create=False`` outcome.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    STORE_UNAVAILABLE = "store_unavailable"
    INVARIANT_VIOLATION = "invariant_violation"


class MatchingError(Exception):
    """Base class for every error the matching core raises on purpose."""

    kind: ErrorKind


class NotFoundError(MatchingError):
    """A profile or document is missing."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"{collection}/{key} not found")
        self.collection = collection
        self.key = key


class StoreUnavailableError(MatchingError):
    """Transient document-store failure; the step may be retried."""

    kind = ErrorKind.STORE_UNAVAILABLE


class InvariantViolationError(MatchingError):
    """Match symmetry is broken for a pair, or the pair is a single user.

    Asymmetry is repairable: re-running propagation for the pair heals it.
    """

    kind = ErrorKind.INVARIANT_VIOLATION

    def __init__(self, user_a_id: str, user_b_id: str, detail: str) -> None:
        super().__init__(f"{user_a_id} <-> {user_b_id}: {detail}")
        self.user_a_id = user_a_id
        self.user_b_id = user_b_id
        self.detail = detail


class BatchLimitExceededError(ValueError):
    """A write batch holds more operations than the store accepts."""
