from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from animatch.errors import ErrorKind, MatchingError


class MatchRecord(BaseModel):
    """One side of a match, stored under ``users/{owner}.matches_data``."""

    other_user_id: str
    match_strength: int = Field(ge=0)
    display_name: str = "User"
    display_photo: str = ""
    matched_at: Optional[datetime] = None
    quota_pending: bool = False


class CooldownState(BaseModel):
    user_id: str
    match_count: int = Field(0, ge=0)
    match_threshold: int = Field(gt=0)
    is_premium: bool = False
    cooldown_started_at: Optional[datetime] = None
    available_for_matching: bool = True


class OperationResult(BaseModel):
    success: bool = True
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def failure(cls, exc: MatchingError, **fields) -> "OperationResult":
        return cls(success=False, error=exc.kind, message=str(exc), **fields)


class CooldownCheck(OperationResult):
    user_id: str
    available_for_matching: bool = True
    just_reset: bool = False
    remaining_seconds: float = 0.0
    remaining_matches: Optional[int] = None  # None = unlimited (premium)
    is_premium: bool = False


class PropagationStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    HEALED = "healed"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class PropagationResult(OperationResult):
    user_a_id: str
    user_b_id: str
    match_strength: int = 0
    status: PropagationStatus = PropagationStatus.UNCHANGED
    quota_consumed: list[str] = Field(default_factory=list)


class MatchPassResult(OperationResult):
    user_id: str
    can_create: bool = True
    remaining_matches: Optional[int] = None
    remaining_seconds: float = 0.0
    candidates_considered: int = 0
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)
    failed: list[str] = Field(default_factory=list)


class FavoriteResult(OperationResult):
    user_id: str
    item_id: str
    accepted: bool = True  # False when the favorites cap was already reached
    favorites_limit: Optional[int] = None
    match_pass: Optional[MatchPassResult] = None


class MatchListResult(OperationResult):
    user_id: str
    matches: list[MatchRecord] = Field(default_factory=list)
    has_more: bool = False
    next_after: Optional[str] = None  # pass as ``after`` for the next page


class AuditResult(OperationResult):
    user_id: str
    checked: int = 0
    asymmetric: list[str] = Field(default_factory=list)
    healed: list[str] = Field(default_factory=list)


class SubscriptionUpdate(BaseModel):
    is_premium: bool
