"""
AniMatch — Matching API

Thin trigger adapter over ``MatchingService``: favorite added / removed,
explicit match search, cooldown check, subscription change, and the
maintenance operations (pair reconciliation, symmetry audit).

Result models are returned as-is.  A failed result becomes an HTTP error
only for ``not_found`` (404) and ``store_unavailable`` (503); an
``invariant_violation`` from an audit is a normal 200 report.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from animatch.errors import ErrorKind
from animatch.schemas.match import (
    AuditResult,
    CooldownCheck,
    FavoriteResult,
    MatchListResult,
    MatchPassResult,
    OperationResult,
    PropagationResult,
    SubscriptionUpdate,
)
from animatch.services.matching_service import MatchingService, build_matching_service

logger = structlog.get_logger(__name__)

router = APIRouter()

# ── Service singleton ─────────────────────────────────────────────────────────

_matching_service: MatchingService | None = None


def get_matching_service() -> MatchingService:
    global _matching_service
    if _matching_service is None:
        _matching_service = build_matching_service()
    return _matching_service


def peek_matching_service() -> MatchingService | None:
    """The singleton if it has been built, without building it."""
    return _matching_service


_HTTP_STATUS_FOR_ERROR = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _raise_for_failure(result: OperationResult) -> None:
    if result.success:
        return
    code = _HTTP_STATUS_FOR_ERROR.get(result.error)
    if code is not None:
        raise HTTPException(status_code=code, detail=result.message)


# ──────────────────────────────────────────────────────────────────────────────
# Favorites
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/users/{user_id}/favorites/{item_id}",
    response_model=FavoriteResult,
    summary="Record a favorite and run a matching pass",
)
async def add_favorite(
    user_id: str,
    item_id: str,
    rematch: bool = Query(True, description="Run a matching pass afterwards"),
    service: MatchingService = Depends(get_matching_service),
) -> FavoriteResult:
    result = await service.add_favorite(user_id, item_id, rematch=rematch)
    _raise_for_failure(result)
    return result


@router.delete(
    "/users/{user_id}/favorites/{item_id}",
    response_model=FavoriteResult,
    summary="Remove a favorite",
)
async def remove_favorite(
    user_id: str,
    item_id: str,
    rematch: bool = Query(False),
    service: MatchingService = Depends(get_matching_service),
) -> FavoriteResult:
    result = await service.remove_favorite(user_id, item_id, rematch=rematch)
    _raise_for_failure(result)
    return result


# ──────────────────────────────────────────────────────────────────────────────
# Matching
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/users/{user_id}/search",
    response_model=MatchPassResult,
    summary="Run a matching pass for a user",
)
async def search_matches(
    user_id: str,
    service: MatchingService = Depends(get_matching_service),
) -> MatchPassResult:
    result = await service.find_matches(user_id)
    _raise_for_failure(result)
    return result


@router.get(
    "/users/{user_id}/matches",
    response_model=MatchListResult,
    summary="List a user's matches, strongest first",
)
async def list_matches(
    user_id: str,
    limit: int | None = Query(None, ge=1, le=100, description="Page size"),
    after: str | None = Query(None, description="Last user id of the previous page"),
    service: MatchingService = Depends(get_matching_service),
) -> MatchListResult:
    result = await service.get_matches(user_id, limit=limit, after=after)
    _raise_for_failure(result)
    return result


# ──────────────────────────────────────────────────────────────────────────────
# Cooldown & subscription
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/users/{user_id}/cooldown",
    response_model=CooldownCheck,
    summary="Check (and lazily reset) a user's cooldown",
)
async def check_cooldown(
    user_id: str,
    service: MatchingService = Depends(get_matching_service),
) -> CooldownCheck:
    result = await service.check_cooldown(user_id)
    _raise_for_failure(result)
    return result


@router.put(
    "/users/{user_id}/subscription",
    response_model=CooldownCheck,
    summary="Apply a premium subscription change",
)
async def update_subscription(
    user_id: str,
    body: SubscriptionUpdate,
    service: MatchingService = Depends(get_matching_service),
) -> CooldownCheck:
    result = await service.set_premium(user_id, body.is_premium)
    _raise_for_failure(result)
    return result


# ──────────────────────────────────────────────────────────────────────────────
# Maintenance
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/pairs/{user_a_id}/{user_b_id}/reconcile",
    response_model=PropagationResult,
    summary="Re-derive and re-propagate one pair's match",
)
async def reconcile_pair(
    user_a_id: str,
    user_b_id: str,
    service: MatchingService = Depends(get_matching_service),
) -> PropagationResult:
    if user_a_id == user_b_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="A pair needs two different users.",
        )
    result = await service.reconcile_pair(user_a_id, user_b_id)
    _raise_for_failure(result)
    return result


@router.post(
    "/users/{user_id}/audit",
    response_model=AuditResult,
    summary="Check a user's matches for symmetry",
)
async def audit_matches(
    user_id: str,
    heal: bool = Query(False, description="Re-propagate asymmetric pairs"),
    service: MatchingService = Depends(get_matching_service),
) -> AuditResult:
    result = await service.audit_matches(user_id, heal=heal)
    _raise_for_failure(result)
    if result.asymmetric:
        logger.warning(
            "audit_found_asymmetry",
            user_id=user_id,
            asymmetric=result.asymmetric,
            healed=result.healed,
        )
    return result
