"""
AniMatch — Matching pass orchestration

Wires the components into the operations the surrounding application calls:

  find_matches      cooldown check → tally → refresh existing matches
                    → threshold → compatibility → candidate availability
                    → quota clip → propagation
  add_favorite      profile + reverse index update, then an optional pass
  remove_favorite   profile + reverse index update
  check_cooldown    lazy cooldown expiry
  get_matches       the user's match records, strongest first, paged
  reconcile_pair    re-derive one pair's strength and re-propagate
  audit_matches     report (and optionally heal) asymmetric match records

Public operations never raise ``MatchingError``; they return result models
whose ``error`` field carries the error kind.  Hitting the quota is a normal
``can_create=False`` outcome.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from animatch.config import Settings, get_settings
from animatch.errors import (
    ErrorKind,
    InvariantViolationError,
    MatchingError,
    NotFoundError,
)
from animatch.schemas.match import (
    AuditResult,
    CooldownCheck,
    FavoriteResult,
    MatchListResult,
    MatchPassResult,
    PropagationResult,
    PropagationStatus,
)
from animatch.schemas.profile import UserProfile
from animatch.services.candidate_collector import CandidateCollector
from animatch.services.compatibility import CompatibilityFilter
from animatch.services.cooldown_gate import CooldownGate
from animatch.services.interest_index import InterestIndex
from animatch.services.match_propagator import ChatService, MatchPropagator
from animatch.services.profile_repository import ProfileRepository, match_records
from animatch.store.base import DocumentStore

logger = structlog.get_logger(__name__)

# Reasons reported in ``MatchPassResult.skipped``
SKIP_NOT_FOUND = "not_found"
SKIP_STORE_UNAVAILABLE = "store_unavailable"
SKIP_INCOMPATIBLE = "incompatible"
SKIP_CANDIDATE_COOLDOWN = "candidate_in_cooldown"
SKIP_QUOTA = "quota_exhausted"


class MatchingService:
    """Facade over the matching components.

    Components are built from ``store`` unless supplied, so tests can swap
    any one of them for a mock.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        chat_service: Optional[ChatService] = None,
        index: Optional[InterestIndex] = None,
        profiles: Optional[ProfileRepository] = None,
        gate: Optional[CooldownGate] = None,
        compatibility: Optional[CompatibilityFilter] = None,
        propagator: Optional[MatchPropagator] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.index = index or InterestIndex(store, self.settings)
        self.profiles = profiles or ProfileRepository(store, self.settings)
        self.gate = gate or CooldownGate(store, self.settings)
        self.collector = CandidateCollector(self.index, self.settings)
        self.compatibility = compatibility or CompatibilityFilter()
        self.propagator = propagator or MatchPropagator(
            store,
            self.gate,
            self.profiles,
            self.settings,
            chat_service=chat_service,
        )

    # ── Matching pass ────────────────────────────────────────────────────

    async def _screen(
        self,
        profile: UserProfile,
        candidate_id: str,
        semaphore: asyncio.Semaphore,
    ) -> Optional[str]:
        """Return a skip reason for ``candidate_id``, or None if it passes."""
        async with semaphore:
            try:
                candidate = await self.profiles.get(candidate_id)
                if not self.compatibility.is_compatible(profile, candidate):
                    return SKIP_INCOMPATIBLE
                check = await self.gate.check_and_advance(candidate_id)
            except NotFoundError:
                return SKIP_NOT_FOUND
            except MatchingError:
                return SKIP_STORE_UNAVAILABLE
        if not check.available_for_matching:
            return SKIP_CANDIDATE_COOLDOWN
        return None

    async def find_matches(self, user_id: str) -> MatchPassResult:
        """Run one matching pass for ``user_id``.

        Existing matches always get their strength refreshed (and any
        half-written pair healed).  New matches are created only while the
        user is available, strongest candidates first, up to the remaining
        quota.

        Parameters
        ----------
        user_id:
            The user the pass runs for.

        Returns
        -------
        MatchPassResult
            Created / updated / skipped / failed candidate ids plus the
            user's quota after the pass.
        """
        log = logger.bind(user_id=user_id)
        try:
            doc = await self.profiles.get_document(user_id)
            check = await self.gate.check_and_advance(user_id)
            profile = UserProfile.from_document(user_id, doc)
            existing = match_records(doc)

            tallies = await self.collector.tally(user_id, profile.interests)
            to_propagate = {uid: tallies.get(uid, 0) for uid in existing}

            eligible = self.collector.eligible(
                {uid: n for uid, n in tallies.items() if uid not in existing}
            )
            ranked = sorted(eligible, key=lambda uid: (-eligible[uid], uid))
            skipped: dict[str, str] = {}

            if check.available_for_matching and ranked:
                semaphore = asyncio.Semaphore(self.settings.CANDIDATE_FETCH_CONCURRENCY)
                reasons = await asyncio.gather(
                    *(self._screen(profile, uid, semaphore) for uid in ranked)
                )
                survivors = []
                for uid, reason in zip(ranked, reasons):
                    if reason is None:
                        survivors.append(uid)
                    else:
                        skipped[uid] = reason

                admitted = await self.gate.admit(user_id, survivors)
                for uid in survivors[len(admitted):]:
                    skipped[uid] = SKIP_QUOTA
                to_propagate.update({uid: eligible[uid] for uid in admitted})

            results = await self.propagator.propagate_all(user_id, to_propagate)
            state = await self.gate.get_state(user_id)
        except MatchingError as exc:
            log.warning("match_pass_failed", error=str(exc), kind=exc.kind.value)
            return MatchPassResult.failure(exc, user_id=user_id, can_create=False)

        created = [r.user_b_id for r in results if r.status == PropagationStatus.CREATED]
        updated = [
            r.user_b_id
            for r in results
            if r.status in (PropagationStatus.UPDATED, PropagationStatus.HEALED)
        ]
        failed = [r.user_b_id for r in results if not r.success]

        log.info(
            "match_pass_complete",
            candidates=len(eligible),
            created=len(created),
            updated=len(updated),
            skipped=len(skipped),
            failed=len(failed),
            available=state.available_for_matching,
        )
        return MatchPassResult(
            user_id=user_id,
            can_create=state.available_for_matching,
            remaining_matches=self.gate.remaining_quota(state),
            remaining_seconds=self.gate.remaining_cooldown(state),
            candidates_considered=len(eligible),
            created=created,
            updated=updated,
            skipped=skipped,
            failed=failed,
        )

    # ── Favorite triggers ────────────────────────────────────────────────

    async def add_favorite(
        self,
        user_id: str,
        item_id: str,
        rematch: bool = True,
    ) -> FavoriteResult:
        """Record a new favorite and, by default, run a matching pass.

        A user holds at most ``MAX_FAVORITES_FREE`` favorites, or
        ``MAX_FAVORITES_PREMIUM`` on a premium subscription.  Adding past the
        cap is refused with ``accepted=False``; re-adding a held favorite is
        always accepted.
        """
        item_id = str(item_id)
        try:
            profile = await self.profiles.get(user_id)
            state = await self.gate.get_state(user_id)
            limit = (
                self.settings.MAX_FAVORITES_PREMIUM
                if state.is_premium
                else self.settings.MAX_FAVORITES_FREE
            )
            if item_id not in profile.interests and len(profile.interests) >= limit:
                logger.info(
                    "favorite_limit_reached",
                    user_id=user_id,
                    item_id=item_id,
                    favorites=len(profile.interests),
                    limit=limit,
                )
                return FavoriteResult(
                    user_id=user_id,
                    item_id=item_id,
                    accepted=False,
                    favorites_limit=limit,
                    message=f"favorites limit of {limit} reached",
                )
            await self.profiles.add_interest(user_id, item_id)
            await self.index.add_interest(user_id, item_id)
        except MatchingError as exc:
            logger.warning(
                "favorite_add_failed", user_id=user_id, item_id=item_id, error=str(exc)
            )
            return FavoriteResult.failure(exc, user_id=user_id, item_id=item_id)

        logger.info("favorite_added", user_id=user_id, item_id=item_id)
        match_pass = await self.find_matches(user_id) if rematch else None
        return FavoriteResult(
            user_id=user_id,
            item_id=item_id,
            favorites_limit=limit,
            match_pass=match_pass,
        )

    async def remove_favorite(
        self,
        user_id: str,
        item_id: str,
        rematch: bool = False,
    ) -> FavoriteResult:
        """Drop a favorite.  Existing matches are kept; a pass only refreshes
        their strength."""
        item_id = str(item_id)
        try:
            await self.profiles.remove_interest(user_id, item_id)
            await self.index.remove_interest(user_id, item_id)
        except MatchingError as exc:
            logger.warning(
                "favorite_remove_failed", user_id=user_id, item_id=item_id, error=str(exc)
            )
            return FavoriteResult.failure(exc, user_id=user_id, item_id=item_id)

        logger.info("favorite_removed", user_id=user_id, item_id=item_id)
        match_pass = await self.find_matches(user_id) if rematch else None
        return FavoriteResult(user_id=user_id, item_id=item_id, match_pass=match_pass)

    # ── Queries & maintenance ────────────────────────────────────────────

    async def check_cooldown(self, user_id: str) -> CooldownCheck:
        try:
            return await self.gate.check_and_advance(user_id)
        except MatchingError as exc:
            return CooldownCheck.failure(exc, user_id=user_id)

    async def set_premium(self, user_id: str, is_premium: bool) -> CooldownCheck:
        """Subscription change pushed by the billing side."""
        try:
            await self.gate.set_premium(user_id, is_premium)
            return await self.gate.check_and_advance(user_id)
        except MatchingError as exc:
            return CooldownCheck.failure(exc, user_id=user_id)

    async def get_matches(
        self,
        user_id: str,
        limit: Optional[int] = None,
        after: Optional[str] = None,
    ) -> MatchListResult:
        """The user's matches, strongest first, optionally one page at a time.

        ``after`` is the ``other_user_id`` the previous page ended on; an id
        no longer among the matches starts again from the first page.
        """
        try:
            records = await self.profiles.get_matches(user_id)
        except MatchingError as exc:
            return MatchListResult.failure(exc, user_id=user_id)
        ordered = sorted(
            records.values(),
            key=lambda r: (-r.match_strength, r.other_user_id),
        )

        ids = [r.other_user_id for r in ordered]
        if after is not None and after in ids:
            ordered = ordered[ids.index(after) + 1:]
        if limit is None or len(ordered) <= limit:
            return MatchListResult(user_id=user_id, matches=ordered)

        page = ordered[:limit]
        return MatchListResult(
            user_id=user_id,
            matches=page,
            has_more=True,
            next_after=page[-1].other_user_id if page else None,
        )

    async def reconcile_pair(self, user_a_id: str, user_b_id: str) -> PropagationResult:
        """Recompute the pair's strength from both profiles and re-propagate.

        Only repairs an existing match (held by either side); a pair with no
        record on either side is left alone.
        """
        try:
            doc_a = await self.profiles.get_document(user_a_id)
            doc_b = await self.profiles.get_document(user_b_id)
        except MatchingError as exc:
            return PropagationResult.failure(
                exc,
                user_a_id=user_a_id,
                user_b_id=user_b_id,
                status=PropagationStatus.FAILED,
            )

        strength = len(
            UserProfile.from_document(user_a_id, doc_a).interests
            & UserProfile.from_document(user_b_id, doc_b).interests
        )
        if user_b_id not in match_records(doc_a) and user_a_id not in match_records(doc_b):
            return PropagationResult(
                user_a_id=user_a_id,
                user_b_id=user_b_id,
                match_strength=strength,
                status=PropagationStatus.UNCHANGED,
            )
        return await self.propagator.propagate(user_a_id, user_b_id, strength)

    async def rebuild_interest_index(self) -> dict[str, int]:
        """Re-derive the whole reverse index from the users' interests."""
        interests = {uid: items async for uid, items in self.profiles.stream_interests()}
        stats = await self.index.rebuild(interests)
        logger.info("interest_index_reconciled", users=len(interests), **stats)
        return stats

    async def audit_matches(self, user_id: str, heal: bool = False) -> AuditResult:
        """Check every match ``user_id`` holds for symmetry.

        With ``heal`` each asymmetric pair is re-propagated at the strength
        the user's record carries.  The result reports
        ``invariant_violation`` while any pair stays asymmetric.
        """
        try:
            records = await self.profiles.get_matches(user_id)
        except MatchingError as exc:
            return AuditResult.failure(exc, user_id=user_id)

        asymmetric: list[str] = []
        healed: list[str] = []
        for other_id, record in sorted(records.items()):
            try:
                await self.propagator.check_symmetry(user_id, other_id)
                continue
            except InvariantViolationError as exc:
                logger.warning("match_asymmetry_detected", user_id=user_id, other_id=other_id, detail=exc.detail)
            except MatchingError as exc:
                logger.warning("match_audit_check_failed", user_id=user_id, other_id=other_id, error=str(exc))
            asymmetric.append(other_id)

            if heal:
                result = await self.propagator.propagate(
                    user_id, other_id, record.match_strength
                )
                if result.success:
                    healed.append(other_id)

        unresolved = [uid for uid in asymmetric if uid not in healed]
        return AuditResult(
            success=not unresolved,
            error=ErrorKind.INVARIANT_VIOLATION if asymmetric else None,
            message=(
                f"{len(unresolved)} asymmetric match(es) unresolved" if unresolved else None
            ),
            user_id=user_id,
            checked=len(records),
            asymmetric=asymmetric,
            healed=healed,
        )


def build_store(settings: Optional[Settings] = None) -> DocumentStore:
    """Document store for ``STORE_BACKEND``."""
    settings = settings or get_settings()
    if settings.STORE_BACKEND == "memory":
        from animatch.store.memory import MemoryDocumentStore

        return MemoryDocumentStore(max_batch_operations=settings.MAX_BATCH_OPERATIONS)

    from animatch.database import get_session_factory
    from animatch.store.sql import SqlDocumentStore

    return SqlDocumentStore(
        get_session_factory(),
        max_batch_operations=settings.MAX_BATCH_OPERATIONS,
    )


def build_matching_service(
    settings: Optional[Settings] = None,
    chat_service: Optional[ChatService] = None,
) -> MatchingService:
    settings = settings or get_settings()
    return MatchingService(build_store(settings), settings, chat_service=chat_service)
