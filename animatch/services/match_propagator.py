"""
AniMatch — Bidirectional match propagation.

A match lives in both users' documents: ``users/{a}.matches_data[b]`` and
``users/{b}.matches_data[a]`` carry the same strength.  Propagation keeps the
two records symmetric and counts each side against its quota once, as a short
sequence of steps rather than one transaction spanning the quota accounting:

  1. Read both documents and plan the writes for the pair.
  2. Re-read both documents inside a store transaction, plan again and write
     the result, so a record is only ever inserted where it is still absent.
     Newly written records carry ``quota_pending``.
  3. Settle each pending side through ``CooldownGate.record_match_consumed``,
     which clears the flag in the same transaction that counts the match.

Any step may be repeated.  A crash between (2) and (3) leaves pending flags
that the next propagation of the pair settles, and a side is never counted
twice.  Pairs with both records present and the same strength are skipped.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Mapping, NamedTuple, Optional, Protocol

import structlog

from animatch.config import Settings, get_settings
from animatch.errors import InvariantViolationError, MatchingError, NotFoundError
from animatch.schemas.match import PropagationResult, PropagationStatus
from animatch.schemas.profile import UserProfile
from animatch.services.cooldown_gate import CooldownGate
from animatch.services.profile_repository import (
    USERS_COLLECTION,
    ProfileRepository,
    match_records,
)
from animatch.store.base import ArrayUnion, DocumentStore, Transaction, WriteOp
from animatch.utils.retry import with_store_retry

logger = structlog.get_logger(__name__)

# Most writes a single pair can need: one update per side.
PAIR_WRITES = 2


class ChatService(Protocol):
    """Opens a conversation between two newly matched users."""

    async def create_chat(self, user_a_id: str, user_b_id: str) -> None: ...


class PairPlan(NamedTuple):
    user_a_id: str
    user_b_id: str
    match_strength: int
    status: PropagationStatus
    ops: list[WriteOp]
    pending: list[tuple[str, str]]  # (owner, other) sides awaiting quota


class MatchPropagator:
    """Writes and repairs symmetric match records."""

    def __init__(
        self,
        store: DocumentStore,
        gate: CooldownGate,
        profiles: ProfileRepository,
        settings: Optional[Settings] = None,
        chat_service: Optional[ChatService] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.profiles = profiles
        self.settings = settings or get_settings()
        self.chat_service = chat_service
        self._hook_tasks: set[asyncio.Task] = set()

    # ── Planning ─────────────────────────────────────────────────────────

    @staticmethod
    def _side_ops(
        owner_id: str,
        other_id: str,
        other_doc: dict,
        existing,
        strength: int,
        now: datetime,
    ) -> list[WriteOp]:
        if existing is not None:
            if existing.match_strength == strength:
                return []
            return [WriteOp(
                "update",
                USERS_COLLECTION,
                owner_id,
                {f"matches_data.{other_id}.match_strength": strength},
            )]

        other = UserProfile.from_document(other_id, other_doc)
        record = {
            "match_strength": strength,
            "display_name": other.display_name,
            "display_photo": other.photo_url,
            "matched_at": now.isoformat(),
            "quota_pending": True,
        }
        return [WriteOp(
            "update",
            USERS_COLLECTION,
            owner_id,
            {"matches": ArrayUnion(other_id), f"matches_data.{other_id}": record},
        )]

    def plan(
        self,
        user_a_id: str,
        doc_a: dict,
        user_b_id: str,
        doc_b: dict,
        match_strength: int,
        now: Optional[datetime] = None,
    ) -> PairPlan:
        """Work out the writes that make the pair symmetric at ``match_strength``."""
        now = now or datetime.now(timezone.utc)
        a_side = match_records(doc_a).get(user_b_id)
        b_side = match_records(doc_b).get(user_a_id)

        ops = (
            self._side_ops(user_a_id, user_b_id, doc_b, a_side, match_strength, now)
            + self._side_ops(user_b_id, user_a_id, doc_a, b_side, match_strength, now)
        )

        if a_side is None and b_side is None:
            status = PropagationStatus.CREATED
        elif a_side is None or b_side is None:
            status = PropagationStatus.HEALED
        elif ops:
            status = PropagationStatus.UPDATED
        else:
            status = PropagationStatus.UNCHANGED

        pending = [
            (owner, other)
            for owner, other, side in (
                (user_a_id, user_b_id, a_side),
                (user_b_id, user_a_id, b_side),
            )
            if side is None or side.quota_pending
        ]
        return PairPlan(user_a_id, user_b_id, match_strength, status, ops, pending)

    # ── Commit & settle ──────────────────────────────────────────────────

    async def _commit(self, plans: list[PairPlan], operation: str) -> list[PairPlan]:
        """Re-plan ``plans`` against locked documents and write them atomically.

        Returns the plans actually applied.  A concurrent propagation that
        committed first turns a create into an update or no-op here.
        """
        if not plans:
            return []
        keys = {
            (USERS_COLLECTION, uid)
            for plan in plans
            for uid in (plan.user_a_id, plan.user_b_id)
        }

        async def _txn(txn: Transaction) -> list[PairPlan]:
            now = datetime.now(timezone.utc)
            applied = []
            for plan in plans:
                doc_a = txn.get(USERS_COLLECTION, plan.user_a_id)
                doc_b = txn.get(USERS_COLLECTION, plan.user_b_id)
                for uid, doc in ((plan.user_a_id, doc_a), (plan.user_b_id, doc_b)):
                    if doc is None:
                        raise NotFoundError(USERS_COLLECTION, uid)
                fresh = self.plan(
                    plan.user_a_id, doc_a, plan.user_b_id, doc_b, plan.match_strength, now
                )
                for op in fresh.ops:
                    txn.update(op.collection, op.key, op.fields)
                applied.append(fresh)
            return applied

        return await with_store_retry(
            operation,
            lambda: self.store.transaction(keys, _txn),
            self.settings,
        )

    async def _settle(self, plan: PairPlan) -> list[str]:
        settled = []
        for owner_id, other_id in plan.pending:
            try:
                await self.gate.record_match_consumed(owner_id, match_with=other_id)
            except MatchingError as exc:
                # The pending flag survives; the next propagation settles it.
                logger.warning(
                    "match_quota_settle_failed",
                    user_id=owner_id,
                    match_with=other_id,
                    error=str(exc),
                )
                continue
            settled.append(owner_id)
        return settled

    async def _finish(self, plan: PairPlan) -> PropagationResult:
        settled = await self._settle(plan)
        if plan.status == PropagationStatus.CREATED:
            self._schedule_chat(plan.user_a_id, plan.user_b_id)
        if plan.status != PropagationStatus.UNCHANGED:
            logger.info(
                "match_propagated",
                user_a_id=plan.user_a_id,
                user_b_id=plan.user_b_id,
                match_strength=plan.match_strength,
                status=plan.status.value,
                quota_consumed=settled,
            )
        return PropagationResult(
            user_a_id=plan.user_a_id,
            user_b_id=plan.user_b_id,
            match_strength=plan.match_strength,
            status=plan.status,
            quota_consumed=settled,
        )

    @staticmethod
    def _failed(
        user_a_id: str,
        user_b_id: str,
        match_strength: int,
        exc: MatchingError,
    ) -> PropagationResult:
        return PropagationResult.failure(
            exc,
            user_a_id=user_a_id,
            user_b_id=user_b_id,
            match_strength=match_strength,
            status=PropagationStatus.FAILED,
        )

    async def _read_user(self, user_id: str) -> dict:
        return await self.profiles.get_document(user_id)

    # ── Public API ────────────────────────────────────────────────────────

    async def propagate(
        self,
        user_a_id: str,
        user_b_id: str,
        match_strength: int,
    ) -> PropagationResult:
        """Create, refresh or heal the match between two users.

        Idempotent: repeating it with the same strength changes nothing and
        consumes no further quota, including when two calls for the same
        pair overlap.

        Parameters
        ----------
        user_a_id, user_b_id:
            The pair.  Must differ.
        match_strength:
            Number of shared interests.

        Returns
        -------
        PropagationResult
            ``status`` tells what happened; on failure ``success`` is False
            and ``error`` carries the error kind.  Pairing a user with
            themselves fails with ``invariant_violation``.
        """
        try:
            if user_a_id == user_b_id:
                raise InvariantViolationError(
                    user_a_id, user_b_id, "a user cannot be matched with themselves"
                )
            doc_a, doc_b = await asyncio.gather(
                self._read_user(user_a_id), self._read_user(user_b_id)
            )
            plan = self.plan(user_a_id, doc_a, user_b_id, doc_b, match_strength)
            if plan.ops:
                [plan] = await self._commit([plan], "propagate_commit")
        except MatchingError as exc:
            logger.warning(
                "match_propagation_failed",
                user_a_id=user_a_id,
                user_b_id=user_b_id,
                error=str(exc),
            )
            return self._failed(user_a_id, user_b_id, match_strength, exc)
        return await self._finish(plan)

    async def propagate_all(
        self,
        owner_id: str,
        candidates: Mapping[str, int],
    ) -> list[PropagationResult]:
        """Propagate ``owner_id`` against every candidate in one pass.

        Pairs are committed in chunks of at most ``MAX_BATCH_OPERATIONS``
        writes; a pair's writes never straddle two chunks.  When a chunk
        fails its pairs are retried one at a time, so one bad pair costs only
        itself.  Raises ``NotFoundError`` if the owner has no document.
        """
        log = logger.bind(user_id=owner_id)
        owner_doc = await self._read_user(owner_id)
        results: dict[str, PropagationResult] = {}
        plans: list[PairPlan] = []

        semaphore = asyncio.Semaphore(self.settings.CANDIDATE_FETCH_CONCURRENCY)

        async def _read(uid: str):
            async with semaphore:
                try:
                    return uid, await self._read_user(uid)
                except MatchingError as exc:
                    return uid, exc

        ordered = [uid for uid in candidates if uid != owner_id]
        for uid, doc in await asyncio.gather(*(_read(uid) for uid in ordered)):
            strength = candidates[uid]
            if isinstance(doc, MatchingError):
                results[uid] = self._failed(owner_id, uid, strength, doc)
                continue
            plans.append(self.plan(owner_id, owner_doc, uid, doc, strength))

        # Pairs already in place need no write; only their pending quota.
        committed = [plan for plan in plans if not plan.ops]
        to_write = [plan for plan in plans if plan.ops]

        # A pair planned again under lock may need up to PAIR_WRITES writes.
        per_chunk = self.settings.MAX_BATCH_OPERATIONS // PAIR_WRITES
        chunks = [
            to_write[i:i + per_chunk] for i in range(0, len(to_write), per_chunk)
        ]

        for chunk in chunks:
            try:
                committed.extend(await self._commit(chunk, "propagate_chunk_commit"))
                continue
            except MatchingError as exc:
                log.warning("match_chunk_failed", pairs=len(chunk), error=str(exc))

            for plan in chunk:
                try:
                    [plan] = await self._commit([plan], "propagate_commit")
                except MatchingError as exc:
                    log.warning(
                        "match_propagation_failed",
                        user_b_id=plan.user_b_id,
                        error=str(exc),
                    )
                    results[plan.user_b_id] = self._failed(
                        owner_id, plan.user_b_id, plan.match_strength, exc
                    )
                    continue
                committed.append(plan)

        for plan in committed:
            results[plan.user_b_id] = await self._finish(plan)

        return [results[uid] for uid in ordered]

    async def check_symmetry(self, user_a_id: str, user_b_id: str) -> bool:
        """True if matched on both sides, False if on neither.

        Raises ``InvariantViolationError`` when only one side holds the
        record or the two strengths disagree.
        """
        doc_a, doc_b = await asyncio.gather(
            self._read_user(user_a_id), self._read_user(user_b_id)
        )
        a_side = match_records(doc_a).get(user_b_id)
        b_side = match_records(doc_b).get(user_a_id)

        if a_side is None and b_side is None:
            return False
        if a_side is None or b_side is None:
            holder = user_a_id if a_side is not None else user_b_id
            raise InvariantViolationError(
                user_a_id, user_b_id, f"match recorded only by {holder}"
            )
        if a_side.match_strength != b_side.match_strength:
            raise InvariantViolationError(
                user_a_id,
                user_b_id,
                f"strength {a_side.match_strength} != {b_side.match_strength}",
            )
        return True

    # ── Chat hook ────────────────────────────────────────────────────────

    def _schedule_chat(self, user_a_id: str, user_b_id: str) -> None:
        if self.chat_service is None:
            return
        task = asyncio.create_task(self._run_chat_hook(user_a_id, user_b_id))
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)

    async def _run_chat_hook(self, user_a_id: str, user_b_id: str) -> None:
        try:
            await self.chat_service.create_chat(user_a_id, user_b_id)
        except Exception:
            # The match stands even if the chat could not be opened.
            logger.exception("chat_hook_failed", user_a_id=user_a_id, user_b_id=user_b_id)

    async def wait_for_hooks(self) -> None:
        """Block until every scheduled chat hook has finished."""
        while self._hook_tasks:
            await asyncio.gather(*list(self._hook_tasks))
