"""
AniMatch — Subscription-aware match quota and cooldown.

Per-user state machine stored at ``subscriptions/{user_id}``::

    Available --(match_count reaches match_threshold)--> Cooldown
    Cooldown  --(COOLDOWN_SECONDS elapsed)-------------> Available (count reset)
    Cooldown  --(not yet elapsed)----------------------> Cooldown

Premium accounts never trip the threshold but still count matches.  A free
account found available at or over its quota (say, right after a downgrade)
enters Cooldown at once.  Every read-modify-write runs in a store transaction
so concurrent matching passes cannot lose an increment.  A missing state
document is created with the free-tier defaults on first contact.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

import structlog

from animatch.config import Settings, get_settings
from animatch.schemas.match import CooldownCheck, CooldownState
from animatch.services.profile_repository import USERS_COLLECTION
from animatch.store.base import DELETE_FIELD, DocumentStore, Transaction
from animatch.utils.retry import with_store_retry

logger = structlog.get_logger(__name__)

SUBSCRIPTIONS_COLLECTION = "subscriptions"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    ts = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class CooldownGate:

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or _utcnow

    @property
    def cooldown_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.COOLDOWN_SECONDS)

    # ── State (de)serialisation ──────────────────────────────────────────

    def _load(self, user_id: str, doc: Optional[dict]) -> CooldownState:
        doc = doc or {}
        return CooldownState(
            user_id=user_id,
            match_count=max(0, int(doc.get("match_count") or 0)),
            match_threshold=doc.get("match_threshold") or self.settings.FREE_MATCH_QUOTA,
            is_premium=bool(doc.get("is_premium", False)),
            cooldown_started_at=_parse_timestamp(doc.get("cooldown_started_at")),
            available_for_matching=doc.get("available_for_matching", True) is not False,
        )

    @staticmethod
    def _dump(state: CooldownState, now: datetime) -> dict:
        started = state.cooldown_started_at
        return {
            "user_id": state.user_id,
            "match_count": state.match_count,
            "match_threshold": state.match_threshold,
            "is_premium": state.is_premium,
            "cooldown_started_at": started.isoformat() if started else None,
            "available_for_matching": state.available_for_matching,
            "updated_at": now.isoformat(),
        }

    # ── Transitions (pure) ───────────────────────────────────────────────

    def _advance(
        self,
        state: CooldownState,
        now: datetime,
    ) -> tuple[CooldownState, bool, float]:
        """Apply a lazy cooldown expiry.

        Returns ``(state, just_reset, remaining_seconds)``.
        """
        if state.available_for_matching:
            if state.is_premium or state.match_count < state.match_threshold:
                return state, False, 0.0
            # Free account already over its quota: the cooldown starts now.
            logger.warning(
                "cooldown_state_repaired",
                user_id=state.user_id,
                match_count=state.match_count,
            )
            tripped = self._trip(state, now)
            return tripped, False, self.cooldown_duration.total_seconds()

        started = state.cooldown_started_at
        if state.is_premium:
            reason = "premium"
        elif started is None:
            reason = "missing_start"
        elif now - started >= self.cooldown_duration:
            reason = "expired"
        else:
            remaining = self.cooldown_duration - (now - started)
            return state, False, remaining.total_seconds()

        if reason == "missing_start":
            logger.warning("cooldown_state_repaired", user_id=state.user_id)
        reset = state.model_copy(update={
            "match_count": 0,
            "cooldown_started_at": None,
            "available_for_matching": True,
        })
        return reset, True, 0.0

    @staticmethod
    def _trip(state: CooldownState, now: datetime) -> CooldownState:
        return state.model_copy(update={
            "cooldown_started_at": now,
            "available_for_matching": False,
        })

    @classmethod
    def _consume(cls, state: CooldownState, now: datetime) -> tuple[CooldownState, bool]:
        """Count one new match.  Returns ``(state, consumed)``."""
        if state.is_premium:
            return state.model_copy(update={"match_count": state.match_count + 1}), True
        if not state.available_for_matching:
            return state, False

        counted = state.model_copy(update={"match_count": state.match_count + 1})
        if counted.match_count >= counted.match_threshold:
            counted = cls._trip(counted, now)
        return counted, True

    @staticmethod
    def remaining_quota(state: CooldownState) -> Optional[int]:
        """New matches still allowed; ``None`` means unlimited."""
        if state.is_premium:
            return None
        if not state.available_for_matching:
            return 0
        return max(0, state.match_threshold - state.match_count)

    def remaining_cooldown(self, state: CooldownState) -> float:
        """Seconds until an active cooldown expires; 0 when available."""
        if state.available_for_matching or state.cooldown_started_at is None:
            return 0.0
        remaining = self.cooldown_duration - (self.clock() - state.cooldown_started_at)
        return max(0.0, remaining.total_seconds())

    # ── Public API ────────────────────────────────────────────────────────

    async def get_state(self, user_id: str) -> CooldownState:
        """Read-only view; defaults for an unseen user, nothing written."""
        doc = await with_store_retry(
            "cooldown_read",
            lambda: self.store.get(SUBSCRIPTIONS_COLLECTION, user_id),
            self.settings,
        )
        return self._load(user_id, doc)

    async def check_and_advance(self, user_id: str) -> CooldownCheck:
        """Report availability, resetting an expired cooldown on the way.

        Idempotent and safe to call repeatedly.  Creates the default state
        for an unseen user.
        """

        async def _txn(txn: Transaction):
            doc = txn.get(SUBSCRIPTIONS_COLLECTION, user_id)
            now = self.clock()
            state = self._load(user_id, doc)
            advanced, just_reset, remaining = self._advance(state, now)
            if doc is None or advanced != state:
                txn.set(SUBSCRIPTIONS_COLLECTION, user_id, self._dump(advanced, now))
            return advanced, just_reset, remaining

        state, just_reset, remaining = await with_store_retry(
            "cooldown_check",
            lambda: self.store.transaction(
                [(SUBSCRIPTIONS_COLLECTION, user_id)], _txn
            ),
            self.settings,
        )

        if just_reset:
            logger.info("cooldown_reset", user_id=user_id, is_premium=state.is_premium)
        elif not state.available_for_matching:
            logger.debug(
                "cooldown_active",
                user_id=user_id,
                remaining_seconds=round(remaining, 1),
            )

        return CooldownCheck(
            user_id=user_id,
            available_for_matching=state.available_for_matching,
            just_reset=just_reset,
            remaining_seconds=remaining,
            remaining_matches=self.remaining_quota(state),
            is_premium=state.is_premium,
        )

    async def record_match_consumed(
        self,
        user_id: str,
        match_with: Optional[str] = None,
    ) -> CooldownState:
        """Count one newly created match against ``user_id``'s quota.

        Trips the cooldown when the post-increment count meets the threshold.
        A no-op for a user already in cooldown.

        With ``match_with`` the increment happens only if the user's match
        record for that partner is still marked ``quota_pending``, and the
        mark is cleared in the same transaction, so each side of a match is
        counted exactly once however often propagation is retried.
        """
        keys = [(SUBSCRIPTIONS_COLLECTION, user_id)]
        if match_with is not None:
            keys.append((USERS_COLLECTION, user_id))

        async def _txn(txn: Transaction):
            doc = txn.get(SUBSCRIPTIONS_COLLECTION, user_id)
            state = self._load(user_id, doc)

            if match_with is not None:
                user_doc = txn.get(USERS_COLLECTION, user_id) or {}
                entry = (user_doc.get("matches_data") or {}).get(match_with)
                if not (isinstance(entry, dict) and entry.get("quota_pending")):
                    return state, False
                txn.update(
                    USERS_COLLECTION,
                    user_id,
                    {f"matches_data.{match_with}.quota_pending": DELETE_FIELD},
                )

            now = self.clock()
            consumed_state, consumed = self._consume(state, now)
            if doc is None or consumed:
                txn.set(SUBSCRIPTIONS_COLLECTION, user_id, self._dump(consumed_state, now))
            return consumed_state, consumed

        state, consumed = await with_store_retry(
            "cooldown_consume",
            lambda: self.store.transaction(keys, _txn),
            self.settings,
        )

        if consumed:
            logger.info(
                "match_quota_consumed",
                user_id=user_id,
                match_with=match_with,
                match_count=state.match_count,
                match_threshold=state.match_threshold,
                cooldown_started=not state.available_for_matching,
            )
        else:
            logger.debug("match_quota_not_consumed", user_id=user_id, match_with=match_with)
        return state

    async def set_premium(self, user_id: str, is_premium: bool) -> CooldownState:
        """Apply the subscription flag.

        Upgrading lifts an active cooldown.  Downgrading keeps the match
        count, so an account already at the free quota starts its cooldown
        immediately.
        """

        async def _txn(txn: Transaction):
            now = self.clock()
            state = self._load(user_id, txn.get(SUBSCRIPTIONS_COLLECTION, user_id))
            update: dict = {"is_premium": is_premium}
            if is_premium and not state.available_for_matching:
                update.update(
                    match_count=0,
                    cooldown_started_at=None,
                    available_for_matching=True,
                )
            state = state.model_copy(update=update)
            if (
                not is_premium
                and state.available_for_matching
                and state.match_count >= state.match_threshold
            ):
                state = self._trip(state, now)
            txn.set(SUBSCRIPTIONS_COLLECTION, user_id, self._dump(state, now))
            return state

        state = await with_store_retry(
            "cooldown_set_premium",
            lambda: self.store.transaction(
                [(SUBSCRIPTIONS_COLLECTION, user_id)], _txn
            ),
            self.settings,
        )
        logger.info(
            "subscription_updated",
            user_id=user_id,
            is_premium=is_premium,
            available=state.available_for_matching,
        )
        return state

    async def admit(self, user_id: str, candidate_ids: Sequence[str]) -> list[str]:
        """Clip ``candidate_ids`` (in priority order) to the remaining quota."""
        remaining = self.remaining_quota(await self.get_state(user_id))
        if remaining is None:
            return list(candidate_ids)
        admitted = list(candidate_ids[:remaining])
        if len(admitted) < len(candidate_ids):
            logger.info(
                "candidates_clipped_to_quota",
                user_id=user_id,
                admitted=len(admitted),
                clipped=len(candidate_ids) - len(admitted),
            )
        return admitted
