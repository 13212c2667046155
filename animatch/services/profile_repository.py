"""
AniMatch — Read side of the profile collaborator.

Profiles are owned by profile management; the matching core reads them and
writes only ``interests`` (through the favorite triggers), ``matches`` and
``matches_data``.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional

import structlog

from animatch.config import Settings, get_settings
from animatch.errors import NotFoundError
from animatch.schemas.match import MatchRecord
from animatch.schemas.profile import UserProfile, legacy_interests
from animatch.store.base import ArrayRemove, ArrayUnion, DocumentStore
from animatch.utils.retry import with_store_retry

logger = structlog.get_logger(__name__)

USERS_COLLECTION = "users"


class ProfileRepository:

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()

    async def get_document(self, user_id: str) -> dict:
        doc = await with_store_retry(
            "profile_read",
            lambda: self.store.get(USERS_COLLECTION, user_id),
            self.settings,
        )
        if doc is None:
            raise NotFoundError(USERS_COLLECTION, user_id)
        return doc

    async def get(self, user_id: str) -> UserProfile:
        """Fetch a profile; raises ``NotFoundError`` when the user is unknown."""
        return UserProfile.from_document(user_id, await self.get_document(user_id))

    async def get_matches(self, user_id: str) -> dict[str, MatchRecord]:
        doc = await self.get_document(user_id)
        return match_records(doc)

    async def add_interest(self, user_id: str, item_id: str) -> None:
        await with_store_retry(
            "profile_add_interest",
            lambda: self.store.update(
                USERS_COLLECTION, user_id, {"interests": ArrayUnion(str(item_id))}
            ),
            self.settings,
        )

    async def remove_interest(self, user_id: str, item_id: str) -> None:
        await with_store_retry(
            "profile_remove_interest",
            lambda: self.store.update(
                USERS_COLLECTION, user_id, {"interests": ArrayRemove(str(item_id))}
            ),
            self.settings,
        )

    async def stream_interests(self) -> AsyncIterator[tuple[str, set[str]]]:
        """Yield ``(user_id, interests)`` for every user document."""
        async for user_id, doc in self.store.stream(USERS_COLLECTION):
            interests = doc.get("interests")
            if interests is None:
                interests = legacy_interests(doc)
            yield user_id, {str(i) for i in interests}

    async def migrate_legacy_interests(self) -> int:
        """Write ``interests`` for every user still on a legacy field.

        Returns the number of documents migrated.  Legacy fields are left in
        place for older clients.
        """
        migrated = 0
        async for user_id, doc in self.store.stream(USERS_COLLECTION):
            if doc.get("interests") is not None:
                continue
            items = sorted(legacy_interests(doc))
            await with_store_retry(
                "profile_migrate",
                lambda: self.store.update(
                    USERS_COLLECTION, user_id, {"interests": items}
                ),
                self.settings,
            )
            migrated += 1
            logger.info("profile_interests_migrated", user_id=user_id, count=len(items))
        return migrated


def match_records(doc: dict) -> dict[str, MatchRecord]:
    """Match records held by a ``users`` document, keyed by the other user.

    A record counts only when the id is in ``matches`` and its data is in
    ``matches_data``; either alone is a half-written record.
    """
    ids = doc.get("matches") or []
    data = doc.get("matches_data") or {}
    records = {}
    for other_id in ids:
        entry = data.get(other_id)
        if not isinstance(entry, dict):
            continue
        records[other_id] = MatchRecord(
            other_user_id=other_id,
            match_strength=entry.get("match_strength", 0),
            display_name=entry.get("display_name") or "User",
            display_photo=entry.get("display_photo") or "",
            matched_at=entry.get("matched_at"),
            quota_pending=bool(entry.get("quota_pending", False)),
        )
    return records
