"""
AniMatch — Reverse interest index.

Maps every favorite item to the set of users who currently favor it, so that
candidate discovery never scans the whole user collection.

Storage: one ``interest_index/{item_id}`` document per item holding
``users`` as a set-valued list.  A user id is present iff the item is in that
user's ``interests``; entries whose set becomes empty are deleted.

Concurrent favorite toggles from unrelated users are the only shared writers.
Both mutations are idempotent and commute: ``add_interest`` is a single
upserting add-to-set merge, ``remove_interest`` a single-document transaction
that removes the user and deletes the entry when it empties.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional

import structlog

from animatch.config import Settings, get_settings
from animatch.store.base import ArrayRemove, ArrayUnion, DocumentStore, Transaction
from animatch.utils.retry import with_store_retry

logger = structlog.get_logger(__name__)

INDEX_COLLECTION = "interest_index"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InterestIndex:
    """Set-valued reverse index over the document store."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()

    # ── Public API ────────────────────────────────────────────────────────

    async def add_interest(self, user_id: str, item_id: str) -> None:
        """Add ``user_id`` to the entry for ``item_id``, creating it lazily."""
        item_id = str(item_id)
        await with_store_retry(
            "index_add",
            lambda: self.store.update(
                INDEX_COLLECTION,
                item_id,
                {
                    "item_id": item_id,
                    "users": ArrayUnion(user_id),
                    "updated_at": _now_iso(),
                },
                upsert=True,
            ),
            self.settings,
        )
        logger.debug("index_interest_added", user_id=user_id, item_id=item_id)

    async def remove_interest(self, user_id: str, item_id: str) -> bool:
        """Remove ``user_id`` from the entry for ``item_id``.

        Returns True when the entry was deleted because it became empty.
        Removing from a missing entry is a no-op.
        """
        item_id = str(item_id)

        async def _remove(txn: Transaction) -> bool:
            doc = txn.get(INDEX_COLLECTION, item_id)
            if doc is None:
                return False
            remaining = [u for u in doc.get("users", []) if u != user_id]
            if not remaining:
                txn.delete(INDEX_COLLECTION, item_id)
                return True
            if len(remaining) != len(doc.get("users", [])):
                txn.update(
                    INDEX_COLLECTION,
                    item_id,
                    {"users": ArrayRemove(user_id), "updated_at": _now_iso()},
                )
            return False

        deleted = await with_store_retry(
            "index_remove",
            lambda: self.store.transaction([(INDEX_COLLECTION, item_id)], _remove),
            self.settings,
        )
        logger.debug(
            "index_interest_removed",
            user_id=user_id,
            item_id=item_id,
            entry_deleted=deleted,
        )
        return deleted

    async def users_for(self, item_id: str) -> set[str]:
        """Users currently interested in ``item_id``; empty if no entry."""
        doc = await with_store_retry(
            "index_read",
            lambda: self.store.get(INDEX_COLLECTION, str(item_id)),
            self.settings,
        )
        if doc is None:
            return set()
        return set(doc.get("users") or [])

    # ── Reconciliation ───────────────────────────────────────────────────

    async def rebuild(
        self,
        interests_by_user: Mapping[str, Iterable[str]],
    ) -> dict[str, int]:
        """Re-derive every index entry from the users' current interests.

        Entries that drifted are overwritten, entries no user favors any more
        are deleted, missing entries are created.  Safe to run at any time
        and repeatedly; writes go out in batches no larger than
        ``MAX_BATCH_OPERATIONS``.
        """
        desired: dict[str, set[str]] = {}
        for user_id, items in interests_by_user.items():
            for item in items:
                desired.setdefault(str(item), set()).add(user_id)

        stats = {"created": 0, "updated": 0, "deleted": 0, "unchanged": 0}
        batch = self.store.batch()

        async def _flush() -> None:
            nonlocal batch
            if len(batch):
                await with_store_retry("index_rebuild_commit", batch.commit, self.settings)
                batch = self.store.batch()

        seen: set[str] = set()
        async for item_id, doc in self.store.stream(INDEX_COLLECTION):
            seen.add(item_id)
            wanted = desired.get(item_id)
            if not wanted:
                batch.delete(INDEX_COLLECTION, item_id)
                stats["deleted"] += 1
            elif set(doc.get("users") or []) != wanted:
                batch.set(INDEX_COLLECTION, item_id, self._entry(item_id, wanted))
                stats["updated"] += 1
            else:
                stats["unchanged"] += 1
                continue
            if len(batch) >= self.settings.MAX_BATCH_OPERATIONS:
                await _flush()

        for item_id in sorted(set(desired) - seen):
            batch.set(INDEX_COLLECTION, item_id, self._entry(item_id, desired[item_id]))
            stats["created"] += 1
            if len(batch) >= self.settings.MAX_BATCH_OPERATIONS:
                await _flush()

        await _flush()
        logger.info("index_rebuilt", **stats)
        return stats

    @staticmethod
    def _entry(item_id: str, users: set[str]) -> dict:
        return {"item_id": item_id, "users": sorted(users), "updated_at": _now_iso()}
