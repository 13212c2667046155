"""
AniMatch — Candidate discovery through the reverse interest index.

For a user's interest set, looks up who else favors each item and tallies
co-occurrences per other user.  The tally is the match strength.

Interests are scanned in batches of ``INDEX_SCAN_BATCH_SIZE`` to bound
fan-out against the store; items inside a batch are fetched concurrently.
Batching only affects load, never the result: the tally is a plain sum.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Iterable, Mapping, Optional

import structlog

from animatch.config import Settings, get_settings
from animatch.errors import StoreUnavailableError
from animatch.services.interest_index import InterestIndex

logger = structlog.get_logger(__name__)


class CandidateCollector:

    def __init__(
        self,
        index: InterestIndex,
        settings: Optional[Settings] = None,
    ) -> None:
        self.index = index
        self.settings = settings or get_settings()

    async def tally(self, user_id: str, interests: Iterable[str]) -> dict[str, int]:
        """Co-occurrence count for every other user sharing an interest."""
        items = sorted({str(i) for i in interests})
        batch_size = self.settings.INDEX_SCAN_BATCH_SIZE
        counts: Counter[str] = Counter()
        skipped_items: list[str] = []

        for start in range(0, len(items), batch_size):
            chunk = items[start:start + batch_size]
            fetched = await asyncio.gather(
                *(self.index.users_for(item) for item in chunk),
                return_exceptions=True,
            )
            for item, users in zip(chunk, fetched):
                if isinstance(users, StoreUnavailableError):
                    # A stale or partial tally is acceptable; the next pass converges.
                    skipped_items.append(item)
                    continue
                if isinstance(users, BaseException):
                    raise users
                counts.update(u for u in users if u != user_id)

        if skipped_items:
            logger.warning(
                "candidate_tally_items_skipped",
                user_id=user_id,
                skipped_items=skipped_items,
            )
        logger.debug(
            "candidate_tally_complete",
            user_id=user_id,
            items=len(items),
            candidates=len(counts),
        )
        return dict(counts)

    async def collect(
        self,
        user_id: str,
        interests: Iterable[str],
        exclude_already_matched: Iterable[str] = (),
    ) -> dict[str, int]:
        """Full tally minus users already matched with ``user_id``.

        Not threshold-filtered, so callers can both filter with
        ``eligible`` and report strength.
        """
        excluded = set(exclude_already_matched)
        tallies = await self.tally(user_id, interests)
        return {uid: n for uid, n in tallies.items() if uid not in excluded}

    def eligible(
        self,
        tallies: Mapping[str, int],
        threshold: Optional[int] = None,
    ) -> dict[str, int]:
        """Candidates whose tally reaches ``MATCH_THRESHOLD``."""
        if threshold is None:
            threshold = self.settings.MATCH_THRESHOLD
        return {uid: n for uid, n in tallies.items() if n >= threshold}
