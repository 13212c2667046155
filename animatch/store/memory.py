"""
AniMatch — In-process document store.

Used for local development and tests.  Read-modify-write on a document is
serialised with a per-document ``asyncio.Lock``; multi-document commits and
transactions take their locks in sorted key order so concurrent callers
cannot deadlock.  Every call yields to the event loop at least once, so
concurrent matching passes interleave the way they would against a remote
store.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

from animatch.config import STORE_BATCH_CEILING
from animatch.store.base import DocumentStore, Key, Transaction, WriteOp, stage_ops

T = TypeVar("T")


class MemoryDocumentStore(DocumentStore):

    def __init__(self, max_batch_operations: int = STORE_BATCH_CEILING) -> None:
        self.max_batch_operations = max_batch_operations
        self._docs: dict[Key, dict] = {}
        self._locks: defaultdict[Key, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def _locked(self, keys: Iterable[Key]) -> AsyncIterator[None]:
        acquired: list[asyncio.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._locks[key]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _persist(self, staged: dict[Key, Optional[dict]]) -> None:
        for key, doc in staged.items():
            if doc is None:
                self._docs.pop(key, None)
            else:
                self._docs[key] = doc

    async def get(self, collection: str, key: str) -> Optional[dict]:
        await asyncio.sleep(0)
        return copy.deepcopy(self._docs.get((collection, key)))

    async def stream(self, collection: str) -> AsyncIterator[tuple[str, dict]]:
        await asyncio.sleep(0)
        snapshot = sorted(
            (k[1], copy.deepcopy(doc))
            for k, doc in self._docs.items()
            if k[0] == collection
        )
        for key, doc in snapshot:
            yield key, doc

    async def _commit_ops(self, ops: list[WriteOp]) -> None:
        keys = {op.doc_key for op in ops}
        async with self._locked(keys):
            await asyncio.sleep(0)
            current = {k: self._docs.get(k) for k in keys}
            self._persist(stage_ops(current, ops))

    async def transaction(
        self,
        keys: Iterable[Key],
        fn: Callable[[Transaction], Awaitable[T]],
    ) -> T:
        keys = set(keys)
        async with self._locked(keys):
            snapshot = {k: copy.deepcopy(self._docs.get(k)) for k in keys}
            txn = Transaction(snapshot)
            result = await fn(txn)
            self._persist(stage_ops(snapshot, txn.writes))
            return result

    # ── Test helpers ──────────────────────────────────────────────────

    def dump(self, collection: str) -> dict[str, dict]:
        """Synchronous snapshot of a collection, keyed by document key."""
        return {
            k[1]: copy.deepcopy(doc)
            for k, doc in self._docs.items()
            if k[0] == collection
        }

    def preload(self, collection: str, key: str, doc: dict) -> None:
        """Synchronously place a document, bypassing locks."""
        self._docs[(collection, key)] = copy.deepcopy(doc)
