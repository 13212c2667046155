"""
AniMatch — SQL-backed document store.

Each document is one row of the ``documents`` table.  Every write call runs
in its own session transaction and locks the touched rows with
``SELECT ... FOR UPDATE`` (a no-op on SQLite, which serialises writers
itself), which gives the per-document merge and small-batch atomicity the
matching core needs.  Driver connection failures surface as
``StoreUnavailableError`` so callers can retry the step.
"""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from animatch.config import STORE_BATCH_CEILING
from animatch.errors import StoreUnavailableError
from animatch.models.document import Document
from animatch.store.base import DocumentStore, Key, Transaction, WriteOp, stage_ops

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Concurrent upserts of a new document can race on the primary key; the loser
# re-runs against the row the winner inserted.
_INSERT_RACE_ATTEMPTS = 3


class SqlDocumentStore(DocumentStore):

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_batch_operations: int = STORE_BATCH_CEILING,
    ) -> None:
        self._session_factory = session_factory
        self.max_batch_operations = max_batch_operations

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("sql_store_unavailable", error=str(exc))
            raise StoreUnavailableError(str(exc)) from exc

    async def _load(
        self,
        session: AsyncSession,
        keys: Iterable[Key],
    ) -> dict[Key, Document]:
        keys = sorted(set(keys))
        if not keys:
            return {}
        stmt = (
            select(Document)
            .where(
                or_(*[
                    and_(Document.collection == c, Document.key == k)
                    for c, k in keys
                ])
            )
            .order_by(Document.collection, Document.key)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return {(row.collection, row.key): row for row in result.scalars().all()}

    @staticmethod
    def _write_staged(
        session: AsyncSession,
        rows: dict[Key, Document],
        staged: dict[Key, Optional[dict]],
    ) -> list:
        deletions = []
        for (collection, key), doc in staged.items():
            row = rows.get((collection, key))
            if doc is None:
                if row is not None:
                    deletions.append(row)
            elif row is not None:
                # Reassign so the JSON column is flagged dirty.
                row.data = doc
            else:
                session.add(Document(collection=collection, key=key, data=doc))
        return deletions

    async def _run_locked(
        self,
        keys: set[Key],
        body: Callable[[dict[Key, Optional[dict]]], Awaitable[tuple[list[WriteOp], T]]],
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._session() as session:
                    rows = await self._load(session, keys)
                    snapshot = {
                        k: copy.deepcopy(rows[k].data) if k in rows else None
                        for k in keys
                    }
                    ops, result = await body(snapshot)
                    staged = stage_ops(snapshot, ops)
                    for row in self._write_staged(session, rows, staged):
                        await session.delete(row)
                return result
            except IntegrityError:
                if attempt >= _INSERT_RACE_ATTEMPTS:
                    raise
                logger.debug("sql_store_insert_race", attempt=attempt)

    # ── DocumentStore API ─────────────────────────────────────────────

    async def get(self, collection: str, key: str) -> Optional[dict]:
        async with self._session() as session:
            row = await session.get(Document, (collection, key))
            return copy.deepcopy(row.data) if row is not None else None

    async def stream(self, collection: str) -> AsyncIterator[tuple[str, dict]]:
        async with self._session() as session:
            result = await session.execute(
                select(Document)
                .where(Document.collection == collection)
                .order_by(Document.key)
            )
            snapshot = [(row.key, copy.deepcopy(row.data)) for row in result.scalars()]
        for key, doc in snapshot:
            yield key, doc

    async def _commit_ops(self, ops: list[WriteOp]) -> None:
        async def body(snapshot):
            return ops, None

        await self._run_locked({op.doc_key for op in ops}, body)

    async def transaction(
        self,
        keys: Iterable[Key],
        fn: Callable[[Transaction], Awaitable[T]],
    ) -> T:
        async def body(snapshot):
            txn = Transaction(snapshot)
            result = await fn(txn)
            return txn.writes, result

        return await self._run_locked(set(keys), body)
