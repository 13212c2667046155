"""
AniMatch — Abstract document store.

The matching core talks to a replicated document store through this narrow
interface only.  Guarantees it relies on:

  * ``update`` is an atomic single-document merge.  Dotted paths address
    nested fields; ``ArrayUnion`` / ``ArrayRemove`` give add-to-set and
    remove-from-set on list fields; ``DELETE_FIELD`` removes a field.
  * ``batch().commit()`` applies up to ``max_batch_operations`` writes
    atomically.  Larger write sets must be chunked by the caller.
  * ``transaction(keys, fn)`` gives read-then-write atomicity over a small,
    explicit key set.  Reads inside ``fn`` see the snapshot taken when the
    transaction started, not the transaction's own buffered writes.

Nothing here spans more than one call: there are no multi-call transactions.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    NamedTuple,
    Optional,
    TypeVar,
)

from animatch.config import STORE_BATCH_CEILING
from animatch.errors import BatchLimitExceededError, NotFoundError

T = TypeVar("T")

Key = tuple[str, str]


# ──────────────────────────────────────────────────────────────────────────────
# Field transforms
# ──────────────────────────────────────────────────────────────────────────────

class ArrayUnion:
    """Add each value to a list field unless already present."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


class ArrayRemove:
    """Remove every occurrence of each value from a list field."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayRemove({self.values!r})"


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


def apply_update(doc: Mapping[str, Any], fields: Mapping[str, Any]) -> dict:
    """Return a copy of ``doc`` with ``fields`` merged in."""
    result = copy.deepcopy(dict(doc))

    for path, value in fields.items():
        parts = path.split(".")
        parent: Optional[dict] = result
        for part in parts[:-1]:
            child = parent.get(part)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    parent = None
                    break
                child = {}
                parent[part] = child
            parent = child
        if parent is None:
            continue

        leaf = parts[-1]
        if value is DELETE_FIELD:
            parent.pop(leaf, None)
        elif isinstance(value, ArrayUnion):
            current = parent.get(leaf)
            current = list(current) if isinstance(current, list) else []
            for item in value.values:
                if item not in current:
                    current.append(item)
            parent[leaf] = current
        elif isinstance(value, ArrayRemove):
            current = parent.get(leaf)
            current = list(current) if isinstance(current, list) else []
            parent[leaf] = [item for item in current if item not in value.values]
        else:
            parent[leaf] = copy.deepcopy(value)

    return result


# ──────────────────────────────────────────────────────────────────────────────
# Write operations
# ──────────────────────────────────────────────────────────────────────────────

class WriteOp(NamedTuple):
    kind: str  # "set" | "update" | "delete"
    collection: str
    key: str
    fields: Optional[dict] = None
    upsert: bool = False

    @property
    def doc_key(self) -> Key:
        return (self.collection, self.key)


def stage_ops(
    current: Mapping[Key, Optional[dict]],
    ops: Iterable[WriteOp],
) -> dict[Key, Optional[dict]]:
    """Apply ``ops`` in order to a copy of ``current``.

    ``None`` marks a missing (or deleted) document.  Raises ``NotFoundError``
    for a non-upsert update of a missing document, in which case nothing
    should be persisted.
    """
    staged = {k: copy.deepcopy(v) for k, v in current.items()}
    for op in ops:
        existing = staged.get(op.doc_key)
        if op.kind == "set":
            staged[op.doc_key] = copy.deepcopy(op.fields or {})
        elif op.kind == "delete":
            staged[op.doc_key] = None
        elif op.kind == "update":
            if existing is None and not op.upsert:
                raise NotFoundError(op.collection, op.key)
            staged[op.doc_key] = apply_update(existing or {}, op.fields or {})
        else:
            raise ValueError(f"Unknown write op kind {op.kind!r}")
    return staged


class WriteBatch:
    """Collects writes and commits them atomically, once."""

    def __init__(self, store: "DocumentStore", max_operations: int) -> None:
        self._store = store
        self._max_operations = max_operations
        self._ops: list[WriteOp] = []
        self._committed = False

    def set(self, collection: str, key: str, fields: dict) -> "WriteBatch":
        self._ops.append(WriteOp("set", collection, key, dict(fields)))
        return self

    def update(
        self,
        collection: str,
        key: str,
        fields: dict,
        *,
        upsert: bool = False,
    ) -> "WriteBatch":
        self._ops.append(WriteOp("update", collection, key, dict(fields), upsert))
        return self

    def delete(self, collection: str, key: str) -> "WriteBatch":
        self._ops.append(WriteOp("delete", collection, key))
        return self

    def extend(self, ops: Iterable[WriteOp]) -> "WriteBatch":
        self._ops.extend(ops)
        return self

    @property
    def ops(self) -> list[WriteOp]:
        return list(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("WriteBatch has already been committed")
        if len(self._ops) > self._max_operations:
            raise BatchLimitExceededError(
                f"Batch holds {len(self._ops)} operations; "
                f"the store accepts at most {self._max_operations}"
            )
        if self._ops:
            await self._store._commit_ops(list(self._ops))
        # A failed commit persisted nothing and may be retried.
        self._committed = True


class Transaction:
    """Handle passed to a ``transaction`` callback."""

    def __init__(self, snapshot: Mapping[Key, Optional[dict]]) -> None:
        self._snapshot = dict(snapshot)
        self._writes: list[WriteOp] = []

    def _check(self, collection: str, key: str) -> None:
        if (collection, key) not in self._snapshot:
            raise ValueError(
                f"{collection}/{key} is outside the transaction's declared keys"
            )

    def get(self, collection: str, key: str) -> Optional[dict]:
        self._check(collection, key)
        return copy.deepcopy(self._snapshot[(collection, key)])

    def set(self, collection: str, key: str, fields: dict) -> None:
        self._check(collection, key)
        self._writes.append(WriteOp("set", collection, key, dict(fields)))

    def update(
        self,
        collection: str,
        key: str,
        fields: dict,
        *,
        upsert: bool = False,
    ) -> None:
        self._check(collection, key)
        self._writes.append(WriteOp("update", collection, key, dict(fields), upsert))

    def delete(self, collection: str, key: str) -> None:
        self._check(collection, key)
        self._writes.append(WriteOp("delete", collection, key))

    @property
    def writes(self) -> list[WriteOp]:
        return list(self._writes)


# ──────────────────────────────────────────────────────────────────────────────
# Store interface
# ──────────────────────────────────────────────────────────────────────────────

class DocumentStore(ABC):
    """Async document store with per-document and small-batch atomicity."""

    max_batch_operations: int = STORE_BATCH_CEILING

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[dict]:
        """Return the document, or ``None`` when it does not exist."""

    @abstractmethod
    def stream(self, collection: str) -> AsyncIterator[tuple[str, dict]]:
        """Yield ``(key, document)`` for every document in ``collection``."""

    @abstractmethod
    async def transaction(
        self,
        keys: Iterable[Key],
        fn: Callable[[Transaction], Awaitable[T]],
    ) -> T:
        """Run ``fn`` with read-then-write atomicity over ``keys``."""

    @abstractmethod
    async def _commit_ops(self, ops: list[WriteOp]) -> None:
        """Apply ``ops`` atomically."""

    async def set(self, collection: str, key: str, fields: dict) -> None:
        """Full overwrite."""
        await self._commit_ops([WriteOp("set", collection, key, dict(fields))])

    async def update(
        self,
        collection: str,
        key: str,
        fields: dict,
        *,
        upsert: bool = False,
    ) -> None:
        """Atomic merge; raises ``NotFoundError`` for a missing document
        unless ``upsert`` is set."""
        await self._commit_ops(
            [WriteOp("update", collection, key, dict(fields), upsert)]
        )

    async def delete(self, collection: str, key: str) -> None:
        await self._commit_ops([WriteOp("delete", collection, key)])

    def batch(self) -> WriteBatch:
        return WriteBatch(self, self.max_batch_operations)
