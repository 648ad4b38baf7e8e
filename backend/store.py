"""
Document store used by the contact, routing and invite modules.

Documents are addressed by slash-separated paths the same way the mobile and
web clients address them (`users/{uid}/emergency_contact/{ecUid}`). Two
backends share one contract:

- MongoDocumentStore: Motor/MongoDB. Each collection id maps onto one Mongo
  collection; `_id` holds the full document path and `_parent` the owning
  document path, so both per-parent and collection-group queries are plain
  equality filters. Batches commit inside a multi-document transaction
  (requires a replica set).
- MemoryDocumentStore: in-process, for tests and local development.

`set(..., merge=True)` replaces each given top-level field whole and leaves
the others untouched. DELETE_FIELD removes a field.
"""
import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from errors import NotFound, PreconditionFailed

logger = logging.getLogger(__name__)

ASCENDING = 1
DESCENDING = -1


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"

    # batches deep-copy their data; the sentinel keeps its identity
    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


DELETE_FIELD = _DeleteField()


def split_path(path: str) -> Tuple[str, str]:
    """Return (collection_path, doc_id) for a document path."""
    parts = [p for p in (path or "").strip("/").split("/") if p]
    if not parts or len(parts) % 2 != 0:
        raise ValueError(f"Not a document path: {path!r}")
    return "/".join(parts[:-1]), parts[-1]


def parent_document(collection_path: str) -> str:
    """Owning document path of a collection ('' for top-level collections)."""
    parts = [p for p in collection_path.strip("/").split("/") if p]
    if not parts or len(parts) % 2 != 1:
        raise ValueError(f"Not a collection path: {collection_path!r}")
    return "/".join(parts[:-1])


def collection_id(collection_path: str) -> str:
    return collection_path.strip("/").split("/")[-1]


@dataclass
class DocumentSnapshot:
    path: str
    data: Optional[Dict[str, Any]] = None

    @property
    def id(self) -> str:
        return split_path(self.path)[1]

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def collection_path(self) -> str:
        return split_path(self.path)[0]

    @property
    def parent_path(self) -> str:
        return parent_document(self.collection_path)

    def get(self, name: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(name, default)


@dataclass
class Write:
    kind: str  # set, update, delete
    path: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False
    expect: Optional[Dict[str, Any]] = None


class WriteBatch:
    """Collects writes and applies them atomically on commit()."""

    def __init__(self, store):
        self._store = store
        self._writes: List[Write] = []
        self._committed = False

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        split_path(path)
        self._writes.append(Write("set", path, copy.deepcopy(data), merge=merge))
        return self

    def update(self, path: str, data: Dict[str, Any], expect: Optional[Dict[str, Any]] = None) -> "WriteBatch":
        """Merge fields into an existing document; `expect` adds field preconditions."""
        split_path(path)
        self._writes.append(Write("update", path, copy.deepcopy(data), expect=dict(expect or {})))
        return self

    def delete(self, path: str) -> "WriteBatch":
        split_path(path)
        self._writes.append(Write("delete", path))
        return self

    @property
    def paths(self) -> List[str]:
        return [w.path for w in self._writes]

    def __len__(self):
        return len(self._writes)

    async def commit(self) -> int:
        if self._committed:
            raise RuntimeError("Batch already committed")
        self._committed = True
        if not self._writes:
            return 0
        await self._store.commit(self._writes)
        return len(self._writes)


def _merge_fields(current: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(current)
    for key, value in data.items():
        if value is DELETE_FIELD:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def apply_write(current: Optional[Dict[str, Any]], write: Write) -> Optional[Dict[str, Any]]:
    """Result of applying one write to a document's current data (None = missing)."""
    if write.kind == "delete":
        return None
    if write.kind == "set":
        base = current if (write.merge and current is not None) else {}
        return _merge_fields(base, write.data)
    if write.kind == "update":
        if current is None:
            raise NotFound(f"Document not found: {write.path}")
        for key, expected in (write.expect or {}).items():
            if current.get(key) != expected:
                raise PreconditionFailed(f"{write.path}: expected {key}={expected!r}")
        return _merge_fields(current, write.data)
    raise ValueError(f"Unknown write kind {write.kind!r}")


def _sort_key(value: Any):
    # None sorts before everything else regardless of type
    return (value is not None, value)


class MemoryDocumentStore:
    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def put(self, path: str, data: Dict[str, Any]) -> None:
        """Synchronous seeding helper."""
        split_path(path)
        self._docs[path] = copy.deepcopy(data)

    def peek(self, path: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def get(self, path: str) -> DocumentSnapshot:
        split_path(path)
        return DocumentSnapshot(path, self.peek(path))

    async def find(self, collection_path: str, where: Optional[Dict[str, Any]] = None,
                   order_by: Optional[Tuple[str, int]] = None, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        parent_document(collection_path)
        target = collection_path.strip("/")
        candidates = [p for p in self._docs if split_path(p)[0] == target]
        return self._select(candidates, where, order_by, limit)

    async def find_group(self, group_id: str, where: Optional[Dict[str, Any]] = None,
                         order_by: Optional[Tuple[str, int]] = None, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        candidates = [p for p in self._docs if collection_id(split_path(p)[0]) == group_id]
        return self._select(candidates, where, order_by, limit)

    def _select(self, paths, where, order_by, limit) -> List[DocumentSnapshot]:
        where = where or {}
        rows = [
            (p, self._docs[p]) for p in sorted(paths)
            if all(self._docs[p].get(k) == v for k, v in where.items())
        ]
        if order_by:
            name, direction = order_by
            rows.sort(key=lambda row: _sort_key(row[1].get(name)), reverse=direction == DESCENDING)
        if limit:
            rows = rows[:limit]
        return [DocumentSnapshot(p, copy.deepcopy(d)) for p, d in rows]

    async def commit(self, writes: List[Write]) -> None:
        async with self._lock:
            staged = dict(self._docs)
            for write in writes:
                result = apply_write(staged.get(write.path), write)
                if result is None:
                    staged.pop(write.path, None)
                else:
                    staged[write.path] = result
            self._docs = staged


class MongoDocumentStore:
    def __init__(self, client, db_name: str):
        self.client = client
        self.db = client[db_name]

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def _collection_for(self, collection_path: str):
        return self.db[collection_id(collection_path)]

    @staticmethod
    def _to_snapshot(doc: dict) -> DocumentSnapshot:
        path = doc.pop("_id")
        doc.pop("_parent", None)
        return DocumentSnapshot(path, doc)

    async def get(self, path: str) -> DocumentSnapshot:
        coll_path, _ = split_path(path)
        doc = await self._collection_for(coll_path).find_one({"_id": path})
        if doc is None:
            return DocumentSnapshot(path, None)
        return self._to_snapshot(doc)

    async def _run_query(self, collection, query, order_by, limit) -> List[DocumentSnapshot]:
        cursor = collection.find(query)
        if order_by:
            cursor = cursor.sort(order_by[0], order_by[1])
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit or None)
        return [self._to_snapshot(d) for d in docs]

    async def find(self, collection_path: str, where: Optional[Dict[str, Any]] = None,
                   order_by: Optional[Tuple[str, int]] = None, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        query = {"_parent": parent_document(collection_path), **(where or {})}
        return await self._run_query(self._collection_for(collection_path), query, order_by, limit)

    async def find_group(self, group_id: str, where: Optional[Dict[str, Any]] = None,
                         order_by: Optional[Tuple[str, int]] = None, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        return await self._run_query(self.db[group_id], dict(where or {}), order_by, limit)

    @staticmethod
    def _update_doc(data: Dict[str, Any], parent: str) -> dict:
        to_set = {k: v for k, v in data.items() if v is not DELETE_FIELD}
        to_set["_parent"] = parent
        update = {"$set": to_set}
        to_unset = {k: "" for k, v in data.items() if v is DELETE_FIELD}
        if to_unset:
            update["$unset"] = to_unset
        return update

    async def _apply(self, writes: List[Write], session) -> None:
        for write in writes:
            coll_path, _ = split_path(write.path)
            collection = self._collection_for(coll_path)
            parent = parent_document(coll_path)
            if write.kind == "delete":
                await collection.delete_one({"_id": write.path}, session=session)
            elif write.kind == "set" and not write.merge:
                doc = {k: v for k, v in write.data.items() if v is not DELETE_FIELD}
                doc.update({"_id": write.path, "_parent": parent})
                await collection.replace_one({"_id": write.path}, doc, upsert=True, session=session)
            elif write.kind == "set":
                await collection.update_one(
                    {"_id": write.path}, self._update_doc(write.data, parent), upsert=True, session=session
                )
            else:
                query = {"_id": write.path, **(write.expect or {})}
                result = await collection.update_one(query, self._update_doc(write.data, parent), session=session)
                if result.matched_count == 0:
                    existing = await collection.find_one({"_id": write.path}, {"_id": 1}, session=session)
                    if existing is None:
                        raise NotFound(f"Document not found: {write.path}")
                    raise PreconditionFailed(f"{write.path}: expected {write.expect!r}")

    async def commit(self, writes: List[Write]) -> None:
        async with await self.client.start_session() as session:
            async def callback(s):
                await self._apply(writes, s)

            await session.with_transaction(callback)
