import pytest

import store as store_module
from errors import NotFound, PreconditionFailed
from store import DELETE_FIELD, DESCENDING, DocumentSnapshot, MemoryDocumentStore, MongoDocumentStore, split_path


@pytest.mark.asyncio
async def test_merge_set_keeps_untouched_fields_and_deletes_sentinel():
    store = MemoryDocumentStore()
    store.put("users/u1", {"role": "main_user", "email": "a@b.com", "phone": "+1555"})

    batch = store.batch()
    batch.set("users/u1", {"email": "new@b.com", "phone": DELETE_FIELD}, merge=True)
    await batch.commit()

    doc = await store.get("users/u1")
    assert doc.data == {"role": "main_user", "email": "new@b.com"}


@pytest.mark.asyncio
async def test_plain_set_replaces_document():
    store = MemoryDocumentStore()
    store.put("users/u1", {"role": "main_user", "email": "a@b.com"})
    batch = store.batch()
    batch.set("users/u1", {"email": "c@d.com"})
    await batch.commit()
    assert store.peek("users/u1") == {"email": "c@d.com"}


@pytest.mark.asyncio
async def test_update_requires_existing_doc_and_preconditions():
    store = MemoryDocumentStore()
    store.put("invites/i1", {"status": "accepted"})

    batch = store.batch()
    batch.update("invites/missing", {"status": "accepted"})
    with pytest.raises(NotFound):
        await batch.commit()

    batch = store.batch()
    batch.update("invites/i1", {"status": "accepted"}, expect={"status": "pending"})
    with pytest.raises(PreconditionFailed):
        await batch.commit()


@pytest.mark.asyncio
async def test_failed_batch_leaves_no_partial_writes():
    store = MemoryDocumentStore()
    store.put("users/u1", {"latest": "old"})
    store.put("emergencyContacts/t1", {"last": "old"})

    batch = store.batch()
    batch.set("users/u1", {"latest": "new"}, merge=True)
    batch.set("emergencyContacts/t1", {"last": "new"}, merge=True)
    batch.update("emergencyContacts/gone", {"last": "new"})
    with pytest.raises(NotFound):
        await batch.commit()

    assert store.peek("users/u1") == {"latest": "old"}
    assert store.peek("emergencyContacts/t1") == {"last": "old"}


@pytest.mark.asyncio
async def test_interrupted_commit_is_invisible(monkeypatch):
    store = MemoryDocumentStore()
    store.put("a/1", {"v": 0})
    store.put("a/2", {"v": 0})
    real_apply = store_module.apply_write
    calls = []

    def flaky(current, write):
        calls.append(write.path)
        if len(calls) == 2:
            raise RuntimeError("connection reset")
        return real_apply(current, write)

    monkeypatch.setattr(store_module, "apply_write", flaky)
    batch = store.batch()
    batch.set("a/1", {"v": 1})
    batch.set("a/2", {"v": 1})
    with pytest.raises(RuntimeError):
        await batch.commit()

    assert store.peek("a/1") == {"v": 0}
    assert store.peek("a/2") == {"v": 0}


@pytest.mark.asyncio
async def test_find_filters_orders_and_limits():
    store = MemoryDocumentStore()
    store.put("users/u1/contactVoiceMessages/m1", {"from": "ec1", "createdAt": 1})
    store.put("users/u1/contactVoiceMessages/m2", {"from": "ec1", "createdAt": 3})
    store.put("users/u1/contactVoiceMessages/m3", {"from": "ec2", "createdAt": 5})
    store.put("users/u2/contactVoiceMessages/m4", {"from": "ec1", "createdAt": 9})

    docs = await store.find(
        "users/u1/contactVoiceMessages", where={"from": "ec1"}, order_by=("createdAt", DESCENDING), limit=1
    )
    assert [d.id for d in docs] == ["m2"]

    group = await store.find_group("contactVoiceMessages", where={"from": "ec1"})
    assert sorted(d.path for d in group) == [
        "users/u1/contactVoiceMessages/m1",
        "users/u1/contactVoiceMessages/m2",
        "users/u2/contactVoiceMessages/m4",
    ]


@pytest.mark.asyncio
async def test_reads_are_copies():
    store = MemoryDocumentStore()
    store.put("users/u1", {"tags": ["a"]})
    doc = await store.get("users/u1")
    doc.data["tags"].append("b")
    assert store.peek("users/u1") == {"tags": ["a"]}


def test_snapshot_paths():
    snap = DocumentSnapshot("users/u1/emergency_contact/ec1", {})
    assert snap.id == "ec1"
    assert snap.collection_path == "users/u1/emergency_contact"
    assert snap.parent_path == "users/u1"
    assert not DocumentSnapshot("users/u9").exists
    with pytest.raises(ValueError):
        split_path("users")


@pytest.mark.asyncio
async def test_batch_commits_once():
    store = MemoryDocumentStore()
    batch = store.batch()
    batch.set("users/u1", {"a": 1})
    assert await batch.commit() == 1
    with pytest.raises(RuntimeError):
        await batch.commit()


class RecordingCursor:
    def __init__(self, docs):
        self.docs = docs
        self.lengths = []

    def sort(self, name, direction):
        return self

    def limit(self, n):
        return self

    async def to_list(self, length=None):
        self.lengths.append(length)
        return [dict(d) for d in (self.docs if length is None else self.docs[:length])]


class RecordingCollection:
    def __init__(self, docs):
        self.cursor = RecordingCursor(docs)
        self.queries = []

    def find(self, query):
        self.queries.append(query)
        return self.cursor


class FakeDatabase:
    def __init__(self, collection):
        self.collection = collection

    def __getitem__(self, name):
        return self.collection


@pytest.mark.asyncio
async def test_mongo_unbounded_query_returns_every_row():
    rows = [{"_id": f"emergencyContacts/c{i}", "_parent": "", "status": "ACTIVE"} for i in range(1500)]
    collection = RecordingCollection(rows)
    client = {"lifesignal": FakeDatabase(collection)}
    store = MongoDocumentStore(client, "lifesignal")

    docs = await store.find("emergencyContacts", where={"status": "ACTIVE"})

    assert len(docs) == 1500
    assert collection.cursor.lengths == [None]
    assert collection.queries == [{"_parent": "", "status": "ACTIVE"}]

    await store.find("emergencyContacts", limit=5)
    assert collection.cursor.lengths[-1] == 5


def test_mongo_update_doc_turns_sentinel_into_unset():
    batch = MemoryDocumentStore().batch()
    batch.set("users/u1", {"email": "a@b.com", "phone": DELETE_FIELD}, merge=True)
    (write,) = batch._writes

    assert write.data["phone"] is DELETE_FIELD
    assert MongoDocumentStore._update_doc(write.data, "") == {
        "$set": {"email": "a@b.com", "_parent": ""},
        "$unset": {"phone": ""},
    }
