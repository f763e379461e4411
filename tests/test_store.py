"""Tests for the document store adapters and field operations."""
import json
import pytest
import redis
from unittest.mock import Mock

from timeout_app.core.errors import InternalError, NotFound
from timeout_app.infrastructure.redis import RedisDocumentStore
from timeout_app.infrastructure.store import (
    DELETE_FIELD,
    ArrayRemove,
    ArrayUnion,
    DocumentExists,
    Increment,
    InMemoryDocumentStore,
    apply_field_updates,
)


class TestFieldUpdates:

    def test_dotted_paths_and_operations(self):
        document = {"count": 1, "members": ["a"], "details": {"a": {"active": True}}}

        updated = apply_field_updates(document, {
            "count": Increment(-1),
            "members": ArrayUnion("a", "b"),
            "details.a.active": False,
            "details.b": {"active": True},
        })

        assert updated == {
            "count": 0,
            "members": ["a", "b"],
            "details": {"a": {"active": False}, "b": {"active": True}},
        }
        assert document["details"]["a"]["active"] is True

    def test_remove_and_delete(self):
        document = {"members": ["a", "b", "a"], "details": {"a": 1, "b": 2}}

        updated = apply_field_updates(document, {
            "members": ArrayRemove("a"),
            "details.a": DELETE_FIELD,
            "missing.path": DELETE_FIELD,
        })

        assert updated == {"members": ["b"], "details": {"b": 2}}

    def test_increment_missing_field(self):
        assert apply_field_updates({}, {"stats.count": Increment(2)}) == {"stats": {"count": 2}}


class TestInMemoryStore:

    def test_transaction_sees_own_writes(self, store):
        def fn(txn):
            txn.create("rooms", "r1", {"count": 0})
            txn.update("rooms", "r1", {"count": Increment(1)})
            return txn.get("rooms", "r1")

        assert store.run_transaction(fn) == {"count": 1}
        assert store.get("rooms", "r1") == {"count": 1}

    def test_create_existing_and_update_missing(self, store):
        store.create("rooms", "r1", {"count": 0})

        with pytest.raises(DocumentExists):
            store.create("rooms", "r1", {"count": 5})
        with pytest.raises(NotFound):
            store.update("rooms", "missing", {"count": 1})

    def test_failed_callback_writes_nothing(self, store):
        store.create("rooms", "r1", {"count": 0})

        def fn(txn):
            txn.update("rooms", "r1", {"count": Increment(1)})
            raise NotFound("abort")

        with pytest.raises(NotFound):
            store.run_transaction(fn)
        assert store.get("rooms", "r1") == {"count": 0}

    def test_conflict_is_retried_against_fresh_state(self, store):
        store.create("rooms", "r1", {"count": 0})
        attempts = []

        def fn(txn):
            current = txn.get("rooms", "r1")
            attempts.append(current["count"])
            if len(attempts) == 1:
                # Concurrent writer commits between our read and commit
                store.update("rooms", "r1", {"count": Increment(10)})
            txn.set("rooms", "r1", {"count": current["count"] + 1})

        store.run_transaction(fn)

        assert attempts == [0, 10]
        assert store.get("rooms", "r1") == {"count": 11}

    def test_gives_up_after_max_attempts(self):
        store = InMemoryDocumentStore(max_attempts=3, backoff_seconds=0)
        store.create("rooms", "r1", {"count": 0})
        calls = []

        def fn(txn):
            calls.append(1)
            txn.get("rooms", "r1")
            store.update("rooms", "r1", {"count": Increment(1)})
            txn.update("rooms", "r1", {"count": 0})

        with pytest.raises(InternalError):
            store.run_transaction(fn)
        assert len(calls) == 3

    def test_list_documents_by_collection(self, store):
        store.create("rooms", "r1", {"id": "r1"})
        store.create("classrooms", "c1", {"id": "c1"})

        assert store.list_documents("rooms") == [{"id": "r1"}]

    def test_new_ids_are_unique(self, store):
        assert len({store.new_id() for _ in range(50)}) == 50


@pytest.fixture
def redis_client():
    client = Mock()
    pipe = Mock()
    client.pipeline.return_value = pipe
    pipe.get.return_value = json.dumps({"count": 1})
    return client


class TestRedisStore:

    def test_watch_conflict_is_retried(self, redis_client):
        pipe = redis_client.pipeline.return_value
        pipe.execute.side_effect = [redis.WatchError(), [True, 1]]
        store = RedisDocumentStore(redis_client, key_prefix="t:", backoff_seconds=0)

        store.run_transaction(lambda txn: txn.update("rooms", "r1", {"count": Increment(1)}))

        assert pipe.execute.call_count == 2
        pipe.watch.assert_called_with("t:rooms:r1")
        pipe.set.assert_called_with("t:rooms:r1", json.dumps({"count": 2}))
        pipe.sadd.assert_called_with("t:rooms:_ids", "r1")
        assert pipe.reset.call_count == 2

    def test_persistent_conflict_surfaces_internal_error(self, redis_client):
        pipe = redis_client.pipeline.return_value
        pipe.execute.side_effect = redis.WatchError()
        store = RedisDocumentStore(redis_client, max_attempts=3, backoff_seconds=0)

        with pytest.raises(InternalError):
            store.run_transaction(lambda txn: txn.update("rooms", "r1", {"count": 5}))
        assert pipe.execute.call_count == 3

    def test_read_only_transaction_does_not_exec(self, redis_client):
        pipe = redis_client.pipeline.return_value
        store = RedisDocumentStore(redis_client)

        assert store.run_transaction(lambda txn: txn.get("rooms", "r1")) == {"count": 1}
        pipe.multi.assert_not_called()
        pipe.execute.assert_not_called()

    def test_delete_removes_from_index(self, redis_client):
        pipe = redis_client.pipeline.return_value
        pipe.execute.return_value = [1, 1]
        store = RedisDocumentStore(redis_client, key_prefix="t:")

        store.run_transaction(lambda txn: txn.delete("rooms", "r1"))

        pipe.delete.assert_called_once_with("t:rooms:r1")
        pipe.srem.assert_called_once_with("t:rooms:_ids", "r1")

    def test_list_documents(self, redis_client):
        redis_client.smembers.return_value = {"b", "a"}
        redis_client.mget.return_value = [json.dumps({"id": "a"}), None]
        store = RedisDocumentStore(redis_client, key_prefix="t:")

        assert store.list_documents("rooms") == [{"id": "a"}]
        redis_client.mget.assert_called_once_with(["t:rooms:a", "t:rooms:b"])

    def test_ping_failure_is_reported(self, redis_client):
        redis_client.ping.side_effect = redis.ConnectionError("down")

        assert RedisDocumentStore(redis_client).ping() is False
