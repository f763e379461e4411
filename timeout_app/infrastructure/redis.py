"""Redis-backed document store.

Each document is a JSON string under ``{prefix}{collection}:{doc_id}``, and
each collection keeps a set of its ids under ``{prefix}{collection}:_ids``
for listing. Transactions use optimistic concurrency: every key read in a
transaction is WATCHed and the buffered writes are sent in one MULTI/EXEC.
If a watched key changed in between, EXEC fails with ``WatchError`` and
the transaction is retried by ``DocumentStore.run_transaction``.

For Cloud Run with Memorystore:
- Set REDIS_HOST to the Memorystore instance IP
- Set REDIS_PASSWORD if authentication is enabled
- Ensure VPC connector is configured for Cloud Run
"""
import json
import redis
from typing import Any, Dict, List, Optional

from timeout_app.core.config import Settings
from timeout_app.core.logging import get_logger
from timeout_app.infrastructure.store import DocumentStore, Transaction, TransactionConflict

logger = get_logger(__name__)


def create_redis_client(settings: Settings) -> redis.Redis:
    """Create a pooled Redis client from settings.

    Args:
        settings: Application settings (REDIS_HOST, REDIS_PORT, ...)

    Returns:
        Redis client with decoded string responses

    Raises:
        redis.ConnectionError: If the server cannot be reached
    """
    logger.info(f"Initializing Redis connection pool: {settings.redis_host}:{settings.redis_port}")

    pool = redis.ConnectionPool(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=settings.redis_password,
        decode_responses=True,
        max_connections=50,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    client = redis.Redis(connection_pool=pool)

    try:
        client.ping()
    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
        raise

    logger.info("Redis connection established successfully")
    return client


class RedisTransaction(Transaction):
    def __init__(self, store: "RedisDocumentStore"):
        super().__init__()
        self._store = store
        self._pipe = store.redis.pipeline(transaction=True)

    def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        key = self._store._make_key(collection, doc_id)
        self._pipe.watch(key)
        raw = self._pipe.get(key)
        return json.loads(raw) if raw else None

    def commit(self):
        if not self._writes:
            return

        self._pipe.multi()
        for (collection, doc_id), document in self._writes.items():
            key = self._store._make_key(collection, doc_id)
            index_key = self._store._index_key(collection)
            if document is None:
                self._pipe.delete(key)
                self._pipe.srem(index_key, doc_id)
            else:
                self._pipe.set(key, json.dumps(document))
                self._pipe.sadd(index_key, doc_id)

        try:
            self._pipe.execute()
        except redis.WatchError as e:
            raise TransactionConflict("watched document changed before EXEC") from e

    def close(self):
        self._pipe.reset()


class RedisDocumentStore(DocumentStore):
    """Document store on a Redis client.

    Example:
        >>> store = RedisDocumentStore(create_redis_client(settings), key_prefix="timeout:")
        >>> store.run_transaction(lambda txn: txn.get("studyRooms", "abc"))
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: str = "timeout:",
        max_attempts: int = 5,
        backoff_seconds: float = 0.05,
    ):
        super().__init__(max_attempts=max_attempts, backoff_seconds=backoff_seconds)
        self.redis = redis_client
        self.key_prefix = key_prefix

        logger.info(f"RedisDocumentStore initialized with prefix '{key_prefix}'")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisDocumentStore":
        return cls(
            create_redis_client(settings),
            key_prefix=settings.redis_key_prefix,
            max_attempts=settings.transaction_max_attempts,
            backoff_seconds=settings.transaction_backoff_seconds,
        )

    def _make_key(self, collection: str, doc_id: str) -> str:
        return f"{self.key_prefix}{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self.key_prefix}{collection}:_ids"

    def transaction(self) -> RedisTransaction:
        return RedisTransaction(self)

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.get(self._make_key(collection, doc_id))
        return json.loads(raw) if raw else None

    def list_documents(self, collection: str) -> List[Dict[str, Any]]:
        ids = sorted(self.redis.smembers(self._index_key(collection)))
        if not ids:
            return []
        raw_documents = self.redis.mget([self._make_key(collection, doc_id) for doc_id in ids])
        return [json.loads(raw) for raw in raw_documents if raw]

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
