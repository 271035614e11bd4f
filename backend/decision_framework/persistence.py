"""Document storage for decisions, experiences, explanations and metrics.

Documents are JSON-compatible dicts addressed by ``(collection, id)``.
Every write stamps a server-side ``updated_at``.  Counter increments and
array unions are atomic per document.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import asyncpg

from config import get_pg_conn_str, use_in_memory_store
from decision_framework.errors import DatabaseError, NotFoundError

logger = logging.getLogger(__name__)

DECISIONS = "decisions"
EXPERIENCES = "rl_experiences"
EXPLANATIONS = "explanations"
POLICY_MODELS = "policy_models"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _split_path(field_path: str) -> list[str]:
    parts = [p for p in field_path.split(".") if p]
    if not parts:
        raise ValueError("field_path must not be empty")
    return parts


def _apply_increment(doc: dict[str, Any], field_path: str, amount: float) -> None:
    *parents, leaf = _split_path(field_path)
    node = doc
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    current = node.get(leaf, 0)
    if not isinstance(current, (int, float)) or isinstance(current, bool):
        current = 0
    node[leaf] = current + amount


def _apply_array_union(doc: dict[str, Any], field: str, values: list[Any]) -> None:
    existing = doc.get(field)
    if not isinstance(existing, list):
        existing = []
    for value in values:
        if value not in existing:
            existing.append(value)
    doc[field] = existing


def _matches(doc: dict[str, Any], equals: dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in equals.items())


class DocumentStore(Protocol):
    """Storage interface used by every component.

    Allows different implementations (PostgreSQL, in-memory) without
    coupling the engines to a backend.
    """

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        ...

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        ...

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Merge *fields* into an existing document.

        Raises:
            NotFoundError: If the document does not exist
        """
        ...

    async def query(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        ...

    async def increment(self, collection: str, doc_id: str, field_path: str, amount: float = 1) -> None:
        ...

    async def array_union(self, collection: str, doc_id: str, field: str, values: list[Any]) -> None:
        ...


class InMemoryDocumentStore:
    """Process-local DocumentStore.

    Used for tests and single-process deployments.  Returned documents are
    deep copies so callers can never mutate stored state in place.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        async with self._lock:
            doc = copy.deepcopy(data)
            doc["updated_at"] = _now_iso()
            self._collection(collection)[doc_id] = doc

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        async with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                raise NotFoundError(
                    f"Document {collection}/{doc_id} not found",
                    function="update",
                    context={"collection": collection, "doc_id": doc_id},
                )
            doc.update(copy.deepcopy(fields))
            doc["updated_at"] = _now_iso()

    async def query(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._collection(collection).values() if _matches(doc, equals)]

    async def increment(self, collection: str, doc_id: str, field_path: str, amount: float = 1) -> None:
        async with self._lock:
            doc = self._collection(collection).setdefault(doc_id, {})
            _apply_increment(doc, field_path, amount)
            doc["updated_at"] = _now_iso()

    async def array_union(self, collection: str, doc_id: str, field: str, values: list[Any]) -> None:
        async with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                raise NotFoundError(
                    f"Document {collection}/{doc_id} not found",
                    function="array_union",
                    context={"collection": collection, "doc_id": doc_id},
                )
            _apply_array_union(doc, field, values)
            doc["updated_at"] = _now_iso()


class PostgresDocumentStore:
    """PostgreSQL implementation of DocumentStore.

    Every collection shares one JSONB table keyed by ``(collection, id)``.

    Expected table schema:
    CREATE TABLE documents (
        collection TEXT NOT NULL,
        id TEXT NOT NULL,
        data JSONB NOT NULL,
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (collection, id)
    );
    """

    def __init__(self, conn_string: str, table: str = "documents") -> None:
        self.conn_string = conn_string
        self.table = table
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        """Get or create the connection pool, creating the table on first use."""
        async with self._pool_lock:
            if self._pool is None:
                try:
                    pool = await asyncpg.create_pool(self.conn_string, min_size=1, max_size=5)
                except (OSError, asyncpg.PostgresError) as exc:
                    raise DatabaseError(
                        "Failed to connect to PostgreSQL",
                        function="_get_pool",
                        original_error=exc,
                    ) from exc
                await self._ensure_table(pool)
                self._pool = pool
        return self._pool

    async def _ensure_table(self, pool: asyncpg.Pool) -> None:
        async with pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data JSONB NOT NULL,
                    updated_at TIMESTAMPTZ DEFAULT NOW(),
                    PRIMARY KEY (collection, id)
                );
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_data ON {self.table} USING GIN (data);
            """)
        logger.debug("Ensured %s table exists", self.table)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @staticmethod
    def _encode(data: dict[str, Any]) -> str:
        return json.dumps(data, default=str)

    def _db_error(self, op: str, collection: str, doc_id: str | None, exc: Exception) -> DatabaseError:
        logger.error("Document store %s failed for %s/%s: %s", op, collection, doc_id, exc)
        return DatabaseError(
            f"Document store {op} failed",
            function=op,
            context={"collection": collection, "doc_id": doc_id},
            original_error=exc,
        )

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT data FROM {self.table} WHERE collection = $1 AND id = $2",
                    collection,
                    doc_id,
                )
        except asyncpg.PostgresError as exc:
            raise self._db_error("get", collection, doc_id, exc) from exc
        return json.loads(row["data"]) if row else None

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        doc = {**data, "updated_at": _now_iso()}
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self.table} (collection, id, data, updated_at)
                    VALUES ($1, $2, $3::jsonb, NOW())
                    ON CONFLICT (collection, id) DO UPDATE
                    SET data = EXCLUDED.data, updated_at = NOW()
                    """,
                    collection,
                    doc_id,
                    self._encode(doc),
                )
        except asyncpg.PostgresError as exc:
            raise self._db_error("set", collection, doc_id, exc) from exc

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        patch = {**fields, "updated_at": _now_iso()}
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.execute(
                    f"""
                    UPDATE {self.table}
                    SET data = data || $3::jsonb, updated_at = NOW()
                    WHERE collection = $1 AND id = $2
                    """,
                    collection,
                    doc_id,
                    self._encode(patch),
                )
        except asyncpg.PostgresError as exc:
            raise self._db_error("update", collection, doc_id, exc) from exc
        if status.endswith(" 0"):
            raise NotFoundError(
                f"Document {collection}/{doc_id} not found",
                function="update",
                context={"collection": collection, "doc_id": doc_id},
            )

    async def query(self, collection: str, **equals: Any) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT data FROM {self.table} WHERE collection = $1 AND data @> $2::jsonb",
                    collection,
                    self._encode(equals),
                )
        except asyncpg.PostgresError as exc:
            raise self._db_error("query", collection, None, exc) from exc
        return [json.loads(row["data"]) for row in rows]

    async def _mutate(self, op: str, collection: str, doc_id: str, mutate, create: bool) -> None:
        """Read-modify-write one document under a row lock."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"SELECT data FROM {self.table} WHERE collection = $1 AND id = $2 FOR UPDATE",
                        collection,
                        doc_id,
                    )
                    if row is None and not create:
                        raise NotFoundError(
                            f"Document {collection}/{doc_id} not found",
                            function=op,
                            context={"collection": collection, "doc_id": doc_id},
                        )
                    doc = json.loads(row["data"]) if row else {}
                    mutate(doc)
                    doc["updated_at"] = _now_iso()
                    await conn.execute(
                        f"""
                        INSERT INTO {self.table} (collection, id, data, updated_at)
                        VALUES ($1, $2, $3::jsonb, NOW())
                        ON CONFLICT (collection, id) DO UPDATE
                        SET data = EXCLUDED.data, updated_at = NOW()
                        """,
                        collection,
                        doc_id,
                        self._encode(doc),
                    )
        except asyncpg.PostgresError as exc:
            raise self._db_error(op, collection, doc_id, exc) from exc

    async def increment(self, collection: str, doc_id: str, field_path: str, amount: float = 1) -> None:
        await self._mutate(
            "increment", collection, doc_id, lambda doc: _apply_increment(doc, field_path, amount), create=True
        )

    async def array_union(self, collection: str, doc_id: str, field: str, values: list[Any]) -> None:
        await self._mutate(
            "array_union", collection, doc_id, lambda doc: _apply_array_union(doc, field, values), create=False
        )


def create_store() -> DocumentStore:
    """Build the store selected by configuration."""
    if use_in_memory_store():
        logger.info("Using in-memory document store")
        return InMemoryDocumentStore()
    return PostgresDocumentStore(get_pg_conn_str())
