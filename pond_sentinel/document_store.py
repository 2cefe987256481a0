"""Generic persisted-document store.

Findings, snoozes, logs and daily aggregates all live in the same
key/value-of-JSON abstraction:

    get(collection, doc_id)              -> dict | None
    set / set_merge / update             last-write-wins per document
    transaction(collection, doc_id, fn)  atomic read-modify-write
    list(collection, order_by)           ordered snapshot
    subscribe(collection, callback)      snapshot now and after every write

Supports two backends:
    - InMemoryDocumentStore  ephemeral, for dev/testing
    - SupabaseDocumentStore  persistent, PostgREST over httpx

Every write goes through ``transaction`` so both back ends share a single
concurrency primitive. Subscriptions fan out writes made through this
process; a second process sharing the database sees them on its next read.

Table schema (create via Supabase SQL editor):

    CREATE TABLE IF NOT EXISTS documents (
        collection  TEXT NOT NULL,
        id          TEXT NOT NULL,
        data        JSONB NOT NULL DEFAULT '{}',
        version     INTEGER NOT NULL DEFAULT 1,
        created_at  TIMESTAMPTZ DEFAULT NOW(),
        updated_at  TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (collection, id)
    );
"""

from __future__ import annotations

import copy
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from .errors import NotFoundError, TransientIOError

logger = logging.getLogger("sentinel.document_store")

SnapshotCallback = Callable[[list["Document"]], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


@dataclass
class Document:
    id: str
    data: dict[str, Any]


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Merge ``patch`` into a copy of ``base``; nested dicts merge key by key."""
    out = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _sort_documents(
    docs: list[Document], order_by: str | None, descending: bool
) -> list[Document]:
    if not order_by:
        return docs
    present = [d for d in docs if d.data.get(order_by) is not None]
    missing = [d for d in docs if d.data.get(order_by) is None]
    present.sort(key=lambda d: d.data[order_by], reverse=descending)
    return present + missing


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class DocumentStore(ABC):
    """Abstract document store interface."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[tuple[SnapshotCallback, str | None, bool]]] = {}

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def transaction(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any]],
    ) -> dict[str, Any]:
        """Atomically replace a document with ``fn(current)``.

        ``fn`` receives a private copy (None when absent) and may raise to
        abort without writing.
        """

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool: ...

    @abstractmethod
    async def delete_collection(self, collection: str) -> int: ...

    @abstractmethod
    async def _list(self, collection: str) -> list[Document]: ...

    # -----------------------------------------------------------------
    # Derived operations
    # -----------------------------------------------------------------

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Create or fully overwrite a document."""
        return await self.transaction(collection, doc_id, lambda _: data)

    async def set_merge(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Create or deep-merge into a document; untouched keys survive."""
        return await self.transaction(
            collection, doc_id, lambda cur: deep_merge(cur or {}, data)
        )

    async def update(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Shallow-update fields of an existing document.

        Raises:
            NotFoundError: If the document does not exist.
        """

        def apply(cur: dict[str, Any] | None) -> dict[str, Any]:
            if cur is None:
                raise NotFoundError(f"{collection}/{doc_id} does not exist")
            cur.update(data)
            return cur

        return await self.transaction(collection, doc_id, apply)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Store under a generated id and return it."""
        doc_id = uuid.uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def list(
        self,
        collection: str,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Document]:
        return _sort_documents(await self._list(collection), order_by, descending)

    # -----------------------------------------------------------------
    # Subscriptions
    # -----------------------------------------------------------------

    async def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        order_by: str | None = None,
        descending: bool = False,
    ) -> Unsubscribe:
        """Deliver the current snapshot now and again after every write."""
        entry = (callback, order_by, descending)
        self._subscribers.setdefault(collection, []).append(entry)
        await self._deliver(collection, entry)

        def unsubscribe() -> None:
            subs = self._subscribers.get(collection, [])
            if entry in subs:
                subs.remove(entry)

        return unsubscribe

    async def _deliver(
        self,
        collection: str,
        entry: tuple[SnapshotCallback, str | None, bool],
    ) -> None:
        callback, order_by, descending = entry
        try:
            result = callback(await self.list(collection, order_by, descending))
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Subscriber callback failed for %s", collection)

    async def _notify(self, collection: str) -> None:
        for entry in list(self._subscribers.get(collection, [])):
            await self._deliver(collection, entry)


# ---------------------------------------------------------------------------
# In-memory implementation (dev/testing)
# ---------------------------------------------------------------------------


class InMemoryDocumentStore(DocumentStore):
    """Ephemeral in-memory document store.

    A transaction has no await between its read and its write, so it is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._data.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def transaction(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any]],
    ) -> dict[str, Any]:
        docs = self._data.setdefault(collection, {})
        current = docs.get(doc_id)
        new = fn(copy.deepcopy(current) if current is not None else None)
        docs[doc_id] = copy.deepcopy(new)
        await self._notify(collection)
        return copy.deepcopy(new)

    async def delete(self, collection: str, doc_id: str) -> bool:
        removed = self._data.get(collection, {}).pop(doc_id, None) is not None
        if removed:
            await self._notify(collection)
        return removed

    async def delete_collection(self, collection: str) -> int:
        removed = len(self._data.pop(collection, {}))
        if removed:
            logger.info("InMemoryDocumentStore: cleared %s (%d docs)", collection, removed)
            await self._notify(collection)
        return removed

    async def _list(self, collection: str) -> list[Document]:
        return [
            Document(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._data.get(collection, {}).items()
        ]


# ---------------------------------------------------------------------------
# Supabase implementation (production)
# ---------------------------------------------------------------------------


class SupabaseDocumentStore(DocumentStore):
    """Persistent document store using the Supabase PostgREST API.

    Uses the service role key for server-side access (bypasses RLS).
    Transactions are optimistic: each row carries a ``version`` and a write
    only lands when the version read is still current, otherwise the read
    and ``fn`` are retried.
    """

    TABLE = "documents"

    def __init__(
        self,
        url: str,
        service_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        max_retries: int = 5,
        timeout: float = 10.0,
    ) -> None:
        super().__init__()
        self._base_url = f"{url.rstrip('/')}/rest/v1/{self.TABLE}"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.max_retries = max_retries
        logger.info("SupabaseDocumentStore: initialized with %s", url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        *,
        params: dict[str, str] | None = None,
        json: dict | None = None,
        ok: tuple[int, ...] = (200, 201, 204),
        allow: tuple[int, ...] = (),
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method, self._base_url, headers=self._headers, params=params, json=json
            )
        except httpx.HTTPError as e:
            raise TransientIOError(f"document store unreachable: {e}") from e
        if resp.status_code not in ok and resp.status_code not in allow:
            raise TransientIOError(
                f"document store {method} failed ({resp.status_code}): {resp.text}"
            )
        return resp

    @staticmethod
    def _key(collection: str, doc_id: str) -> dict[str, str]:
        return {"collection": f"eq.{collection}", "id": f"eq.{doc_id}"}

    async def _fetch_row(self, collection: str, doc_id: str) -> dict | None:
        resp = await self._request(
            "GET",
            params={**self._key(collection, doc_id), "select": "id,data,version", "limit": "1"},
        )
        rows = resp.json()
        return rows[0] if rows else None

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = await self._fetch_row(collection, doc_id)
        return row["data"] if row else None

    async def transaction(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any]],
    ) -> dict[str, Any]:
        for attempt in range(self.max_retries):
            row = await self._fetch_row(collection, doc_id)
            current = row["data"] if row else None
            new = fn(copy.deepcopy(current) if current is not None else None)
            now = datetime.now(UTC).isoformat()

            if row is None:
                resp = await self._request(
                    "POST",
                    json={
                        "collection": collection,
                        "id": doc_id,
                        "data": new,
                        "version": 1,
                        "updated_at": now,
                    },
                    allow=(409,),
                )
                if resp.status_code != 409:
                    await self._notify(collection)
                    return new
            else:
                version = row.get("version", 1)
                resp = await self._request(
                    "PATCH",
                    params={**self._key(collection, doc_id), "version": f"eq.{version}"},
                    json={"data": new, "version": version + 1, "updated_at": now},
                )
                if resp.json():
                    await self._notify(collection)
                    return new

            logger.debug(
                "SupabaseDocumentStore: write conflict on %s/%s (attempt %d)",
                collection,
                doc_id,
                attempt + 1,
            )

        raise TransientIOError(
            f"transaction on {collection}/{doc_id} lost {self.max_retries} races"
        )

    async def delete(self, collection: str, doc_id: str) -> bool:
        resp = await self._request("DELETE", params=self._key(collection, doc_id))
        removed = bool(resp.json())
        if removed:
            await self._notify(collection)
        return removed

    async def delete_collection(self, collection: str) -> int:
        resp = await self._request("DELETE", params={"collection": f"eq.{collection}"})
        removed = len(resp.json())
        if removed:
            logger.info("SupabaseDocumentStore: cleared %s (%d docs)", collection, removed)
            await self._notify(collection)
        return removed

    async def _list(self, collection: str) -> list[Document]:
        resp = await self._request(
            "GET",
            params={
                "collection": f"eq.{collection}",
                "select": "id,data",
                "order": "created_at.asc",
            },
        )
        return [Document(id=row["id"], data=row["data"]) for row in resp.json()]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_store(
    supabase_url: str = "",
    supabase_service_key: str = "",
) -> DocumentStore:
    """Create a document store.

    Returns SupabaseDocumentStore if credentials are provided,
    InMemoryDocumentStore otherwise.
    """
    if supabase_url and supabase_service_key:
        store = SupabaseDocumentStore(supabase_url, supabase_service_key)
        logger.info("Using Supabase-backed document store")
        return store

    logger.info("Using in-memory document store (non-persistent)")
    return InMemoryDocumentStore()
