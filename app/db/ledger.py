"""
Ledger record store over Supabase (PostgREST).

Every table of the financial ledger (sales_records, installments, attachments,
sales_transactions, transactions, wallets, notifications, users) is reached
through LedgerStore. supabase-py is synchronous, so each call runs in a worker
thread under a deadline; a call that overruns raises LedgerTimeoutError and
the caller treats it like any other per-item persistence failure.

Filters are plain dicts:
  {"user_id": "u1"}                          -> eq
  {"id": ["a", "b"]}                         -> in
  {"external_id": None}                      -> is null
  {"metadata->source->>name": "GESTAO_CLICK"} -> JSON path eq
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from app.config import settings
from app.db.supabase import get_db

logger = logging.getLogger(__name__)

# PostgREST caps a single response; larger reads are paged.
_PAGE_SIZE = 1000


class LedgerError(Exception):
    """A ledger read or write failed."""


class LedgerTimeoutError(LedgerError):
    """A ledger call exceeded its deadline."""


class LedgerAuthorizationError(Exception):
    """A record does not belong to the user the operation runs for."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _apply_filters(query, filters: dict | None):
    for column, value in (filters or {}).items():
        if value is None:
            query = query.is_(column, "null")
        elif isinstance(value, (list, tuple, set)):
            query = query.in_(column, list(value))
        else:
            query = query.eq(column, value)
    return query


class LedgerStore:
    def __init__(self, client=None, timeout: float | None = None):
        self._client = client
        self._timeout = timeout if timeout is not None else settings.ledger_call_timeout_seconds

    @property
    def client(self):
        if self._client is None:
            self._client = get_db()
        return self._client

    async def _run(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise LedgerTimeoutError(f"{label}: no response after {self._timeout:.0f}s") from exc
        except LedgerError:
            raise
        except Exception as exc:
            raise LedgerError(f"{label}: {exc}") from exc

    async def find(
        self,
        table: str,
        filters: dict | None = None,
        order_by: str | None = None,
        desc: bool = False,
        columns: str = "*",
    ) -> list[dict]:
        def _query():
            rows: list[dict] = []
            start = 0
            while True:
                query = _apply_filters(self.client.table(table).select(columns), filters)
                # .range() pages need a total order; id breaks ties.
                query = query.order(order_by or "id", desc=desc)
                if order_by and order_by != "id":
                    query = query.order("id")
                result = query.range(start, start + _PAGE_SIZE - 1).execute()
                page = result.data or []
                rows.extend(page)
                if len(page) < _PAGE_SIZE:
                    return rows
                start += _PAGE_SIZE

        return await self._run(f"find {table}", _query)

    async def get(self, table: str, row_id: str) -> dict | None:
        def _query():
            result = self.client.table(table).select("*").eq("id", row_id).limit(1).execute()
            return result.data[0] if result.data else None

        return await self._run(f"get {table}/{row_id}", _query)

    async def exists(self, table: str, row_id: str) -> bool:
        def _query():
            result = self.client.table(table).select("id").eq("id", row_id).limit(1).execute()
            return bool(result.data)

        return await self._run(f"exists {table}/{row_id}", _query)

    async def count(self, table: str, filters: dict | None = None) -> int:
        def _query():
            query = _apply_filters(self.client.table(table).select("id", count="exact"), filters)
            result = query.limit(1).execute()
            return result.count or 0

        return await self._run(f"count {table}", _query)

    async def create(self, table: str, row: dict) -> dict:
        payload = dict(row)
        payload.setdefault("id", str(uuid.uuid4()))
        stamp = now_iso()
        payload.setdefault("created_at", stamp)
        payload.setdefault("updated_at", stamp)

        def _query():
            result = self.client.table(table).insert(payload).execute()
            return result.data[0] if result.data else payload

        return await self._run(f"create {table}", _query)

    async def update(self, table: str, row_id: str, changes: dict) -> dict | None:
        payload = {**changes, "updated_at": now_iso()}

        def _query():
            result = self.client.table(table).update(payload).eq("id", row_id).execute()
            return result.data[0] if result.data else None

        return await self._run(f"update {table}/{row_id}", _query)

    async def update_where(self, table: str, filters: dict, changes: dict) -> int:
        """Apply the same change to every matching row. Returns rows touched."""
        if not filters:
            raise ValueError("update_where requires at least one filter")
        payload = {**changes, "updated_at": now_iso()}

        def _query():
            query = _apply_filters(self.client.table(table).update(payload), filters)
            result = query.execute()
            return len(result.data or [])

        return await self._run(f"update_where {table}", _query)

    async def delete(self, table: str, row_id: str) -> None:
        def _query():
            self.client.table(table).delete().eq("id", row_id).execute()

        await self._run(f"delete {table}/{row_id}", _query)


_ledger: LedgerStore | None = None


def get_ledger() -> LedgerStore:
    global _ledger
    if _ledger is None:
        _ledger = LedgerStore()
    return _ledger
