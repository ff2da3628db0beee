"""
In-memory stand-in for app.db.ledger.LedgerStore used by the test scripts.

Same async interface (find / get / exists / count / create / update /
update_where / delete) and the same filter dialect, including JSON paths
like "metadata->source->>name". created_at comes from a fake clock that
advances one second per insert, so "newest" is deterministic.

Failures can be injected per (operation, table):
    ledger.fail_on("create", "installments", LedgerError("boom"))
    ledger.fail_on("delete", "transactions", LedgerError("x"), when=lambda row_id: row_id == "t2")
"""
import copy
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _json_path(row: dict, column: str) -> Any:
    parts = re.split(r"->>?", column)
    value: Any = row
    for part in parts:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    if column.count("->>") and value is not None:
        return str(value)
    return value


def _matches(row: dict, filters: dict | None) -> bool:
    for column, expected in (filters or {}).items():
        value = _json_path(row, column) if "->" in column else row.get(column)
        if expected is None:
            if value is not None:
                return False
        elif isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class MemoryLedger:
    def __init__(self):
        self.tables: dict[str, dict[str, dict]] = {}
        self._ticks = 0
        self._faults: list[tuple[str, str, Exception, Any]] = []
        self.writes = 0

    # ── test helpers ─────────────────────────────────────────

    def _next_stamp(self) -> str:
        self._ticks += 1
        return (_BASE_TIME + timedelta(seconds=self._ticks)).isoformat()

    def seed(self, table: str, **row) -> dict:
        """Insert a row synchronously (no fault injection, not counted as a write)."""
        row.setdefault("id", str(uuid.uuid4()))
        stamp = self._next_stamp()
        row.setdefault("created_at", stamp)
        row.setdefault("updated_at", row["created_at"])
        self.tables.setdefault(table, {})[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def rows(self, table: str, **filters) -> list[dict]:
        return [copy.deepcopy(r) for r in self.tables.get(table, {}).values() if _matches(r, filters)]

    def counts(self) -> dict[str, int]:
        return {table: len(rows) for table, rows in self.tables.items()}

    def fail_on(self, operation: str, table: str, exc: Exception, when=None) -> None:
        self._faults.append((operation, table, exc, when))

    def clear_faults(self) -> None:
        self._faults.clear()

    def _check_fault(self, operation: str, table: str, subject: Any = None) -> None:
        for op, tbl, exc, when in self._faults:
            if op == operation and tbl == table and (when is None or when(subject)):
                raise exc

    # ── LedgerStore interface ────────────────────────────────

    async def find(self, table, filters=None, order_by=None, desc=False, columns="*"):
        self._check_fault("find", table, filters)
        rows = [copy.deepcopy(r) for r in self.tables.get(table, {}).values() if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=desc)
        return rows

    async def get(self, table, row_id):
        self._check_fault("get", table, row_id)
        row = self.tables.get(table, {}).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def exists(self, table, row_id):
        return row_id in self.tables.get(table, {})

    async def count(self, table, filters=None):
        self._check_fault("count", table, filters)
        return sum(1 for r in self.tables.get(table, {}).values() if _matches(r, filters))

    async def create(self, table, row):
        self._check_fault("create", table, row)
        payload = copy.deepcopy(row)
        payload.setdefault("id", str(uuid.uuid4()))
        stamp = self._next_stamp()
        payload.setdefault("created_at", stamp)
        payload.setdefault("updated_at", stamp)
        self.tables.setdefault(table, {})[payload["id"]] = payload
        self.writes += 1
        return copy.deepcopy(payload)

    async def update(self, table, row_id, changes):
        self._check_fault("update", table, row_id)
        row = self.tables.get(table, {}).get(row_id)
        if row is None:
            return None
        row.update(copy.deepcopy(changes))
        row["updated_at"] = self._next_stamp()
        self.writes += 1
        return copy.deepcopy(row)

    async def update_where(self, table, filters, changes):
        if not filters:
            raise ValueError("update_where requires at least one filter")
        self._check_fault("update_where", table, filters)
        touched = 0
        for row in self.tables.get(table, {}).values():
            if _matches(row, filters):
                row.update(copy.deepcopy(changes))
                touched += 1
        self.writes += touched
        return touched

    async def delete(self, table, row_id):
        self._check_fault("delete", table, row_id)
        if self.tables.get(table, {}).pop(row_id, None) is not None:
            self.writes += 1
