#!/usr/bin/env python3
"""
Admin API endpoints (app/routers/admin.py) through FastAPI's TestClient.

The ledger dependency is swapped for the in-memory ledger and sessions are
issued directly, so no Supabase or Gestão Click access is needed.

What it tests:
  1. X-Admin-Token required / expiry
  2. POST /admin/login with a bcrypt hash
  3. POST /admin/cleanup (dry run default, commit, 404, detail cap)
  4. GET  /admin/cleanup analysis + /admin/cleanup/status
  5. POST /admin/sales/import window validation
  6. POST /admin/sales/import-payload + /admin/sales/import/status
  7. 403 on rows of another user
  8. POST /admin/sales/sync/trigger

Usage:
    python3 testes/test_admin_endpoints.py
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import bcrypt
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.config import settings  # noqa: E402
from app.db.ledger import LedgerAuthorizationError  # noqa: E402
from app.main import app  # noqa: E402
from app.models.ledger import TABLES  # noqa: E402
from app.routers import admin  # noqa: E402
from memory_ledger import MemoryLedger  # noqa: E402
from runner import run_suite  # noqa: E402

USER = "user-1"

client = TestClient(app)


def _use_ledger(ledger) -> None:
    app.dependency_overrides[admin.get_store] = lambda: ledger


def _headers(operator_id: str = "op-1") -> dict:
    token = f"token-{operator_id}"
    admin._sessions[token] = {"created": datetime.now(timezone.utc), "operator_id": operator_id}
    return {"X-Admin-Token": token}


def _duplicated_ledger(copies: int = 2) -> MemoryLedger:
    ledger = MemoryLedger()
    ledger.seed(TABLES["users"], id=USER, email="dono@loja.com")
    wallet = ledger.seed(TABLES["wallets"], user_id=USER, name="Caixa", type="GESTAO_CLICK")
    for _ in range(copies):
        ledger.seed(TABLES["transactions"], user_id=USER, wallet_id=wallet["id"], name="Market",
                    amount=50.0, date="2026-03-05", metadata={"source": {"name": "GESTAO_CLICK"}})
    return ledger


# ── Auth ─────────────────────────────────────────────────────


def test_requires_token():
    assert client.get("/admin/cleanup/status").status_code == 401
    assert client.get("/admin/cleanup/status", headers={"X-Admin-Token": "nope"}).status_code == 401


def test_expired_session_rejected():
    admin._sessions["old"] = {"created": datetime.now(timezone.utc) - timedelta(days=2), "operator_id": "op"}
    resp = client.get("/admin/sales/import/status", headers={"X-Admin-Token": "old"})
    assert resp.status_code == 401
    assert "old" not in admin._sessions


def test_login_checks_bcrypt_hash():
    hashed = bcrypt.hashpw(b"s3nha", bcrypt.gensalt()).decode("utf-8")
    original = admin._get_password_hash
    admin._get_password_hash = lambda: hashed
    try:
        assert client.post("/admin/login", json={"password": "errada"}).status_code == 401
        resp = client.post("/admin/login", json={"password": "s3nha", "operator_id": "op-9"})
    finally:
        admin._get_password_hash = original

    assert resp.status_code == 200
    token = resp.json()["token"]
    assert admin._sessions[token]["operator_id"] == "op-9"


# ── Cleanup ──────────────────────────────────────────────────


def test_cleanup_defaults_to_dry_run():
    ledger = _duplicated_ledger()
    _use_ledger(ledger)

    resp = client.post("/admin/cleanup", json={"user_id": USER}, headers=_headers())
    assert resp.status_code == 200
    body = resp.json()
    assert body["mode"] == "dry_run"
    assert body["transactions"]["removed"] == 1
    assert len(ledger.rows(TABLES["transactions"])) == 2
    assert len(ledger.rows(TABLES["wallets"])) == 1
    [note] = ledger.rows(TABLES["notifications"])
    assert note["title"] == "Sanitização de dados (Simulação)"


def test_cleanup_commit_and_status():
    ledger = _duplicated_ledger()
    _use_ledger(ledger)

    resp = client.post("/admin/cleanup", json={"user_id": USER, "dry_run": False}, headers=_headers("op-7"))
    assert resp.status_code == 200
    assert resp.json()["transactions"]["removed"] == 1
    assert len(ledger.rows(TABLES["transactions"])) == 1
    [note] = ledger.rows(TABLES["notifications"])
    assert note["user_id"] == "op-7"

    status = client.get("/admin/cleanup/status", headers=_headers()).json()
    assert status["user_id"] == USER
    assert status["result"]["mode"] == "commit"


def test_cleanup_analysis_via_get():
    ledger = _duplicated_ledger(copies=3)
    _use_ledger(ledger)
    resp = client.get("/admin/cleanup", params={"user_id": USER}, headers=_headers())
    assert resp.status_code == 200
    assert resp.json()["mode"] == "dry_run"
    assert resp.json()["transactions"]["removed"] == 2
    assert len(ledger.rows(TABLES["transactions"])) == 3


def test_cleanup_unknown_user_is_404():
    _use_ledger(MemoryLedger())
    resp = client.post("/admin/cleanup", json={"user_id": "ghost"}, headers=_headers())
    assert resp.status_code == 404


def test_cleanup_details_are_capped():
    ledger = _duplicated_ledger(copies=6)
    _use_ledger(ledger)
    original = settings.report_details_limit
    settings.report_details_limit = 2
    try:
        body = client.post("/admin/cleanup", json={"user_id": USER}, headers=_headers()).json()
    finally:
        settings.report_details_limit = original

    assert body["transactions"]["removed"] == 5
    assert len(body["transactions"]["details"]) == 2
    assert body["transactions"]["details_total"] == 5


# ── Sales import ─────────────────────────────────────────────


def test_period_import_validates_window():
    _use_ledger(MemoryLedger())
    for start, end in (("2026-02-10", "2026-02-01"), ("2026-01-01", "2026-03-15"), ("ontem", "hoje")):
        resp = client.post("/admin/sales/import", headers=_headers(),
                           json={"user_id": USER, "start_date": start, "end_date": end})
        assert resp.status_code == 400, (start, end, resp.text)


def test_payload_import_and_status():
    ledger = MemoryLedger()
    _use_ledger(ledger)
    sales = [
        {"id": "500", "valor_total": "300.00",
         "pagamentos": [{"pagamento": {"id": "p1", "valor": 150}}, {"pagamento": {"id": "p2", "valor": 150}}]},
        {"id": "501", "valor_total": "300", "numero_parcelas": "3", "pagamentos": []},
    ]

    first = client.post("/admin/sales/import-payload", json={"user_id": USER, "sales": sales}, headers=_headers())
    assert first.status_code == 200
    assert first.json()["imported"] == 2
    assert len(ledger.rows(TABLES["installments"])) == 5

    again = client.post("/admin/sales/import-payload", json={"user_id": USER, "sales": sales}, headers=_headers())
    assert again.json()["skipped"] == 2
    assert len(ledger.rows(TABLES["installments"])) == 5

    status = client.get("/admin/sales/import/status", headers=_headers()).json()
    assert status["user_id"] == USER
    assert status["result"]["skipped"] == 2


class _ForeignLedger(MemoryLedger):
    async def find(self, table, filters=None, order_by=None, desc=False, columns="*"):
        raise LedgerAuthorizationError(f"{table} row belongs to another user")


def test_foreign_rows_are_403():
    _use_ledger(_ForeignLedger())
    resp = client.post("/admin/sales/import-payload", json={"user_id": USER, "sales": [{"id": "1"}]},
                       headers=_headers())
    assert resp.status_code == 403


# ── Background sync ──────────────────────────────────────────


class _FakeSyncer:
    last_sync = "2026-01-01T00:00:00-03:00"
    last_results: list = []

    async def sync_all(self):
        self.last_results = [{"user_id": USER, "status": "synced"}]
        return self.last_results


def test_sync_trigger_uses_registered_syncer():
    original = admin._syncer
    admin.set_syncer(_FakeSyncer())
    try:
        resp = client.post("/admin/sales/sync/trigger", headers=_headers())
    finally:
        admin.set_syncer(original)
    assert resp.status_code == 200
    assert resp.json()["results"] == [{"user_id": USER, "status": "synced"}]


def test_health():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


TESTS = [
    test_requires_token,
    test_expired_session_rejected,
    test_login_checks_bcrypt_hash,
    test_cleanup_defaults_to_dry_run,
    test_cleanup_commit_and_status,
    test_cleanup_analysis_via_get,
    test_cleanup_unknown_user_is_404,
    test_cleanup_details_are_capped,
    test_period_import_validates_window,
    test_payload_import_and_status,
    test_foreign_rows_are_403,
    test_sync_trigger_uses_registered_syncer,
    test_health,
]


if __name__ == "__main__":
    sys.exit(run_suite("Admin endpoints", TESTS))
