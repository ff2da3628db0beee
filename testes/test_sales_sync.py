#!/usr/bin/env python3
"""
Background SalesSyncer (app/services/sales_sync.py) and the maintenance CLI
(app/cli.py), with the import / cleanup entry points swapped for fakes, plus a
check that every Settings field is read somewhere in app/.

Usage:
    python3 testes/test_sales_sync.py
"""
import asyncio
import json
import sys
import tempfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app import cli  # noqa: E402
from app.config import Settings  # noqa: E402
from app.services import sales_sync  # noqa: E402
from app.services.sales_sync import SalesSyncer  # noqa: E402
from runner import run_suite  # noqa: E402


def test_sync_all_imports_each_user_and_isolates_failures():
    calls = []

    async def fake_import(user_id, start_date, end_date):
        calls.append((user_id, start_date, end_date))
        if user_id == "broken":
            raise RuntimeError("ledger down")
        return {"imported": 2, "skipped": 1, "errors": 0, "partial": user_id == "slow",
                "fetch_error": "HTTP 503" if user_id == "slow" else None}

    original = sales_sync.import_sales_for_period
    sales_sync.import_sales_for_period = fake_import
    try:
        syncer = SalesSyncer(lookback_days=3, user_ids=["u1", "broken", "slow"])
        results = asyncio.run(syncer.sync_all())
    finally:
        sales_sync.import_sales_for_period = original

    assert [c[0] for c in calls] == ["u1", "broken", "slow"]
    start, end = calls[0][1], calls[0][2]
    assert len(start) == 10 and len(end) == 10 and start < end
    assert [r["status"] for r in results] == ["synced", "error", "partial"]
    assert results[1]["error"] == "ledger down"
    assert results[2]["error"] == "HTTP 503"
    assert syncer.last_results == results
    assert syncer.last_sync is not None


def test_configured_user_ids_from_settings():
    original = sales_sync.settings.sales_sync_user_ids
    sales_sync.settings.sales_sync_user_ids = " u1, ,u2 "
    try:
        assert SalesSyncer().user_ids == ["u1", "u2"]
    finally:
        sales_sync.settings.sales_sync_user_ids = original


def test_every_setting_is_read_by_the_app():
    sources = "\n".join(p.read_text(encoding="utf-8") for p in (PROJECT_ROOT / "app").rglob("*.py"))
    unused = [name for name in Settings.model_fields if f"settings.{name}" not in sources]
    assert unused == [], unused


def test_cli_load_sales_file_accepts_both_shapes():
    with tempfile.TemporaryDirectory() as tmp:
        plain = Path(tmp) / "plain.json"
        plain.write_text(json.dumps([{"id": 1}]), encoding="utf-8")
        wrapped = Path(tmp) / "wrapped.json"
        wrapped.write_text(json.dumps({"data": [{"id": 2}], "meta": {}}), encoding="utf-8")
        assert cli.load_sales_file(plain) == [{"id": 1}]
        assert cli.load_sales_file(wrapped) == [{"id": 2}]


def test_cli_import_file_exit_code():
    received = {}

    async def fake_import_sales(user_id, sales, store=None):
        received["user_id"] = user_id
        received["sales"] = sales
        return {"imported": 1, "skipped": 0, "errors": 1,
                "details": [{"id": "x", "status": "error", "error": "boom"}]}

    original = cli.import_sales
    cli.import_sales = fake_import_sales
    try:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "vendas.json"
            path.write_text(json.dumps([{"id": "500"}, {"id": "x"}]), encoding="utf-8")
            code = cli.main(["import-file", "--user-id", "u1", str(path)])
    finally:
        cli.import_sales = original

    assert code == 1
    assert received == {"user_id": "u1", "sales": [{"id": "500"}, {"id": "x"}]}


def test_cli_cleanup_defaults_to_dry_run():
    seen = {}

    async def fake_run_cleanup(user_id, dry_run=True, operator_id=None, store=None):
        seen.update(user_id=user_id, dry_run=dry_run, operator_id=operator_id)
        empty = {"removed": 0, "kept": 1, "errors": 0, "details": []}
        return {"mode": "dry_run", "user": {"id": user_id, "email": None},
                "wallets": empty, "transactions": empty}

    original = cli.run_cleanup
    cli.run_cleanup = fake_run_cleanup
    try:
        assert cli.main(["cleanup", "--user-id", "u1"]) == 0
        assert seen == {"user_id": "u1", "dry_run": True, "operator_id": None}
        cli.main(["cleanup", "--user-id", "u1", "--commit", "--operator-id", "op"])
        assert seen["dry_run"] is False and seen["operator_id"] == "op"
    finally:
        cli.run_cleanup = original


TESTS = [
    test_sync_all_imports_each_user_and_isolates_failures,
    test_configured_user_ids_from_settings,
    test_every_setting_is_read_by_the_app,
    test_cli_load_sales_file_accepts_both_shapes,
    test_cli_import_file_exit_code,
    test_cli_cleanup_defaults_to_dry_run,
]


if __name__ == "__main__":
    sys.exit(run_suite("Sales sync + CLI", TESTS))
