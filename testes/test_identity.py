#!/usr/bin/env python3
"""
Identity keys used by the duplicate cleanup (app/services/identity.py).

Usage:
    python3 testes/test_identity.py
"""
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.models.ledger import SaleMetadata  # noqa: E402
from app.services.identity import (  # noqa: E402
    day_key,
    extract_external_id,
    newest_first,
    normalize_wallet_name,
    transaction_fingerprint,
)
from runner import run_suite  # noqa: E402


def test_external_id_lookup_order():
    assert extract_external_id({"metadata": {"source": {"externalId": "e1"}, "original": {"id": "o1"}}}) == "e1"
    assert extract_external_id({"metadata": {"original": {"id": 42}, "source": {"data": {"id": "d1"}}}}) == "42"
    assert extract_external_id({"metadata": {"source": {"name": "GESTAO_CLICK", "data": {"id": "d1"}}}}) == "d1"


def test_external_id_absent():
    assert extract_external_id({"metadata": {"source": {"name": "GESTAO_CLICK"}}}) is None
    assert extract_external_id({"metadata": {"source": {"externalId": "  "}}}) is None
    assert extract_external_id({"metadata": "not a dict"}) is None
    assert extract_external_id({}) is None


def test_fingerprint_shape():
    tx = {"wallet_id": "w1", "date": "2026-03-05T18:00:00Z", "amount": 50, "name": "Market"}
    assert transaction_fingerprint(tx) == "w1|2026-03-05|50.00|Market"


def test_fingerprint_uses_utc_day():
    late = {"wallet_id": "w1", "date": "2026-03-05T23:30:00-03:00", "amount": "50", "name": "Market"}
    assert day_key(late["date"]) == "2026-03-06"
    assert transaction_fingerprint(late) == "w1|2026-03-06|50.00|Market"


def test_fingerprint_same_day_different_time_collides():
    a = {"wallet_id": "w1", "date": "2026-03-05T09:00:00Z", "amount": 50.0, "name": "Market"}
    b = {"wallet_id": "w1", "date": "2026-03-05T17:00:00Z", "amount": "50.00", "name": "Market"}
    assert transaction_fingerprint(a) == transaction_fingerprint(b)


def test_normalize_wallet_name():
    assert normalize_wallet_name("Caixa") == normalize_wallet_name("caixa ")
    assert normalize_wallet_name(None) == ""


def test_newest_first_is_deterministic():
    rows = [
        {"id": "a", "created_at": "2026-01-01T00:00:00Z"},
        {"id": "c", "created_at": "2026-01-02T00:00:00Z"},
        {"id": "b", "created_at": "2026-01-02T00:00:00Z"},
        {"id": "z"},
    ]
    assert [r["id"] for r in newest_first(rows)] == ["c", "b", "a", "z"]


def test_sale_metadata_reads_legacy_blob():
    legacy = {"id": "500", "valor_total": "300", "processedPaymentIds": ["p1", "p2"]}
    meta = SaleMetadata.from_blob(legacy)
    assert meta.processed_payment_ids == {"p1", "p2"}
    assert meta.processed_attachment_ids == set()
    assert meta.raw_source_payload == {"id": "500", "valor_total": "300"}


def test_sale_metadata_merge_is_union():
    meta = SaleMetadata(processed_payment_ids={"p1"}, raw_source_payload={"v": 1})
    merged = meta.merged_with({"p2"}, {"a1"})
    assert merged.to_blob() == {
        "processedPaymentIds": ["p1", "p2"],
        "processedAttachmentIds": ["a1"],
        "rawSourcePayload": {"v": 1},
    }
    assert SaleMetadata.from_blob(merged.to_blob()) == merged


TESTS = [
    test_external_id_lookup_order,
    test_external_id_absent,
    test_fingerprint_shape,
    test_fingerprint_uses_utc_day,
    test_fingerprint_same_day_different_time_collides,
    test_normalize_wallet_name,
    test_newest_first_is_deterministic,
    test_sale_metadata_reads_legacy_blob,
    test_sale_metadata_merge_is_union,
]


if __name__ == "__main__":
    sys.exit(run_suite("Identity keys", TESTS))
