"""
Identity keys for ledger rows that lack a reliable primary identity.

- extract_external_id: the Gestão Click id of an imported transaction, when
  one survived in metadata.
- transaction_fingerprint: wallet|day|amount|name fallback key. Heuristic:
  two genuine same-day purchases with equal amount and description collapse
  into one. Kept as-is on purpose until product decides otherwise.
"""
from datetime import datetime, timezone
from typing import Any

from app.services.sale_parser import parse_amount, parse_date

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _path(blob: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(blob, dict):
            return None
        blob = blob.get(key)
    return blob


def extract_external_id(transaction: dict) -> str | None:
    """Return the external id from metadata, or None.

    Lookup order: source.externalId, original.id, source.data.id.
    """
    metadata = transaction.get("metadata")
    if not isinstance(metadata, dict):
        return None

    for path in (("source", "externalId"), ("original", "id"), ("source", "data", "id")):
        value = _path(metadata, *path)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def day_key(value: Any) -> str:
    """UTC calendar day (YYYY-MM-DD) of a date value; '' when unreadable."""
    parsed = parse_date(value)
    if parsed is None:
        return ""
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d")


def transaction_fingerprint(transaction: dict) -> str:
    amount = parse_amount(transaction.get("amount"))
    return "|".join((
        str(transaction.get("wallet_id") or ""),
        day_key(transaction.get("date")),
        f"{amount:.2f}",
        str(transaction.get("name") or ""),
    ))


def normalize_wallet_name(name: str | None) -> str:
    return (name or "").strip().lower()


def created_at(row: dict) -> datetime:
    return parse_date(row.get("created_at")) or _EPOCH


def newest_first(rows: list[dict]) -> list[dict]:
    """Most recently created first; ties broken by id so the order is stable."""
    return sorted(rows, key=lambda r: (created_at(r), str(r.get("id") or "")), reverse=True)
