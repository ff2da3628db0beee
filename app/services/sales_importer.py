"""
Gestão Click sales import: external sales -> sales_records + installments +
attachments, exactly once per external sale.

Pipeline (import_sales):
  1. Load every GESTAO_CLICK sales_record of the user once and index it by
     external_id, with the payment / attachment ids already materialized
     (kept in metadata.processedPaymentIds / processedAttachmentIds).
  2. For each incoming sale, in input order:
       - known external_id: only payments / attachments whose ids are not
         processed yet are created; nothing new -> skipped. The new ids are
         merged into the stored metadata (read current row, union, write).
       - unknown (or no id at all, legacy rows): create the record, then
         every payment as an installment, or synthesized installments when
         the sale only declares numero_parcelas, then every attachment.
  3. A failure on one sale is counted and reported; the batch goes on.
     LedgerAuthorizationError (row of another user) aborts the whole call.

Idempotency: replaying the same batch, or an overlapping one, creates
nothing that already exists. Safe to resume after a crash mid-batch.
"""
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from app.config import settings
from app.db.ledger import (
    LedgerAuthorizationError,
    LedgerError,
    LedgerStore,
    get_ledger,
    now_iso,
)
from app.models.ledger import (
    GLOBAL_WALLET_NAME,
    INSTALLMENT_PENDING,
    SOURCE_GESTAO_CLICK,
    TABLES,
    WALLET_TYPE_GESTAO_CLICK,
    ExternalAttachment,
    ExternalPayment,
    ExternalSale,
    SaleMetadata,
)
from app.services.gestao_click_api import GestaoClickClient
from app.services.sale_parser import parse_sale
from app.services.sync_cache import get_sync_cache

logger = logging.getLogger(__name__)

_last_import_result: dict = {"ran_at": None, "user_id": None, "result": None}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str:
    return (value or datetime.now(timezone.utc)).isoformat()


def plan_installments(
    total: float,
    count: int,
    first_due: datetime,
    interval_days: int = 0,
) -> list[tuple[int, float, datetime]]:
    """Split `total` into `count` installments: (number, amount, due_date).

    Each installment is round(total / count, 2); the last one absorbs the
    rounding remainder so the amounts always add up to the total.
    """
    if count <= 0:
        return []
    share = round(total / count, 2)
    plan = []
    for number in range(1, count + 1):
        amount = share if number < count else round(total - share * (count - 1), 2)
        due = first_due + timedelta(days=(number - 1) * interval_days)
        plan.append((number, amount, due))
    return plan


def _detail(sale: ExternalSale, status: str, new_payments: int = 0, new_attachments: int = 0) -> dict:
    return {
        "id": sale.external_id,
        "code": sale.code,
        "customer": sale.customer_name,
        "amount": sale.total_amount,
        "status": status,
        "new_payments": new_payments,
        "new_attachments": new_attachments,
    }


async def _load_sale_index(store: LedgerStore, user_id: str) -> dict[str, dict]:
    rows = await store.find(
        TABLES["sales"],
        {"user_id": user_id, "source": SOURCE_GESTAO_CLICK},
        columns="id, user_id, external_id, metadata",
    )
    index: dict[str, dict] = {}
    for row in rows:
        if str(row.get("user_id")) != str(user_id):
            raise LedgerAuthorizationError(
                f"sales_record {row.get('id')} belongs to another user"
            )
        external_id = row.get("external_id")
        if external_id is None or str(external_id) == "":
            continue
        index.setdefault(str(external_id), {
            "id": row["id"],
            "metadata": SaleMetadata.from_blob(row.get("metadata")),
        })
    return index


async def _merge_sale_metadata(
    store: LedgerStore,
    user_id: str,
    record_id: str,
    payment_ids: set[str],
    attachment_ids: set[str],
    raw_payload: dict[str, Any],
) -> SaleMetadata:
    """Union new processed ids into the stored metadata (never overwrite)."""
    current = await store.get(TABLES["sales"], record_id)
    if current is None:
        raise LedgerError(f"sales_record {record_id} not found while merging metadata")
    if str(current.get("user_id")) != str(user_id):
        raise LedgerAuthorizationError(f"sales_record {record_id} belongs to another user")

    merged = SaleMetadata.from_blob(current.get("metadata")).merged_with(
        payment_ids, attachment_ids, raw_payload
    )
    await store.update(TABLES["sales"], record_id, {"metadata": merged.to_blob()})
    return merged


# ---------------------------------------------------------------------------
# Child records
# ---------------------------------------------------------------------------


async def _create_installment(
    store: LedgerStore,
    user_id: str,
    record_id: str,
    sale: ExternalSale,
    payment: ExternalPayment,
) -> dict:
    return await store.create(TABLES["installments"], {
        "sales_record_id": record_id,
        "user_id": user_id,
        "external_id": payment.external_id,
        "number": payment.number,
        "amount": payment.amount,
        "due_date": _iso(payment.due_date or sale.date),
        "status": payment.status,
        "metadata": {
            "rawSourcePayload": payment.raw,
            "paymentMethod": payment.payment_method,
            "saleExternalId": sale.external_id,
        },
    })


async def _synthesize_installments(
    store: LedgerStore,
    user_id: str,
    record_id: str,
    sale: ExternalSale,
) -> int:
    first_due = sale.first_installment_date or sale.date or datetime.now(timezone.utc)
    plan = plan_installments(
        sale.total_amount, sale.installment_count, first_due, sale.installment_interval_days
    )
    for number, amount, due in plan:
        await store.create(TABLES["installments"], {
            "sales_record_id": record_id,
            "user_id": user_id,
            "external_id": None,
            "number": number,
            "amount": amount,
            "due_date": due.isoformat(),
            "status": INSTALLMENT_PENDING,
            "metadata": {
                "synthesized": True,
                "installmentCount": sale.installment_count,
                "saleExternalId": sale.external_id,
            },
        })
    return len(plan)


async def _global_wallet_id(store: LedgerStore, user_id: str, run_state: dict) -> str:
    wallet_id = run_state.get("global_wallet_id")
    if wallet_id:
        return wallet_id

    rows = await store.find(TABLES["wallets"], {
        "user_id": user_id,
        "type": WALLET_TYPE_GESTAO_CLICK,
        "name": GLOBAL_WALLET_NAME,
    })
    if rows:
        wallet_id = rows[0]["id"]
    else:
        wallet = await store.create(TABLES["wallets"], {
            "user_id": user_id,
            "name": GLOBAL_WALLET_NAME,
            "type": WALLET_TYPE_GESTAO_CLICK,
            "balance": 0,
            "metadata": {"info": "Carteira para integração com Gestão Click"},
        })
        wallet_id = wallet["id"]
        logger.info("sales_import %s: created wallet %s (%s)", user_id, GLOBAL_WALLET_NAME, wallet_id)

    run_state["global_wallet_id"] = wallet_id
    return wallet_id


async def _attachment_host(
    store: LedgerStore,
    user_id: str,
    record_id: str,
    sale: ExternalSale,
    run_state: dict,
) -> str:
    """Transaction hosting the sale's attachments; placeholder created once."""
    links = await store.find(TABLES["sale_links"], {"sales_record_id": record_id})
    if links:
        return links[0]["transaction_id"]

    wallet_id = await _global_wallet_id(store, user_id, run_state)
    tx = await store.create(TABLES["transactions"], {
        "user_id": user_id,
        "wallet_id": wallet_id,
        "name": f"Anexo de venda ({sale.code})",
        "amount": 0,
        "date": _iso(sale.date),
        "type": "DEPOSIT",
        "status": "PENDING",
        "metadata": {
            "source": {"name": SOURCE_GESTAO_CLICK},
            "isAttachmentHolder": True,
            "salesRecordId": record_id,
        },
    })
    await store.create(TABLES["sale_links"], {
        "sales_record_id": record_id,
        "transaction_id": tx["id"],
    })
    logger.debug("sales_import %s: placeholder transaction %s for sale %s", user_id, tx["id"], sale.external_id)
    return tx["id"]


async def _create_attachment(
    store: LedgerStore,
    user_id: str,
    record_id: str,
    transaction_id: str,
    sale: ExternalSale,
    attachment: ExternalAttachment,
) -> dict:
    return await store.create(TABLES["attachments"], {
        "user_id": user_id,
        "transaction_id": transaction_id,
        "name": attachment.name,
        "file_key": attachment.external_id or f"gc-anexo-{uuid.uuid4().hex}",
        "file_url": attachment.url,
        "file_type": attachment.mime_type,
        "file_size": attachment.size,
        "metadata": {
            "rawSourcePayload": attachment.raw,
            "saleExternalId": sale.external_id,
            "salesRecordId": record_id,
        },
    })


async def _written_children(store: LedgerStore, record_id: str) -> tuple[set[str], set[str]]:
    """External ids of installments / attachments already stored for a sale.

    A write that failed or timed out after committing leaves a child whose id
    never reached the metadata; replays consult these rows before creating.
    """
    installments = await store.find(
        TABLES["installments"], {"sales_record_id": record_id}, columns="id, external_id"
    )
    attachments = await store.find(
        TABLES["attachments"], {"metadata->>salesRecordId": record_id}, columns="id, file_key"
    )
    return (
        {str(row["external_id"]) for row in installments if row.get("external_id")},
        {str(row["file_key"]) for row in attachments if row.get("file_key")},
    )


async def _materialize(
    store: LedgerStore,
    user_id: str,
    record_id: str,
    sale: ExternalSale,
    payments: list[ExternalPayment],
    attachments: list[ExternalAttachment],
    payment_ids: set[str],
    attachment_ids: set[str],
    run_state: dict,
    written: tuple[set[str], set[str]] | None = None,
) -> SaleMetadata | None:
    """Create installments then attachments, merging processed ids after each kind.

    Children whose external id is already in `written` are not created again.
    """
    written_payments, written_attachments = written or (set(), set())
    merged = None
    if payments:
        for payment in payments:
            if payment.external_id in written_payments:
                continue
            await _create_installment(store, user_id, record_id, sale, payment)
            if payment.external_id:
                written_payments.add(payment.external_id)
        merged = await _merge_sale_metadata(store, user_id, record_id, payment_ids, set(), sale.raw)

    if attachments:
        host_id = None
        for attachment in attachments:
            if attachment.external_id in written_attachments:
                continue
            if host_id is None:
                host_id = await _attachment_host(store, user_id, record_id, sale, run_state)
            await _create_attachment(store, user_id, record_id, host_id, sale, attachment)
            if attachment.external_id:
                written_attachments.add(attachment.external_id)
        merged = await _merge_sale_metadata(store, user_id, record_id, set(), attachment_ids, sale.raw)
    return merged


# ---------------------------------------------------------------------------
# Per-sale paths
# ---------------------------------------------------------------------------


async def _create_sale(store: LedgerStore, user_id: str, sale: ExternalSale, run_state: dict) -> tuple[dict, dict]:
    record = await store.create(TABLES["sales"], {
        "user_id": user_id,
        "external_id": sale.external_id,
        "code": sale.code,
        "date": _iso(sale.date),
        "total_amount": sale.total_amount,
        "net_amount": sale.net_amount,
        "status": sale.status,
        "customer_name": sale.customer_name,
        "store_name": sale.store_name,
        "source": SOURCE_GESTAO_CLICK,
        "metadata": SaleMetadata(raw_source_payload=sale.raw).to_blob(),
    })
    record_id = record["id"]

    synthesized = 0
    if not sale.payments and sale.installment_count > 0:
        synthesized = await _synthesize_installments(store, user_id, record_id, sale)

    merged = await _materialize(
        store, user_id, record_id, sale, sale.payments, sale.attachments,
        sale.payment_ids, sale.attachment_ids, run_state,
    )
    entry = {"id": record_id, "metadata": merged or SaleMetadata(raw_source_payload=sale.raw)}

    logger.info(
        "sales_import %s: sale %s imported as %s (%d payments, %d synthesized, %d attachments)",
        user_id, sale.external_id, record_id, len(sale.payments), synthesized, len(sale.attachments),
    )
    detail = _detail(sale, "imported", len(sale.payments) or synthesized, len(sale.attachments))
    detail["record_id"] = record_id
    return detail, entry


async def _extend_sale(store: LedgerStore, user_id: str, sale: ExternalSale, known: dict, run_state: dict) -> dict:
    processed: SaleMetadata = known["metadata"]
    new_payment_ids = sale.payment_ids - processed.processed_payment_ids
    new_attachment_ids = sale.attachment_ids - processed.processed_attachment_ids

    if not new_payment_ids and not new_attachment_ids:
        logger.debug("sales_import %s: sale %s unchanged, skipping", user_id, sale.external_id)
        detail = _detail(sale, "skipped")
        detail["record_id"] = known["id"]
        return detail

    new_payments = [p for p in sale.payments if p.external_id in new_payment_ids]
    new_attachments = [a for a in sale.attachments if a.external_id in new_attachment_ids]
    written = await _written_children(store, known["id"])
    created_payments = len(new_payment_ids - written[0])
    created_attachments = len(new_attachment_ids - written[1])

    merged = await _materialize(
        store, user_id, known["id"], sale, new_payments, new_attachments,
        new_payment_ids, new_attachment_ids, run_state, written,
    )
    if merged is not None:
        known["metadata"] = merged

    logger.info(
        "sales_import %s: sale %s extended (+%d payments, +%d attachments)",
        user_id, sale.external_id, created_payments, created_attachments,
    )
    detail = _detail(sale, "extended", created_payments, created_attachments)
    detail["record_id"] = known["id"]
    return detail



# ---------------------------------------------------------------------------
# Public interface
# ---------------------------------------------------------------------------


async def import_sales(user_id: str, external_sales: list, store: LedgerStore | None = None) -> dict:
    """Merge a batch of raw Gestão Click sales into the user's ledger.

    Returns {imported, skipped, errors, details}. `imported` counts new and
    extended sales, `skipped` sales that brought nothing new.
    """
    store = store or get_ledger()
    result = {"imported": 0, "skipped": 0, "errors": 0, "details": []}

    index = await _load_sale_index(store, user_id)
    logger.info(
        "sales_import %s: %d incoming sales, %d already in ledger",
        user_id, len(external_sales), len(index),
    )

    run_state: dict = {}
    for raw in external_sales:
        raw_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            sale = parse_sale(raw)
            known = index.get(sale.external_id) if sale.external_id else None
            if known is not None:
                detail = await _extend_sale(store, user_id, sale, known, run_state)
            else:
                detail, entry = await _create_sale(store, user_id, sale, run_state)
                if sale.external_id:
                    index[sale.external_id] = entry
        except LedgerAuthorizationError:
            raise
        except Exception as exc:
            result["errors"] += 1
            result["details"].append({
                "id": raw_id,
                "code": raw.get("codigo") if isinstance(raw, dict) else None,
                "customer": raw.get("nome_cliente") if isinstance(raw, dict) else None,
                "amount": raw.get("valor_total") if isinstance(raw, dict) else None,
                "status": "error",
                "new_payments": 0,
                "new_attachments": 0,
                "error": f"{type(exc).__name__}: {exc}",
            })
            logger.error("sales_import %s: sale %s failed: %s", user_id, raw_id, exc, exc_info=True)
            continue

        if detail["status"] == "skipped":
            result["skipped"] += 1
        else:
            result["imported"] += 1
        result["details"].append(detail)

    logger.info(
        "sales_import %s: imported=%d skipped=%d errors=%d",
        user_id, result["imported"], result["skipped"], result["errors"],
    )
    return result


def validate_window(start_date: str, end_date: str, max_days: int | None = None) -> tuple[date, date]:
    """Parse YYYY-MM-DD bounds; raise ValueError on bad format, order or length."""
    max_days = max_days or settings.import_max_days
    try:
        start = date.fromisoformat(start_date)
        end = date.fromisoformat(end_date)
    except (TypeError, ValueError) as exc:
        raise ValueError("Dates must use the YYYY-MM-DD format") from exc
    if start > end:
        raise ValueError("start_date must not be after end_date")
    if (end - start).days > max_days:
        suggested = (start + timedelta(days=max_days)).isoformat()
        raise ValueError(f"Window longer than {max_days} days; use end_date <= {suggested}")
    return start, end


async def import_sales_for_period(
    user_id: str,
    start_date: str,
    end_date: str,
    filters: dict | None = None,
    refresh: bool = False,
    client: GestaoClickClient | None = None,
    store: LedgerStore | None = None,
) -> dict:
    """Fetch the user's sales for a window from Gestão Click and import them.

    A source failure after some pages were read still imports those sales;
    the result then carries partial=True and fetch_error.
    """
    validate_window(start_date, end_date)
    cache = get_sync_cache()
    if refresh:
        cache.invalidate_user(user_id)
    client = client or GestaoClickClient(cache=cache)

    fetched = await client.fetch_sales(start_date, end_date, filters, user_id=user_id)
    result = await import_sales(user_id, fetched["sales"], store)
    result.update({
        "start_date": start_date,
        "end_date": end_date,
        "fetched": len(fetched["sales"]),
        "pages": fetched["pages"],
        "cached": fetched.get("cached", False),
        "partial": fetched["error"] is not None,
        "fetch_error": fetched["error"],
    })

    record_import_result(user_id, result)
    return result


def record_import_result(user_id: str, result: dict) -> None:
    _last_import_result["ran_at"] = now_iso()
    _last_import_result["user_id"] = user_id
    _last_import_result["result"] = {k: v for k, v in result.items() if k != "details"}


def get_last_import_result() -> dict:
    """In-memory summary of the last import run (details omitted)."""
    return _last_import_result
