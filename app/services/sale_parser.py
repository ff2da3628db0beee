"""
Normalization of Gestão Click (Betel Tecnologia) sale payloads.

The API is inconsistent about key names, wraps nested items differently
between endpoints and sends numbers as strings with either separator. All of
that is absorbed here: callers only ever see ExternalSale / ExternalPayment /
ExternalAttachment.

Malformed numbers become 0 and unparseable dates become None; the only hard
failure is a sale payload that is not a JSON object (SaleParseError).
"""
import logging
import math
import re
import time
from datetime import date, datetime, timezone
from typing import Any

from app.models.ledger import (
    CLEARED_PAYMENT_LABELS,
    INSTALLMENT_CLEARED,
    INSTALLMENT_PENDING,
    ExternalAttachment,
    ExternalPayment,
    ExternalSale,
)

logger = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^0-9,.\-]")


class SaleParseError(ValueError):
    """The payload cannot be read as a sale at all."""


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def parse_amount(value: Any) -> float:
    """Parse a monetary value sent as number or string.

    Handles '1.234,56', '1,234.56', '1234.56', '300', 'R$ 1.234,56'.
    With both separators present the last one is the decimal mark; a lone
    comma is decimal; repeated dots are thousands. Returns 0.0 on failure.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0

    text = _NON_NUMERIC.sub("", str(value).strip())
    if not text:
        return 0.0

    last_dot = text.rfind(".")
    last_comma = text.rfind(",")
    if last_dot >= 0 and last_comma >= 0:
        if last_comma > last_dot:
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif last_comma >= 0:
        if text.count(",") > 1:
            text = text.replace(",", "")
        else:
            text = text.replace(",", ".")
    elif text.count(".") > 1:
        text = text.replace(".", "")

    try:
        result = float(text)
    except ValueError:
        return 0.0
    return result if math.isfinite(result) else 0.0


def parse_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(parse_amount(value))
    except (OverflowError, ValueError):
        return 0


def parse_date(value: Any) -> datetime | None:
    """ISO date/datetime (with or without 'Z') or DD/MM/YYYY. Naive -> UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = datetime.strptime(text[:10], "%d/%m/%Y")
            except ValueError:
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _first(raw: dict, *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _unwrap(item: Any, key: str) -> Any:
    # Listing endpoints send [{"pagamento": {...}}], detail endpoints send [{...}]
    if isinstance(item, dict) and isinstance(item.get(key), dict) and len(item) == 1:
        return item[key]
    return item


# ---------------------------------------------------------------------------
# Nested records
# ---------------------------------------------------------------------------


def parse_payment(raw: dict, position: int = 1) -> ExternalPayment:
    raw = _unwrap(raw, "pagamento")
    if not isinstance(raw, dict):
        raise SaleParseError(f"payment is not an object: {type(raw).__name__}")

    label = str(_first(raw, "status", "situacao") or "").strip().lower()
    number = parse_int(_first(raw, "numero", "parcela"))
    return ExternalPayment(
        external_id=_as_id(raw.get("id")),
        number=number if number > 0 else position,
        amount=parse_amount(raw.get("valor")),
        due_date=parse_date(_first(raw, "dataPagamento", "data_pagamento", "data_vencimento", "data")),
        status=INSTALLMENT_CLEARED if label in CLEARED_PAYMENT_LABELS else INSTALLMENT_PENDING,
        payment_method=str(
            _first(raw, "formaPagamento", "forma_pagamento", "nome_forma_pagamento") or "Outros"
        ),
        raw=raw,
    )


def parse_attachment(raw: dict) -> ExternalAttachment:
    raw = _unwrap(raw, "anexo")
    if not isinstance(raw, dict):
        raise SaleParseError(f"attachment is not an object: {type(raw).__name__}")

    external_id = _as_id(raw.get("id"))
    name = _first(raw, "nome", "descricao") or f"Anexo-{external_id or int(time.time() * 1000)}"
    return ExternalAttachment(
        external_id=external_id,
        name=str(name),
        url=str(_first(raw, "url", "urlArquivo", "link") or ""),
        mime_type=str(_first(raw, "tipo", "mimeType") or "application/octet-stream"),
        size=max(parse_int(raw.get("tamanho")), 0),
        raw=raw,
    )


def _parse_items(items: Any, parser, label: str, sale_id: str | None) -> list:
    if not isinstance(items, list):
        return []
    parsed = []
    for position, item in enumerate(items, start=1):
        try:
            parsed.append(parser(item, position))
        except SaleParseError as exc:
            logger.warning("sale %s: dropping malformed %s #%d: %s", sale_id, label, position, exc)
    return parsed


# ---------------------------------------------------------------------------
# Sale
# ---------------------------------------------------------------------------


def parse_sale(raw: Any) -> ExternalSale:
    """Normalize one sale payload into an ExternalSale."""
    if not isinstance(raw, dict):
        raise SaleParseError(f"sale payload is not an object: {type(raw).__name__}")

    external_id = _as_id(raw.get("id"))
    total = parse_amount(_first(raw, "valor_total", "valorTotal", "total"))
    net_raw = _first(raw, "valor_liquido", "valorLiquido")

    return ExternalSale(
        external_id=external_id,
        code=str(_first(raw, "codigo") or external_id or f"GC-{int(time.time() * 1000)}"),
        date=parse_date(_first(raw, "data", "data_venda")),
        total_amount=total,
        net_amount=parse_amount(net_raw) if net_raw is not None else total,
        status=str(_first(raw, "nome_situacao", "situacao") or "PENDING"),
        customer_name=str(raw.get("nome_cliente") or "Cliente não informado"),
        store_name=str(raw.get("nome_loja") or "Loja não informada"),
        payments=_parse_items(raw.get("pagamentos"), parse_payment, "payment", external_id),
        attachments=_parse_items(
            raw.get("anexos"), lambda item, _position: parse_attachment(item), "attachment", external_id
        ),
        installment_count=max(parse_int(_first(raw, "numero_parcelas", "parcelas")), 0),
        installment_interval_days=max(parse_int(raw.get("intervalo_dias")), 0),
        first_installment_date=parse_date(raw.get("data_primeira_parcela")),
        raw=raw,
    )
