"""
Ledger tables, source tags and the canonical shapes of Gestão Click records.
Raw payloads are normalized into these models by services/sale_parser.py.
"""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# Source tag stored on sales_records.source and transactions.metadata.source.name
SOURCE_GESTAO_CLICK = "GESTAO_CLICK"

# Wallet type of externally synced wallets, and the wallet that hosts
# attachment-only transactions.
WALLET_TYPE_GESTAO_CLICK = "GESTAO_CLICK"
GLOBAL_WALLET_NAME = "GESTAO_CLICK_GLOBAL"

TABLES = {
    "sales": "sales_records",
    "installments": "installments",
    "attachments": "attachments",
    "sale_links": "sales_transactions",
    "transactions": "transactions",
    "wallets": "wallets",
    "notifications": "notifications",
    "users": "users",
}

INSTALLMENT_PENDING = "PENDING"
INSTALLMENT_CLEARED = "CLEARED"

# Payment status labels (lower-cased) that mean the money was received
CLEARED_PAYMENT_LABELS = {"pago", "paga", "confirmado", "quitado", "recebido"}


class ExternalPayment(BaseModel):
    external_id: str | None = None
    number: int = 1
    amount: float = 0.0
    due_date: datetime | None = None
    status: str = INSTALLMENT_PENDING
    payment_method: str = "Outros"
    raw: dict[str, Any] = Field(default_factory=dict)


class ExternalAttachment(BaseModel):
    external_id: str | None = None
    name: str
    url: str = ""
    mime_type: str = "application/octet-stream"
    size: int = 0
    raw: dict[str, Any] = Field(default_factory=dict)


class ExternalSale(BaseModel):
    external_id: str | None = None
    code: str
    date: datetime | None = None
    total_amount: float = 0.0
    net_amount: float = 0.0
    status: str = "PENDING"
    customer_name: str = "Cliente não informado"
    store_name: str = "Loja não informada"
    payments: list[ExternalPayment] = Field(default_factory=list)
    attachments: list[ExternalAttachment] = Field(default_factory=list)
    installment_count: int = 0
    installment_interval_days: int = 0
    first_installment_date: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def payment_ids(self) -> set[str]:
        return {p.external_id for p in self.payments if p.external_id}

    @property
    def attachment_ids(self) -> set[str]:
        return {a.external_id for a in self.attachments if a.external_id}


class SaleMetadata(BaseModel):
    """Processing state accumulated on sales_records.metadata across syncs."""

    processed_payment_ids: set[str] = Field(default_factory=set)
    processed_attachment_ids: set[str] = Field(default_factory=set)
    raw_source_payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_blob(cls, blob: Any) -> "SaleMetadata":
        """Read stored metadata.

        Older imports spread the raw sale at the top level next to the
        processed-id lists; those keys become the raw payload.
        """
        if not isinstance(blob, dict):
            return cls()

        def _ids(key: str) -> set[str]:
            values = blob.get(key)
            if not isinstance(values, list):
                return set()
            return {str(v) for v in values if v is not None and str(v) != ""}

        raw = blob.get("rawSourcePayload")
        if not isinstance(raw, dict):
            raw = {
                k: v for k, v in blob.items()
                if k not in ("processedPaymentIds", "processedAttachmentIds")
            }
        return cls(
            processed_payment_ids=_ids("processedPaymentIds"),
            processed_attachment_ids=_ids("processedAttachmentIds"),
            raw_source_payload=raw,
        )

    def to_blob(self) -> dict[str, Any]:
        return {
            "processedPaymentIds": sorted(self.processed_payment_ids),
            "processedAttachmentIds": sorted(self.processed_attachment_ids),
            "rawSourcePayload": self.raw_source_payload,
        }

    def merged_with(
        self,
        payment_ids: set[str],
        attachment_ids: set[str],
        raw_source_payload: dict[str, Any] | None = None,
    ) -> "SaleMetadata":
        return SaleMetadata(
            processed_payment_ids=self.processed_payment_ids | set(payment_ids),
            processed_attachment_ids=self.processed_attachment_ids | set(attachment_ids),
            raw_source_payload=raw_source_payload if raw_source_payload is not None else self.raw_source_payload,
        )
