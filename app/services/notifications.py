"""
Operator notifications (SYSTEM type) written to the notifications table.
Delivery is best effort: callers never fail because a notification did not land.
"""
import logging

from app.db.ledger import LedgerStore, get_ledger
from app.models.ledger import TABLES

logger = logging.getLogger(__name__)


async def notify_operator(
    operator_id: str,
    title: str,
    message: str,
    metadata: dict | None = None,
    priority: str = "MEDIUM",
    store: LedgerStore | None = None,
) -> bool:
    store = store or get_ledger()
    try:
        await store.create(TABLES["notifications"], {
            "user_id": operator_id,
            "title": title,
            "message": message,
            "type": "SYSTEM",
            "priority": priority,
            "is_read": False,
            "metadata": metadata or {},
        })
    except Exception:
        logger.warning("Notification to operator %s not delivered: %s", operator_id, title, exc_info=True)
        return False
    return True
