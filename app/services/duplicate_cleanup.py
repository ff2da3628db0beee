"""
Duplicate collapser for Gestão Click wallets and transactions.

Wallets: one survivor per (user, GESTAO_CLICK, normalized name), chosen by
transaction count, then creation date, then id. Duplicates hand their
transactions to the survivor and are deleted.

Transactions (metadata.source.name = GESTAO_CLICK):
  pass 1  group by external id (see identity.extract_external_id)
  pass 2  group the rest by wallet|day|amount|name fingerprint
The newest row of each group survives. Attachments and sale links of a
duplicate are moved to the survivor before it is deleted.

Every function runs in dry-run (report only, no writes) or commit mode and
is safe to re-run: a second commit run finds nothing left to collapse.
"""
import logging

from app.db.ledger import LedgerAuthorizationError, LedgerStore, get_ledger, now_iso
from app.models.ledger import SOURCE_GESTAO_CLICK, TABLES, WALLET_TYPE_GESTAO_CLICK
from app.services.identity import (
    created_at,
    extract_external_id,
    newest_first,
    normalize_wallet_name,
    transaction_fingerprint,
)
from app.services.notifications import notify_operator

logger = logging.getLogger(__name__)

_last_cleanup_result: dict = {"ran_at": None, "user_id": None, "result": None}


class CleanupTargetNotFound(LookupError):
    """The user a cleanup was requested for does not exist."""


def _check_owner(rows: list[dict], user_id: str, table: str) -> None:
    for row in rows:
        if str(row.get("user_id")) != str(user_id):
            raise LedgerAuthorizationError(f"{table} {row.get('id')} belongs to another user")


def _empty_result() -> dict:
    return {"removed": 0, "kept": 0, "errors": 0, "details": []}


def _unique_by_id(rows: list[dict]) -> list[dict]:
    """Drop repeated rows (same id) a paged read can return."""
    seen: set[str] = set()
    unique = []
    for row in rows:
        if str(row["id"]) in seen:
            continue
        seen.add(str(row["id"]))
        unique.append(row)
    return unique


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


async def cleanup_duplicate_wallets(user_id: str, dry_run: bool = True, store: LedgerStore | None = None) -> dict:
    store = store or get_ledger()
    result = _empty_result()

    wallets = _unique_by_id(await store.find(
        TABLES["wallets"], {"user_id": user_id, "type": WALLET_TYPE_GESTAO_CLICK}
    ))
    _check_owner(wallets, user_id, "wallet")

    groups: dict[str, list[dict]] = {}
    for wallet in wallets:
        tx_count = await store.count(TABLES["transactions"], {"wallet_id": wallet["id"]})
        groups.setdefault(normalize_wallet_name(wallet.get("name")), []).append({**wallet, "tx_count": tx_count})

    for name, group in groups.items():
        result["kept"] += 1
        if len(group) < 2:
            continue

        ordered = sorted(
            group,
            key=lambda w: (w["tx_count"], created_at(w), str(w["id"])),
            reverse=True,
        )
        survivor, duplicates = ordered[0], ordered[1:]
        logger.info("wallet cleanup %s: '%s' has %d duplicates, keeping %s (%d transactions)",
                    user_id, name, len(duplicates), survivor["id"], survivor["tx_count"])

        for dup in duplicates:
            if dup["id"] == survivor["id"]:
                continue
            detail = {
                "kept_id": survivor["id"],
                "kept_name": survivor.get("name"),
                "removed_id": dup["id"],
                "removed_name": dup.get("name"),
                "transactions": dup["tx_count"],
            }
            if dry_run:
                detail["status"] = "dry_reported"
                result["removed"] += 1
                result["details"].append(detail)
                continue

            try:
                moved = await store.update_where(
                    TABLES["transactions"],
                    {"user_id": user_id, "wallet_id": dup["id"]},
                    {"wallet_id": survivor["id"]},
                )
                await store.delete(TABLES["wallets"], dup["id"])
            except LedgerAuthorizationError:
                raise
            except Exception as exc:
                result["errors"] += 1
                detail["status"] = "merge_failed"
                detail["error"] = str(exc)
                logger.error("wallet cleanup %s: merge of %s into %s failed: %s",
                             user_id, dup["id"], survivor["id"], exc, exc_info=True)
            else:
                result["removed"] += 1
                detail["status"] = "merged"
                detail["transactions"] = moved
            result["details"].append(detail)

    logger.info("wallet cleanup %s (%s): removed=%d kept=%d errors=%d",
                user_id, "dry run" if dry_run else "commit",
                result["removed"], result["kept"], result["errors"])
    return result


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


async def _move_children(store: LedgerStore, user_id: str, duplicate_id: str, survivor_id: str) -> dict:
    """Re-home attachments and sale links of a duplicate onto the survivor."""
    attachments = await store.update_where(
        TABLES["attachments"],
        {"user_id": user_id, "transaction_id": duplicate_id},
        {"transaction_id": survivor_id},
    )

    survivor_links = await store.find(TABLES["sale_links"], {"transaction_id": survivor_id})
    linked_sales = {link["sales_record_id"] for link in survivor_links}
    links = 0
    for link in await store.find(TABLES["sale_links"], {"transaction_id": duplicate_id}):
        if link["sales_record_id"] in linked_sales:
            await store.delete(TABLES["sale_links"], link["id"])
        else:
            await store.update(TABLES["sale_links"], link["id"], {"transaction_id": survivor_id})
            linked_sales.add(link["sales_record_id"])
            links += 1
    return {"attachments": attachments, "sale_links": links}


async def _collapse_group(
    store: LedgerStore,
    user_id: str,
    key_type: str,
    key: str,
    group: list[dict],
    dry_run: bool,
    result: dict,
) -> None:
    survivor, duplicates = group[0], group[1:]
    result["kept"] += 1
    for dup in duplicates:
        if dup["id"] == survivor["id"]:
            continue
        detail = {
            "kept_id": survivor["id"],
            "removed_id": dup["id"],
            "key_type": key_type,
            "key": key,
            "name": dup.get("name"),
            "amount": dup.get("amount"),
        }
        if dry_run:
            detail["status"] = "dry_reported"
            result["removed"] += 1
            result["details"].append(detail)
            continue

        try:
            moved = await _move_children(store, user_id, dup["id"], survivor["id"])
            await store.delete(TABLES["transactions"], dup["id"])
        except LedgerAuthorizationError:
            raise
        except Exception as exc:
            result["errors"] += 1
            detail["status"] = "merge_failed"
            detail["error"] = str(exc)
            logger.error("transaction cleanup %s: removing %s (%s %s) failed: %s",
                         user_id, dup["id"], key_type, key, exc, exc_info=True)
        else:
            result["removed"] += 1
            detail["status"] = "merged"
            detail.update(moved)
        result["details"].append(detail)


async def cleanup_duplicate_transactions(user_id: str, dry_run: bool = True, store: LedgerStore | None = None) -> dict:
    store = store or get_ledger()
    result = _empty_result()

    transactions = _unique_by_id(await store.find(
        TABLES["transactions"],
        {"user_id": user_id, "metadata->source->>name": SOURCE_GESTAO_CLICK},
    ))
    _check_owner(transactions, user_id, "transaction")

    by_external_id: dict[str, list[dict]] = {}
    deferred: list[dict] = []
    for tx in newest_first(transactions):
        external_id = extract_external_id(tx)
        if external_id:
            by_external_id.setdefault(external_id, []).append(tx)
        else:
            deferred.append(tx)

    by_fingerprint: dict[str, list[dict]] = {}
    for tx in deferred:
        by_fingerprint.setdefault(transaction_fingerprint(tx), []).append(tx)

    logger.info("transaction cleanup %s: %d transactions, %d external ids, %d fingerprints",
                user_id, len(transactions), len(by_external_id), len(by_fingerprint))

    for key, group in by_external_id.items():
        await _collapse_group(store, user_id, "external_id", key, group, dry_run, result)
    for key, group in by_fingerprint.items():
        await _collapse_group(store, user_id, "fingerprint", key, group, dry_run, result)

    logger.info("transaction cleanup %s (%s): removed=%d kept=%d errors=%d",
                user_id, "dry run" if dry_run else "commit",
                result["removed"], result["kept"], result["errors"])
    return result


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


async def run_cleanup(
    user_id: str,
    dry_run: bool = True,
    operator_id: str | None = None,
    store: LedgerStore | None = None,
) -> dict:
    """Collapse wallets, then transactions, for one user and notify the operator."""
    store = store or get_ledger()
    user = await store.get(TABLES["users"], user_id)
    if user is None:
        raise CleanupTargetNotFound(f"user {user_id} not found")

    mode = "dry_run" if dry_run else "commit"
    logger.info("cleanup %s starting (%s)", user_id, mode)

    wallets = await cleanup_duplicate_wallets(user_id, dry_run, store)
    transactions = await cleanup_duplicate_transactions(user_id, dry_run, store)

    report = {
        "mode": mode,
        "user": {"id": user["id"], "email": user.get("email")},
        "wallets": wallets,
        "transactions": transactions,
    }

    if operator_id:
        title = "Sanitização de dados (Simulação)" if dry_run else "Sanitização de dados"
        message = (
            f"Sanitização executada para o usuário {user.get('email') or user_id}. "
            f"{wallets['removed']} carteiras e {transactions['removed']} transações removidas."
        )
        await notify_operator(operator_id, title, message, {
            "targetUserId": user_id,
            "mode": mode,
            "walletsRemoved": wallets["removed"],
            "transactionsRemoved": transactions["removed"],
            "errors": wallets["errors"] + transactions["errors"],
        }, store=store)

    _last_cleanup_result["ran_at"] = now_iso()
    _last_cleanup_result["user_id"] = user_id
    _last_cleanup_result["result"] = {
        "mode": mode,
        "wallets": {k: v for k, v in wallets.items() if k != "details"},
        "transactions": {k: v for k, v in transactions.items() if k != "details"},
    }
    return report


def get_last_cleanup_result() -> dict:
    return _last_cleanup_result
