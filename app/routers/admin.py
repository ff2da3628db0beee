"""
Admin API - password-protected endpoints for sales import and ledger cleanup.
Authentication via X-Admin-Token header verified against bcrypt hash in admin_config table.
"""
import logging
import secrets
from datetime import datetime, timezone

import bcrypt
from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel, Field

from app.config import settings
from app.db.ledger import LedgerAuthorizationError, LedgerError, LedgerStore, get_ledger
from app.db.supabase import get_db
from app.services.duplicate_cleanup import (
    CleanupTargetNotFound,
    get_last_cleanup_result,
    run_cleanup,
)
from app.services.gestao_click_api import GestaoClickClient, GestaoClickError
from app.services.job_locks import user_job_lock
from app.services.sales_importer import (
    get_last_import_result,
    import_sales,
    import_sales_for_period,
    record_import_result,
    validate_window,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

# In-memory session tokens: token -> {"created": datetime, "operator_id": str}
_sessions: dict[str, dict] = {}

SESSION_TTL_SECONDS = 86400


def _get_password_hash() -> str | None:
    db = get_db()
    result = db.table("admin_config").select("password_hash").eq("id", 1).execute()
    if result.data:
        return result.data[0]["password_hash"]
    return None


def _store_password_hash(hashed: str) -> None:
    db = get_db()
    db.table("admin_config").upsert({"id": 1, "password_hash": hashed}).execute()


def _verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


async def require_admin(x_admin_token: str | None = Header(None)) -> dict:
    """Dependency: verify admin session token, return the session."""
    session = _sessions.get(x_admin_token or "")
    if session is None:
        raise HTTPException(status_code=401, detail="Invalid or expired admin token")
    # Check expiry (24h sessions)
    if (datetime.now(timezone.utc) - session["created"]).total_seconds() > SESSION_TTL_SECONDS:
        del _sessions[x_admin_token]
        raise HTTPException(status_code=401, detail="Session expired")
    return session


def get_store() -> LedgerStore:
    return get_ledger()


def _truncated(result: dict) -> dict:
    """Copy of a job result with its details list capped for the response."""
    limit = settings.report_details_limit
    out = dict(result)
    details = result.get("details")
    if isinstance(details, list):
        out["details"] = details[:limit]
        out["details_total"] = len(details)
    return out


def _http_error(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, LedgerAuthorizationError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, CleanupTargetNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, GestaoClickError):
        return HTTPException(status_code=502, detail=f"Gestão Click: {exc}")
    if isinstance(exc, LedgerError):
        return HTTPException(status_code=503, detail=f"Ledger unavailable: {exc}")
    return HTTPException(status_code=500, detail=f"{action} failed: {exc}")


# ── Auth ──────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    password: str
    operator_id: str = "admin"


@router.post("/login")
async def login(req: LoginRequest):
    """Authenticate with admin password. Returns session token."""
    hashed = _get_password_hash()
    if not hashed:
        # First-time setup: hash and store the provided password
        hashed = bcrypt.hashpw(req.password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        _store_password_hash(hashed)

    if not _verify_password(req.password, hashed):
        raise HTTPException(status_code=401, detail="Invalid password")

    token = secrets.token_urlsafe(32)
    _sessions[token] = {"created": datetime.now(timezone.utc), "operator_id": req.operator_id}
    return {"token": token}


# ── Ledger cleanup ───────────────────────────────────────────

class CleanupRequest(BaseModel):
    user_id: str
    dry_run: bool = True


async def _cleanup(user_id: str, dry_run: bool, operator_id: str, store: LedgerStore) -> dict:
    try:
        async with user_job_lock(user_id):
            report = await run_cleanup(user_id, dry_run, operator_id, store)
    except Exception as exc:
        logger.error("cleanup error for %s: %s", user_id, exc, exc_info=True)
        raise _http_error(exc, "Cleanup")
    report["wallets"] = _truncated(report["wallets"])
    report["transactions"] = _truncated(report["transactions"])
    return report


@router.post("/cleanup")
async def trigger_cleanup(
    req: CleanupRequest,
    session: dict = Depends(require_admin),
    store: LedgerStore = Depends(get_store),
):
    """Collapse duplicate Gestão Click wallets and transactions of a user.

    dry_run=true (default) only reports what a commit run would remove.
    """
    return await _cleanup(req.user_id, req.dry_run, session["operator_id"], store)


@router.get("/cleanup")
async def analyze_cleanup(
    user_id: str = Query(..., description="Ledger user id"),
    session: dict = Depends(require_admin),
    store: LedgerStore = Depends(get_store),
):
    """Dry-run analysis of the duplicates a cleanup would remove."""
    return await _cleanup(user_id, True, session["operator_id"], store)


@router.get("/cleanup/status", dependencies=[Depends(require_admin)])
async def cleanup_status():
    return get_last_cleanup_result()


# ── Sales import ─────────────────────────────────────────────

class ImportRequest(BaseModel):
    user_id: str
    start_date: str
    end_date: str
    filters: dict = Field(default_factory=dict)
    refresh: bool = False


class ImportPayloadRequest(BaseModel):
    user_id: str
    sales: list[dict]


@router.post("/sales/import", dependencies=[Depends(require_admin)])
async def trigger_sales_import(req: ImportRequest, store: LedgerStore = Depends(get_store)):
    """Fetch a window of sales (max 31 days) from Gestão Click and import them."""
    try:
        validate_window(req.start_date, req.end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if not GestaoClickClient().configured:
        raise HTTPException(status_code=503, detail="Gestão Click credentials not configured")

    try:
        async with user_job_lock(req.user_id):
            result = await import_sales_for_period(
                req.user_id, req.start_date, req.end_date, req.filters,
                refresh=req.refresh, store=store,
            )
    except Exception as exc:
        logger.error("sales import error for %s: %s", req.user_id, exc, exc_info=True)
        raise _http_error(exc, "Sales import")

    if result["partial"] and result["fetched"] == 0:
        raise HTTPException(status_code=502, detail=f"Gestão Click: {result['fetch_error']}")
    return _truncated(result)


@router.post("/sales/import-payload", dependencies=[Depends(require_admin)])
async def trigger_sales_import_payload(req: ImportPayloadRequest, store: LedgerStore = Depends(get_store)):
    """Import sales already fetched by the caller (raw Gestão Click objects)."""
    try:
        async with user_job_lock(req.user_id):
            result = await import_sales(req.user_id, req.sales, store)
    except Exception as exc:
        logger.error("sales payload import error for %s: %s", req.user_id, exc, exc_info=True)
        raise _http_error(exc, "Sales import")
    record_import_result(req.user_id, result)
    return _truncated(result)


@router.get("/sales/import/status", dependencies=[Depends(require_admin)])
async def sales_import_status():
    """Return the result of the last sales import run."""
    return get_last_import_result()


# ── Background sales sync ────────────────────────────────────

_syncer = None


def set_syncer(syncer):
    global _syncer
    _syncer = syncer


@router.post("/sales/sync/trigger", dependencies=[Depends(require_admin)])
async def trigger_sales_sync():
    if not _syncer:
        raise HTTPException(status_code=503, detail="Syncer not initialized")
    results = await _syncer.sync_all()
    return {"last_sync": _syncer.last_sync, "results": results}


@router.get("/sales/sync/status", dependencies=[Depends(require_admin)])
async def sales_sync_status():
    if not _syncer:
        return {"last_sync": None, "results": []}
    return {"last_sync": _syncer.last_sync, "results": _syncer.last_results}
