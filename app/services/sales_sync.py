"""
Background sales sync: imports the last N days of Gestão Click sales for
every configured ledger user on an interval.
Disabled unless SALES_SYNC_ENABLED is set.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from app.config import settings
from app.services.job_locks import user_job_lock
from app.services.sales_importer import import_sales_for_period

logger = logging.getLogger(__name__)

BRT = timezone(timedelta(hours=-3))


def configured_user_ids() -> list[str]:
    return [u.strip() for u in settings.sales_sync_user_ids.split(",") if u.strip()]


class SalesSyncer:
    def __init__(self, interval_minutes: int = 60, lookback_days: int = 3, user_ids: list[str] | None = None):
        self.interval = interval_minutes
        self.lookback_days = lookback_days
        self._user_ids = user_ids
        self._task: asyncio.Task | None = None
        self._last_sync: str | None = None
        self._last_results: list[dict] = []

    async def start(self):
        self._task = asyncio.create_task(self._scheduler())
        logger.info("SalesSyncer started (interval=%dm, lookback=%dd)", self.interval, self.lookback_days)

    async def stop(self):
        if self._task:
            self._task.cancel()
            logger.info("SalesSyncer stopped")

    @property
    def last_sync(self) -> str | None:
        return self._last_sync

    @property
    def last_results(self) -> list[dict]:
        return self._last_results

    @property
    def user_ids(self) -> list[str]:
        return self._user_ids if self._user_ids is not None else configured_user_ids()

    async def _scheduler(self):
        await self.sync_all()
        while True:
            await asyncio.sleep(self.interval * 60)
            try:
                await self.sync_all()
            except Exception:
                logger.exception("SalesSyncer scheduler error")

    async def sync_all(self) -> list[dict]:
        today = datetime.now(BRT).date()
        start = (today - timedelta(days=self.lookback_days)).isoformat()
        end = today.isoformat()
        users = self.user_ids
        results: list[dict] = []

        logger.info("Sales sync starting for %s→%s (%d users)", start, end, len(users))

        for user_id in users:
            try:
                async with user_job_lock(user_id):
                    outcome = await import_sales_for_period(user_id, start, end)
                result = {
                    "user_id": user_id,
                    "start_date": start,
                    "end_date": end,
                    "imported": outcome["imported"],
                    "skipped": outcome["skipped"],
                    "errors": outcome["errors"],
                    "status": "partial" if outcome["partial"] else "synced",
                }
                if outcome["fetch_error"]:
                    result["error"] = str(outcome["fetch_error"])[:400]
                results.append(result)
                logger.info("[%s] %s: %d imported, %d skipped, %d errors",
                            user_id, result["status"], outcome["imported"], outcome["skipped"], outcome["errors"])
            except Exception as e:
                logger.exception("[%s] Sales sync failed", user_id)
                results.append({"user_id": user_id, "start_date": start, "end_date": end,
                                "status": "error", "error": str(e)})

        self._last_sync = datetime.now(BRT).isoformat()
        self._last_results = results
        logger.info("Sales sync complete: %d users", len(results))
        return results
