"""
Conciliador Gestão Click - importação de vendas + saneamento do ledger
Admin API for sales import, duplicate cleanup and the background sales sync.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.routers import admin, health
from app.services.sales_sync import SalesSyncer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
# Silence httpx per-request logs (one line per Gestão Click page otherwise)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

syncer = SalesSyncer(
    interval_minutes=settings.sales_sync_interval_minutes,
    lookback_days=settings.sales_sync_lookback_days,
)

# Wire syncer reference into admin router for trigger/status endpoints
admin.set_syncer(syncer)


@asynccontextmanager
async def lifespan(app):
    if settings.sales_sync_enabled:
        await syncer.start()
    else:
        logger.info("SalesSyncer disabled (SALES_SYNC_ENABLED=false)")
    yield
    await syncer.stop()


app = FastAPI(
    title="Conciliador Gestão Click",
    description="Importação idempotente de vendas do Gestão Click + limpeza de duplicatas do ledger",
    version="1.0.0",
    lifespan=lifespan,
)

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(admin.router)
