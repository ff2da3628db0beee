"""
Cliente para a API do Gestão Click (Betel Tecnologia).
Base: https://api.beteltecnologia.com
Auth: headers access-token / secret-access-token.

Listing is paginated (meta.proxima_pagina) and capped at
settings.gestao_click_max_pages. 429 / 5xx / network errors are retried with
progressive back-off; other 4xx fail immediately.
"""
import asyncio
import logging
from typing import Any

import httpx

from app.config import settings
from app.services.rate_limiter import TokenBucket, gestao_click_limiter
from app.services.sync_cache import SyncCache

logger = logging.getLogger(__name__)


class GestaoClickError(RuntimeError):
    """The sales source failed after retries, or rejected the request."""


class GestaoClickClient:
    def __init__(
        self,
        api_url: str | None = None,
        access_token: str | None = None,
        secret_token: str | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        max_pages: int | None = None,
        page_size: int | None = None,
        limiter: TokenBucket | None = None,
        cache: SyncCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = (api_url or settings.gestao_click_api_url).rstrip("/")
        self._access_token = access_token if access_token is not None else settings.gestao_click_access_token
        self._secret_token = secret_token if secret_token is not None else settings.gestao_click_secret_access_token
        self._timeout = timeout or settings.gestao_click_timeout_seconds
        self._attempts = max(1, retry_attempts or settings.gestao_click_retry_attempts)
        self._retry_delay = retry_delay if retry_delay is not None else settings.gestao_click_retry_delay_seconds
        self._max_pages = max_pages or settings.gestao_click_max_pages
        self._page_size = page_size or settings.gestao_click_page_size
        self._limiter = limiter or gestao_click_limiter
        self._cache = cache
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._access_token and self._secret_token)

    def _headers(self) -> dict:
        return {
            "access-token": self._access_token,
            "secret-access-token": self._secret_token,
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self._timeout,
            headers=self._headers(),
            transport=self._transport,
        )

    async def _get(self, client: httpx.AsyncClient, path: str, params: dict | None = None) -> Any:
        last_error = ""
        for attempt in range(1, self._attempts + 1):
            await self._limiter.acquire()
            try:
                resp = await client.get(path, params=params)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Gestão Click GET %s failed (attempt %d/%d): %s",
                               path, attempt, self._attempts, last_error)
            else:
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                    logger.warning("Gestão Click GET %s returned %d (attempt %d/%d)",
                                   path, resp.status_code, attempt, self._attempts)
                elif resp.status_code >= 400:
                    raise GestaoClickError(f"GET {path}: HTTP {resp.status_code} {resp.text[:200]}")
                else:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise GestaoClickError(f"GET {path}: response is not JSON") from exc

            if attempt < self._attempts:
                await asyncio.sleep(self._retry_delay * (1.5 ** (attempt - 1)))

        raise GestaoClickError(f"GET {path}: gave up after {self._attempts} attempts ({last_error})")

    async def list_sales(self, filters: dict | None = None, page: int = 1) -> dict:
        """GET /vendas — one page. Returns {data: [...], meta: {...}}."""
        params = {"page": page, "per_page": self._page_size}
        for key, value in (filters or {}).items():
            if value is not None and value != "":
                params[key] = value
        async with self._client() as client:
            body = await self._get(client, "/vendas", params)
        if not isinstance(body, dict):
            raise GestaoClickError("GET /vendas: unexpected response shape")
        return body

    async def get_sale(self, sale_id: str) -> dict | None:
        """GET /vendas/{id}. Accepts {data: [sale]}, {data: sale} or a bare sale."""
        async with self._client() as client:
            body = await self._get(client, f"/vendas/{sale_id}")
        if not isinstance(body, dict):
            return None
        data = body.get("data")
        if isinstance(data, list):
            return data[0] if data and isinstance(data[0], dict) else None
        if isinstance(data, dict):
            return data
        if body.get("id") is not None:
            return body
        return None

    async def fetch_sales(
        self,
        start_date: str,
        end_date: str,
        filters: dict | None = None,
        user_id: str | None = None,
    ) -> dict:
        """Walk every page of sales between start_date and end_date.

        Returns {sales, pages, error, cached}. A failure on page N keeps the
        sales from pages 1..N-1 and reports the failure in `error`; only
        complete walks are cached.
        """
        cache_key = None
        if self._cache is not None and user_id:
            cache_key = SyncCache.key(user_id, start_date, end_date, filters or {})
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.info("Gestão Click sales %s→%s served from cache (%d)", start_date, end_date, len(cached))
                return {"sales": list(cached), "pages": 0, "error": None, "cached": True}

        query = {**(filters or {}), "data_inicio": start_date, "data_fim": end_date}
        sales: list[dict] = []
        pages = 0
        error: str | None = None

        page = 1
        while page <= self._max_pages:
            try:
                body = await self.list_sales(query, page)
            except GestaoClickError as exc:
                error = str(exc)
                logger.error("Gestão Click sales fetch stopped at page %d: %s", page, exc)
                break

            rows = body.get("data") or []
            pages += 1
            if not isinstance(rows, list) or not rows:
                break
            sales.extend(rows)

            meta = body.get("meta") or {}
            if meta.get("proxima_pagina") is None:
                break
            page += 1
        else:
            logger.warning("Gestão Click sales fetch hit the %d-page cap", self._max_pages)

        logger.info("Gestão Click sales %s→%s: %d sales in %d pages%s",
                    start_date, end_date, len(sales), pages, " (partial)" if error else "")

        if cache_key and error is None:
            self._cache.set(cache_key, list(sales))
        return {"sales": sales, "pages": pages, "error": error, "cached": False}
