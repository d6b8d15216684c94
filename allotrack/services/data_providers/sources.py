"""HTTP result sources: exchange, registrar and third-party aggregator.

Every source goes through a :class:`SourceGuard` (circuit breaker + retry) and
returns raw records with snake_case keys, ready for validation.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import quote

import httpx

from allotrack.core.config import Settings
from allotrack.core.exceptions import SourceUnavailableError
from allotrack.core.logging import get_logger

from .resilience import SourceGuard


logger = get_logger("services.data_providers.sources")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

# Wire names that don't map onto ours by case conversion alone
FIELD_ALIASES = {
    "pan": "pan_number",
    "pan_no": "pan_number",
    "application_no": "application_number",
    "app_number": "application_number",
    "applied_qty": "applied_quantity",
    "allotted_qty": "allotted_quantity",
    "status": "allotment_status",
}


def to_snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalise_record(raw: dict[str, Any]) -> dict[str, Any]:
    """Convert one wire record to snake_case with canonical field names."""
    record: dict[str, Any] = {}
    for key, value in raw.items():
        snake = to_snake(key)
        name = FIELD_ALIASES.get(snake, snake)
        # an explicit canonical key wins over an alias
        if name in record and snake != name:
            continue
        record[name] = value
    if isinstance(record.get("pan_number"), str):
        record["pan_number"] = record["pan_number"].strip().upper()
    if isinstance(record.get("application_number"), (str, int)):
        record["application_number"] = str(record["application_number"]).strip()
    if isinstance(record.get("category"), str):
        record["category"] = record["category"].strip().upper()
    return record


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HttpResultSource:
    """Shared plumbing for JSON-over-HTTP result sources."""

    source_name = "http"

    def __init__(
        self,
        base_url: str,
        guard: SourceGuard,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.base_url = base_url.rstrip("/")
        self.guard = guard
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._clock = clock

    @property
    def name(self) -> str:
        return self.source_name

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"

        async def request() -> Any:
            response = await self._get_client().get(url, params=params)
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise SourceUnavailableError(
                    message=f"{self.name} returned HTTP {response.status_code}",
                    details={"source": self.name, "status_code": response.status_code},
                ) from exc
            return response.json()

        key = f"{url}?{sorted((params or {}).items())}"
        return await self.guard.call(key, request)

    def health(self) -> dict[str, Any]:
        return {"enabled": self.enabled, **self.guard.get_stats()}

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class ExchangeSource(HttpResultSource):
    """
    Exchange allotment feed.

    ``GET /v1/allotment/<from>/<to>`` returns every allotment transaction in
    the window as ``{"status": "success", "transactions": [...]}``; records are
    filtered to the requested symbol.

    The feed is not per-symbol, so the last downloaded window is reused for
    ``window_reuse_seconds`` by any request whose window it covers. An
    availability check followed by a fetch costs one download.
    """

    source_name = "exchange"

    def __init__(
        self,
        *args: Any,
        lookback_days: int = 7,
        window_reuse_seconds: float = 60.0,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.lookback_days = lookback_days
        self.window_reuse_seconds = window_reuse_seconds
        self._window_lock = asyncio.Lock()
        # (since, fetched_at, transactions) of the last download
        self._last_window: tuple[datetime, datetime, list[dict[str, Any]]] | None = None

    async def _download(self, since: datetime, until: datetime) -> list[dict[str, Any]]:
        start = quote(since.isoformat(), safe="")
        end = quote(until.isoformat(), safe="")
        payload = await self._get_json(f"/v1/allotment/{start}/{end}")
        if not isinstance(payload, dict) or payload.get("status") != "success":
            reason = payload.get("reason") if isinstance(payload, dict) else None
            raise SourceUnavailableError(
                message=f"Invalid allotment response: {reason or 'unknown error'}",
                details={"source": self.name},
            )
        transactions = payload.get("transactions")
        if not isinstance(transactions, list):
            logger.warning("Exchange allotment payload has no transaction list")
            return []
        return transactions

    async def _window(self, since: datetime) -> list[dict[str, Any]]:
        async with self._window_lock:
            now = self._clock()
            if self._last_window is not None:
                cached_since, fetched_at, transactions = self._last_window
                age = (now - fetched_at).total_seconds()
                if cached_since <= since and age < self.window_reuse_seconds:
                    logger.debug(f"Reusing exchange window fetched {age:.0f}s ago")
                    return transactions
            transactions = await self._download(since, now)
            self._last_window = (since, now, transactions)
            return transactions

    async def fetch_results(
        self, symbol: str, registrar: str | None, since: datetime
    ) -> list[dict[str, Any]]:
        if not self.enabled:
            return []
        wanted = symbol.upper()
        return [
            normalise_record(item)
            for item in await self._window(since)
            if isinstance(item, dict) and str(item.get("symbol", "")).upper() == wanted
        ]

    async def has_results(self, symbol: str, registrar: str | None) -> bool:
        if not self.enabled:
            return False
        since = self._clock() - timedelta(days=self.lookback_days)
        return bool(await self.fetch_results(symbol, registrar, since))


class RegistrarSource(HttpResultSource):
    """
    Registrar allotment API, one path per registrar.

    ``GET /<registrar>/allotment/<symbol>/status`` answers
    ``{"available": bool}``; ``GET /<registrar>/allotment/<symbol>`` returns
    ``{"results": [...]}``.
    """

    source_name = "registrar"

    @staticmethod
    def registrar_slug(registrar: str) -> str:
        return re.sub(r"[^a-z0-9]+", "-", registrar.lower()).strip("-")

    async def has_results(self, symbol: str, registrar: str | None) -> bool:
        if not self.enabled or not registrar:
            return False
        slug = self.registrar_slug(registrar)
        payload = await self._get_json(f"/{slug}/allotment/{quote(symbol)}/status")
        return bool(isinstance(payload, dict) and payload.get("available"))

    async def fetch_results(
        self, symbol: str, registrar: str | None, since: datetime
    ) -> list[dict[str, Any]]:
        if not self.enabled or not registrar:
            return []
        slug = self.registrar_slug(registrar)
        payload = await self._get_json(
            f"/{slug}/allotment/{quote(symbol)}",
            params={"since": since.isoformat()},
        )
        results = payload.get("results", []) if isinstance(payload, dict) else payload
        if not isinstance(results, list):
            return []
        return [normalise_record(item) for item in results if isinstance(item, dict)]


class AggregatorSource(HttpResultSource):
    """
    Third-party aggregator.

    ``GET /allotment/<symbol>`` returns ``{"available": bool, "data": [...]}``.
    """

    source_name = "aggregator"

    async def _payload(self, symbol: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        payload = await self._get_json(f"/allotment/{quote(symbol)}", params=params)
        return payload if isinstance(payload, dict) else {}

    async def has_results(self, symbol: str, registrar: str | None) -> bool:
        if not self.enabled:
            return False
        payload = await self._payload(symbol)
        return bool(payload.get("available")) or bool(payload.get("data"))

    async def fetch_results(
        self, symbol: str, registrar: str | None, since: datetime
    ) -> list[dict[str, Any]]:
        if not self.enabled:
            return []
        payload = await self._payload(symbol, params={"since": since.isoformat()})
        data = payload.get("data") or []
        return [normalise_record(item) for item in data if isinstance(item, dict)]


def build_sources(settings: Settings) -> list[HttpResultSource]:
    """Exchange, registrar and aggregator sources in lookup order."""

    def guard(name: str) -> SourceGuard:
        return SourceGuard(
            name=name,
            failure_threshold=settings.source_failure_threshold,
            recovery_timeout=settings.source_recovery_timeout,
            max_retries=settings.external_api_retries,
        )

    timeout = float(settings.external_api_timeout)
    return [
        ExchangeSource(
            settings.exchange_api_url,
            guard("exchange"),
            timeout=timeout,
            lookback_days=settings.source_lookback_days,
        ),
        RegistrarSource(settings.registrar_api_url, guard("registrar"), timeout=timeout),
        AggregatorSource(settings.aggregator_api_url, guard("aggregator"), timeout=timeout),
    ]
