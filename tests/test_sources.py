"""Tests for HTTP result sources using httpx.MockTransport."""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from allotrack.core.config import Settings
from allotrack.core.exceptions import SourceUnavailableError
from allotrack.services.data_providers.resilience import SourceGuard
from allotrack.services.data_providers.sources import (
    AggregatorSource,
    ExchangeSource,
    RegistrarSource,
    build_sources,
    normalise_record,
    to_snake,
)
from conftest import NOW, FakeClock


async def no_sleep(delay: float) -> None:
    return None


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _guard(name: str = "test") -> SourceGuard:
    return SourceGuard(name=name, max_retries=1, sleep=no_sleep)


class TestNormalisation:
    def test_camel_case_to_snake(self):
        assert to_snake("allottedQuantity") == "allotted_quantity"
        assert to_snake("pan_number") == "pan_number"

    def test_aliases_and_cleanup(self):
        record = normalise_record(
            {"pan": " abcde1234f ", "applicationNo": 123, "appliedQty": 2, "status": "allotted", "category": "retail"}
        )
        assert record == {
            "pan_number": "ABCDE1234F",
            "application_number": "123",
            "applied_quantity": 2,
            "allotment_status": "allotted",
            "category": "RETAIL",
        }

    @pytest.mark.parametrize(
        "raw",
        [
            {"pan": "XXXXX0000X", "panNumber": "ABCDE1234F"},
            {"panNumber": "ABCDE1234F", "pan": "XXXXX0000X"},
        ],
    )
    def test_canonical_key_wins_over_alias(self, raw):
        assert normalise_record(raw)["pan_number"] == "ABCDE1234F"


class TestExchangeSource:
    @pytest.mark.asyncio
    async def test_filters_transactions_by_symbol(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "transactions": [
                        {"symbol": "ACME", "panNumber": "abcde1234f", "applicationNo": " APP1 ", "allottedQty": 1},
                        {"symbol": "OTHER", "panNumber": "ZZZZZ9999Z", "applicationNo": "APP2"},
                    ],
                },
            )

        source = ExchangeSource("https://exchange.test/api", _guard(), client=_client(handler), clock=lambda: NOW)

        records = await source.fetch_results("acme", None, NOW - timedelta(days=7))

        assert records == [
            {"symbol": "ACME", "pan_number": "ABCDE1234F", "application_number": "APP1", "allotted_quantity": 1}
        ]
        assert seen[0].startswith("/api/v1/allotment/")

    @pytest.mark.asyncio
    async def test_has_results(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "success", "transactions": []})

        source = ExchangeSource("https://exchange.test", _guard(), client=_client(handler), clock=lambda: NOW)
        assert await source.has_results("ACME", None) is False

    @pytest.mark.asyncio
    async def test_check_then_fetch_downloads_once(self):
        requests: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url.path)
            return httpx.Response(
                200,
                json={"status": "success", "transactions": [{"symbol": "ACME", "panNumber": "ABCDE1234F"}]},
            )

        source = ExchangeSource(
            "https://exchange.test", _guard(), client=_client(handler), clock=lambda: NOW, lookback_days=7
        )

        assert await source.has_results("ACME", None)
        records = await source.fetch_results("ACME", None, NOW - timedelta(days=7))
        await source.fetch_results("OTHER", None, NOW - timedelta(days=3))

        assert len(requests) == 1
        assert records == [{"symbol": "ACME", "pan_number": "ABCDE1234F"}]

    @pytest.mark.asyncio
    async def test_stale_or_wider_window_is_downloaded_again(self):
        requests: list[str] = []
        clock = FakeClock()

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url.path)
            return httpx.Response(200, json={"status": "success", "transactions": []})

        source = ExchangeSource(
            "https://exchange.test", _guard(), client=_client(handler), clock=clock, window_reuse_seconds=60
        )

        await source.fetch_results("ACME", None, NOW - timedelta(days=3))
        await source.fetch_results("ACME", None, NOW - timedelta(days=7))
        assert len(requests) == 2

        clock.advance(seconds=61)
        await source.fetch_results("ACME", None, NOW - timedelta(days=7))
        assert len(requests) == 3

    @pytest.mark.asyncio
    async def test_failed_download_is_not_reused(self):
        responses = [
            httpx.Response(200, json={"status": "error", "reason": "maintenance"}),
            httpx.Response(200, json={"status": "success", "transactions": [{"symbol": "ACME"}]}),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        source = ExchangeSource("https://exchange.test", _guard(), client=_client(handler), clock=lambda: NOW)

        with pytest.raises(SourceUnavailableError):
            await source.has_results("ACME", None)
        assert await source.has_results("ACME", None)

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "error", "reason": "maintenance"})

        source = ExchangeSource("https://exchange.test", _guard(), client=_client(handler), clock=lambda: NOW)
        with pytest.raises(SourceUnavailableError, match="maintenance"):
            await source.fetch_results("ACME", None, NOW)

    @pytest.mark.asyncio
    async def test_http_error_counts_against_circuit(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        guard = SourceGuard(name="exchange", failure_threshold=1, max_retries=1, sleep=no_sleep)
        source = ExchangeSource("https://exchange.test", guard, client=_client(handler), clock=lambda: NOW)

        with pytest.raises(SourceUnavailableError):
            await source.fetch_results("ACME", None, NOW)
        assert source.health()["circuit"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_disabled_without_base_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        source = ExchangeSource("", _guard(), client=_client(handler))
        assert not source.enabled
        assert await source.fetch_results("ACME", None, NOW) == []
        assert await source.has_results("ACME", None) is False


class TestRegistrarSource:
    def test_slug(self):
        assert RegistrarSource.registrar_slug("Link Intime India Pvt. Ltd") == "link-intime-india-pvt-ltd"

    @pytest.mark.asyncio
    async def test_status_and_results(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"available": True})
            return httpx.Response(200, json={"results": [{"panNumber": "ABCDE1234F", "applicationNumber": "9"}]})

        source = RegistrarSource("https://registrar.test", _guard(), client=_client(handler))

        assert await source.has_results("ACME", "KFin Technologies")
        records = await source.fetch_results("ACME", "KFin Technologies", NOW)

        assert records == [{"pan_number": "ABCDE1234F", "application_number": "9"}]
        assert requests[0].url.path == "/kfin-technologies/allotment/ACME/status"
        assert requests[1].url.params["since"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_no_registrar(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        source = RegistrarSource("https://registrar.test", _guard(), client=_client(handler))
        assert await source.has_results("ACME", None) is False
        assert await source.fetch_results("ACME", None, NOW) == []


class TestAggregatorSource:
    @pytest.mark.asyncio
    async def test_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"available": False, "data": []})

        source = AggregatorSource("https://agg.test", _guard(), client=_client(handler))
        assert await source.has_results("ACME", None) is False

    @pytest.mark.asyncio
    async def test_fetch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/allotment/ACME"
            return httpx.Response(200, json={"available": True, "data": [{"pan": "ABCDE1234F", "appNumber": "1"}]})

        source = AggregatorSource("https://agg.test", _guard(), client=_client(handler))
        assert await source.fetch_results("ACME", None, NOW) == [
            {"pan_number": "ABCDE1234F", "application_number": "1"}
        ]


class TestBuildSources:
    def test_source_order_and_guards(self):
        settings = Settings(
            _env_file=None,
            exchange_api_url="https://exchange.test/",
            registrar_api_url="",
            source_failure_threshold=2,
        )
        sources = build_sources(settings)

        assert [s.name for s in sources] == ["exchange", "registrar", "aggregator"]
        assert sources[0].base_url == "https://exchange.test"
        assert not sources[1].enabled
        assert sources[0].guard.circuit.failure_threshold == 2
