"""Tests for the HTTP ERP client."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest

from pricesync.core.config import ErpConfig
from pricesync.engine.erp import ErpFact, HttpErpClient
from pricesync.engine.errors import ErpAuthError, ErpTimeoutError, ErpUnavailableError


def make_config() -> ErpConfig:
    return ErpConfig(base_url="http://erp.test", token="secret", timeout=5.0)


def item(external_id: str, price: float, **extra: object) -> dict[str, object]:
    return {"external_id": external_id, "price": price, "updated_at": "2025-01-01T00:00:00Z", **extra}


class TestErpFact:
    """Tests for ErpFact parsing."""

    def test_from_dict(self) -> None:
        fact = ErpFact.from_dict(item("SKU-1", "19.99", stock="4", name="Widget"))
        assert fact.external_id == "SKU-1"
        assert fact.price == 19.99
        assert fact.stock == 4
        assert fact.name == "Widget"
        assert fact.updated_at == datetime(2025, 1, 1, tzinfo=UTC)

    def test_missing_price(self) -> None:
        with pytest.raises(ValueError):
            ErpFact.from_dict({"external_id": "SKU-1"})

    def test_non_numeric_price(self) -> None:
        with pytest.raises(ValueError):
            ErpFact.from_dict({"external_id": "SKU-1", "price": "cheap"})

    def test_to_dict(self) -> None:
        fact = ErpFact.from_dict(item("SKU-1", 5))
        assert fact.to_dict()["updated_at"] == "2025-01-01T00:00:00+00:00"
        assert fact.to_dict()["stock"] is None


class TestHttpErpClient:
    """Tests for HttpErpClient."""

    @pytest.mark.asyncio
    async def test_fetch_prices(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should parse items and send the bearer token."""
        httpx_mock.add_response(
            url="http://erp.test/tenants/acme/prices?page=1",
            json={"items": [item("SKU-1", 10.0), item("SKU-2", 12.5, stock=3)], "has_more": False},
        )

        async with HttpErpClient(make_config()) as client:
            facts = await client.fetch_prices("acme")

        assert [f.external_id for f in facts] == ["SKU-1", "SKU-2"]
        assert facts[1].stock == 3
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_follows_pages(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should keep requesting pages while has_more is set."""
        httpx_mock.add_response(
            url="http://erp.test/tenants/acme/prices?page=1",
            json={"items": [item("SKU-1", 10.0)], "has_more": True},
        )
        httpx_mock.add_response(
            url="http://erp.test/tenants/acme/prices?page=2",
            json={"items": [item("SKU-2", 11.0)], "has_more": False},
        )

        async with HttpErpClient(make_config()) as client:
            facts = await client.fetch_prices("acme")

        assert [f.external_id for f in facts] == ["SKU-1", "SKU-2"]

    @pytest.mark.asyncio
    async def test_plain_list_response(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A bare JSON list should be read as a single page."""
        httpx_mock.add_response(json=[item("SKU-1", 10.0)])

        async with HttpErpClient(make_config()) as client:
            facts = await client.fetch_prices("acme")

        assert len(facts) == 1

    @pytest.mark.asyncio
    async def test_filters_sent_as_params(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(json={"items": [], "has_more": False})
        since = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

        async with HttpErpClient(make_config()) as client:
            await client.fetch_prices("acme", ["SKU-1", "SKU-2"], updated_since=since)

        params = httpx_mock.get_requests()[0].url.params
        assert params["ids"] == "SKU-1,SKU-2"
        assert params["updated_since"] == "2025-01-01T12:00:00+00:00"
        assert params["page"] == "1"

    @pytest.mark.asyncio
    async def test_empty_id_list_skips_request(self) -> None:
        async with HttpErpClient(make_config()) as client:
            assert await client.fetch_prices("acme", []) == []

    @pytest.mark.asyncio
    async def test_malformed_items_skipped(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            json={"items": [{"external_id": "SKU-1"}, item("SKU-2", 3.0)], "has_more": False}
        )

        async with HttpErpClient(make_config()) as client:
            facts = await client.fetch_prices("acme")

        assert [f.external_id for f in facts] == ["SKU-2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_auth_error(self, httpx_mock, status_code: int) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(status_code=status_code)

        async with HttpErpClient(make_config()) as client:
            with pytest.raises(ErpAuthError) as exc_info:
                await client.fetch_prices("acme")

        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_server_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(status_code=503)

        async with HttpErpClient(make_config()) as client:
            with pytest.raises(ErpUnavailableError, match="503"):
                await client.fetch_prices("acme")

    @pytest.mark.asyncio
    async def test_timeout(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        async with HttpErpClient(make_config()) as client:
            with pytest.raises(ErpTimeoutError):
                await client.fetch_prices("acme")

    @pytest.mark.asyncio
    async def test_unreachable(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        async with HttpErpClient(make_config()) as client:
            with pytest.raises(ErpUnavailableError):
                await client.fetch_prices("acme")

    @pytest.mark.asyncio
    async def test_health_check(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://erp.test/health", json={"status": "ok"})

        async with HttpErpClient(make_config()) as client:
            assert await client.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_failure(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url="http://erp.test/health", status_code=500)

        async with HttpErpClient(make_config()) as client:
            assert await client.health_check() is False
