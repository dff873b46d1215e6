"""ERP data source.

This module provides:
- ErpFact: one observed price/stock value from the ERP
- ErpClient: the protocol the orchestrator consumes
- HttpErpClient: httpx-based client for an ERP REST API

Network and auth failures surface as typed ErpError subclasses so the
orchestrator can fail the job with a meaningful error_details.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from pricesync.core.timeutil import parse_iso, to_iso, utcnow
from pricesync.engine.errors import (
    ErpAuthError,
    ErpError,
    ErpTimeoutError,
    ErpUnavailableError,
)

if TYPE_CHECKING:
    from pricesync.core.config import ErpConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErpFact:
    """Price and stock for one product as reported by the ERP."""

    external_id: str
    price: float
    stock: int | None
    updated_at: datetime
    name: str | None = None
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErpFact:
        """Create from an ERP API item.

        Raises:
            ValueError: If a required field is missing or malformed.
        """
        try:
            external_id = str(data["external_id"])
            price = float(data["price"])
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed ERP item: {data!r}") from e
        stock = data.get("stock")
        return cls(
            external_id=external_id,
            price=price,
            stock=int(stock) if stock is not None else None,
            updated_at=parse_iso(data.get("updated_at")) or utcnow(),
            name=data.get("name"),
            description=data.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "price": self.price,
            "stock": self.stock,
            "updated_at": to_iso(self.updated_at),
            "name": self.name,
            "description": self.description,
        }


class ErpClient(Protocol):
    """Source of ERP price facts."""

    async def fetch_prices(
        self,
        tenant_id: str,
        external_ids: Sequence[str] | None = None,
        *,
        updated_since: datetime | None = None,
    ) -> list[ErpFact]:
        """Fetch prices for a tenant.

        Args:
            tenant_id: Tenant whose catalog is queried.
            external_ids: Restrict to these products (None = all).
            updated_since: Only facts updated after this instant.

        Raises:
            ErpAuthError: Credentials rejected.
            ErpTimeoutError: Request timed out.
            ErpUnavailableError: ERP unreachable or failing.
        """
        ...


class HttpErpClient:
    """ERP client over a JSON REST API.

    Expects ``GET {base_url}/tenants/{tenant_id}/prices`` returning
    ``{"items": [...], "has_more": bool}``, paged with ``page``.
    """

    def __init__(
        self,
        config: ErpConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the ERP client.

        Args:
            config: ERP URL, token and timeout.
            transport: Optional transport override.
        """
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            headers={"Authorization": f"Bearer {config.token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> HttpErpClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle ERP response and raise appropriate exceptions."""
        if response.status_code in (401, 403):
            raise ErpAuthError("ERP rejected credentials", response.status_code)
        if response.status_code >= 400:
            raise ErpUnavailableError(
                f"ERP returned HTTP {response.status_code}", response.status_code
            )
        return response

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise ErpTimeoutError(f"ERP request timed out: {path}") from e
        except httpx.RequestError as e:
            raise ErpUnavailableError(f"ERP unreachable: {e}") from e
        data = self._handle_response(response).json()
        if isinstance(data, list):
            return {"items": data, "has_more": False}
        if not isinstance(data, dict):
            raise ErpError("Unexpected ERP response shape")
        return data

    async def fetch_prices(
        self,
        tenant_id: str,
        external_ids: Sequence[str] | None = None,
        *,
        updated_since: datetime | None = None,
    ) -> list[ErpFact]:
        params: dict[str, Any] = {}
        if external_ids is not None:
            if not external_ids:
                return []
            params["ids"] = ",".join(external_ids)
        if updated_since is not None:
            params["updated_since"] = to_iso(updated_since)

        facts: list[ErpFact] = []
        page = 1
        while True:
            data = await self._get(f"/tenants/{tenant_id}/prices", {**params, "page": page})
            for item in data.get("items", []):
                try:
                    facts.append(ErpFact.from_dict(item))
                except ValueError:
                    logger.warning("Skipping malformed ERP item for tenant %s: %r", tenant_id, item)
            if not data.get("has_more"):
                break
            page += 1

        logger.debug("Fetched %d ERP prices for tenant %s", len(facts), tenant_id)
        return facts

    async def health_check(self) -> bool:
        """Check if the ERP answers.

        Returns:
            True if the ERP is reachable and accepts our token.
        """
        try:
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False
