"""Test doubles shared by the pricesync test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime

from pricesync.core.timeutil import as_utc, utcnow
from pricesync.engine.erp import ErpFact

TENANT = "acme"


class FakeErpClient:
    """In-memory ERP: facts keyed by tenant and external id."""

    def __init__(self) -> None:
        self.facts: dict[str, dict[str, ErpFact]] = {}
        self.calls: list[dict[str, object]] = []
        self.error: Exception | None = None
        self.delay = 0.0

    def set_price(
        self,
        tenant_id: str,
        external_id: str,
        price: float,
        stock: int | None = None,
        updated_at: datetime | None = None,
        name: str | None = None,
        description: str | None = None,
    ) -> ErpFact:
        fact = ErpFact(
            external_id=external_id,
            price=price,
            stock=stock,
            updated_at=updated_at or utcnow(),
            name=name,
            description=description,
        )
        self.facts.setdefault(tenant_id, {})[external_id] = fact
        return fact

    async def fetch_prices(
        self,
        tenant_id: str,
        external_ids: Sequence[str] | None = None,
        *,
        updated_since: datetime | None = None,
    ) -> list[ErpFact]:
        self.calls.append(
            {"tenant_id": tenant_id, "external_ids": external_ids, "updated_since": updated_since}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        facts = list(self.facts.get(tenant_id, {}).values())
        if external_ids is not None:
            wanted = set(external_ids)
            facts = [f for f in facts if f.external_id in wanted]
        if updated_since is not None:
            since = as_utc(updated_since)
            facts = [f for f in facts if as_utc(f.updated_at) > since]
        return facts


class RecordingPublisher:
    """External publisher that keeps what it receives."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, object]]] = []

    def publish(self, topic: str, payload: dict[str, object]) -> None:
        self.published.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]
