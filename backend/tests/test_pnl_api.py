"""API tests for the P&L endpoints.

Tests focus on the HTTP layer: routing, query parameters, serialization and
error mapping. Ledger state is seeded through the engine.
"""

import pytest
from datetime import datetime

from app.models import TransactionType

from conftest import USER, add_transaction, apply


@pytest.fixture
async def seeded(ledger, test_db, prices):
    await apply(ledger, test_db, TransactionType.DEPOSIT, "BTC", 1.0, datetime(2024, 1, 1), price=20000.0)
    await apply(ledger, test_db, TransactionType.DEPOSIT, "BTC", 0.5, datetime(2024, 2, 1), price=30000.0)
    await apply(ledger, test_db, TransactionType.WITHDRAWAL, "BTC", 1.2, datetime(2024, 3, 1), price=40000.0)
    await apply(ledger, test_db, TransactionType.DEPOSIT, "ETH", 1.0, datetime(2024, 3, 2), price=3000.0, exchange="kraken")
    await test_db.commit()
    prices.set_price("BTC", 50000.0)
    prices.set_price("ETH", 3000.0)


class TestReadEndpoints:

    async def test_summary(self, client, seeded):
        response = await client.get(f"/api/pnl/{USER}/summary")

        assert response.status_code == 200
        data = response.json()
        assert data["total_realized_pnl"] == pytest.approx(22000.0)
        assert data["total_unrealized_pnl"] == pytest.approx(6000.0)
        assert data["total_pnl"] == pytest.approx(28000.0)
        assert [a["asset"] for a in data["by_asset"]] == ["BTC", "ETH"]
        assert set(data["period_breakdown"]) == {"today", "this_week", "this_month", "this_year", "all_time"}

    async def test_unrealized(self, client, seeded):
        response = await client.get(f"/api/pnl/{USER}/unrealized")

        assert response.status_code == 200
        positions = {p["asset"]: p for p in response.json()["positions"]}
        assert positions["BTC"]["amount"] == pytest.approx(0.3)
        assert positions["ETH"]["unrealized_pnl"] == pytest.approx(0.0)

    async def test_realized(self, client, seeded):
        response = await client.get(f"/api/pnl/{USER}/realized")

        assert response.status_code == 200
        records = response.json()
        assert len(records) == 1
        assert records[0]["realized_gain"] == pytest.approx(22000.0)
        assert records[0]["holding_period"] == "short_term"
        assert len(records[0]["lot_breakdown"]) == 2

    async def test_realized_date_filter(self, client, seeded):
        response = await client.get(
            f"/api/pnl/{USER}/realized", params={"start_date": "2024-03-02T00:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json() == []

    async def test_realized_paginated(self, client, seeded):
        response = await client.get(
            f"/api/pnl/{USER}/realized/paginated", params={"page": 1, "limit": 10, "assets": "BTC, ETH"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["page"] == 1
        assert data["limit"] == 10
        assert data["total_pages"] == 1

    async def test_realized_paginated_rejects_bad_page(self, client, seeded):
        response = await client.get(f"/api/pnl/{USER}/realized/paginated", params={"page": 0})

        assert response.status_code == 422

    async def test_lots(self, client, seeded):
        open_only = await client.get(f"/api/pnl/{USER}/lots")
        everything = await client.get(f"/api/pnl/{USER}/lots", params={"show_empty": "true"})
        kraken = await client.get(f"/api/pnl/{USER}/lots", params={"exchanges": "kraken"})

        assert open_only.json()["total"] == 2
        assert everything.json()["total"] == 3
        assert [lot["asset"] for lot in kraken.json()["items"]] == ["ETH"]

    async def test_filters(self, client, seeded):
        response = await client.get(f"/api/pnl/{USER}/filters")

        assert response.json() == {"assets": ["BTC", "ETH"], "exchanges": ["binance", "kraken"]}

    async def test_evolution(self, client, seeded):
        response = await client.get(f"/api/pnl/{USER}/evolution", params={"timeframe": "all"})

        assert response.status_code == 200
        data = response.json()
        assert data["timeframe"] == "all"
        assert len(data["points"]) == 1
        assert data["points"][0]["date"] == "2024-03-01"
        assert data["points"][0]["cumulative"] == pytest.approx(22000.0)

    async def test_evolution_unknown_timeframe(self, client):
        response = await client.get(f"/api/pnl/{USER}/evolution", params={"timeframe": "5y"})

        assert response.status_code == 400

    async def test_unknown_user_is_empty(self, client):
        response = await client.get("/api/pnl/nobody/summary")

        assert response.status_code == 200
        assert response.json()["total_pnl"] == 0.0


class TestRecalculate:

    async def test_recalculate(self, client, seeded, test_db):
        await add_transaction(test_db, TransactionType.DEPOSIT, "BTC", 0.0, datetime(2024, 3, 3))
        await test_db.commit()

        response = await client.post(f"/api/pnl/{USER}/recalculate")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 5
        assert data["processed"] == 4
        assert len(data["failed"]) == 1
        assert "Processed 4 of 5" in data["message"]

        realized = await client.get(f"/api/pnl/{USER}/realized")
        assert realized.json()[0]["realized_gain"] == pytest.approx(22000.0)
