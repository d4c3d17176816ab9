"""P&L API endpoints.

Read-only views over the cost basis ledger plus the recalculation trigger.
All data comes from the committed lot and realized gain stores.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session, to_naive_utc, HoldingPeriod
from ..services.config import config_service
from ..services.ledger_engine import LedgerEngine
from ..services.pnl_queries import PnLQueryService
from ..services.price_resolver import PriceResolver
from ..services.transactions import ledger_locks

router = APIRouter(prefix="/pnl", tags=["pnl"])


class LotConsumptionResponse(BaseModel):
    """Schema for one lot's share of a realized gain."""
    lot_id: int
    amount_consumed: float
    cost_per_unit: float
    lot_acquired_at: datetime

    class Config:
        from_attributes = True


class RealizedGainResponse(BaseModel):
    """Schema for realized gain response."""
    id: int
    user_id: str
    source_transaction_id: Optional[int]
    asset: str
    amount_sold: float
    proceeds: float
    cost_basis: float
    realized_gain: float
    realized_at: datetime
    holding_period: HoldingPeriod
    exchange: str
    lot_breakdown: List[LotConsumptionResponse]

    class Config:
        from_attributes = True


class RecalculateResponse(BaseModel):
    """Schema for recalculation response."""
    processed: int
    total: int
    failed: List[int]
    message: str


def get_price_resolver(request: Request) -> PriceResolver:
    """Dependency returning the application's price resolver."""
    return request.app.state.price_resolver


def _split_csv(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def _query_service(session: AsyncSession, resolver: PriceResolver) -> PnLQueryService:
    return PnLQueryService(session, resolver, week_start=config_service.get("pnl.week_start", "sunday"))


@router.get("/{user_id}/summary")
async def get_summary(
    user_id: str,
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Get P&L summary including realized, unrealized and period breakdown."""
    return await _query_service(session, resolver).get_summary(user_id)


@router.get("/{user_id}/unrealized")
async def get_unrealized_pnl(
    user_id: str,
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Get unrealized P&L for current holdings."""
    return await _query_service(session, resolver).get_unrealized_pnl(user_id)


@router.get("/{user_id}/realized", response_model=List[RealizedGainResponse])
async def get_realized_pnl(
    user_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Get realized P&L history, newest first.

    Args:
        user_id: User identifier
        start_date: Only records realized at or after this time
        end_date: Only records realized at or before this time
    """
    return await _query_service(session, resolver).get_realized_pnl(
        user_id, to_naive_utc(start_date), to_naive_utc(end_date)
    )


@router.get("/{user_id}/realized/paginated")
async def get_realized_pnl_paginated(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=500),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    assets: Optional[str] = Query(None, description="Comma-separated asset filter"),
    exchanges: Optional[str] = Query(None, description="Comma-separated exchange filter"),
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Get realized P&L with pagination and filters."""
    return await _query_service(session, resolver).get_realized_pnl_paginated(
        user_id,
        page=page,
        limit=limit,
        start=to_naive_utc(start_date),
        end=to_naive_utc(end_date),
        assets=_split_csv(assets),
        exchanges=_split_csv(exchanges),
    )


@router.get("/{user_id}/lots")
async def get_cost_basis_lots(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=500),
    assets: Optional[str] = Query(None, description="Comma-separated asset filter"),
    exchanges: Optional[str] = Query(None, description="Comma-separated exchange filter"),
    show_empty: bool = Query(False, description="Include fully consumed lots"),
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Get cost basis lots in FIFO order with pagination and filters."""
    return await _query_service(session, resolver).get_cost_basis_lots(
        user_id,
        page=page,
        limit=limit,
        assets=_split_csv(assets),
        exchanges=_split_csv(exchanges),
        show_empty=show_empty,
    )


@router.get("/{user_id}/evolution")
async def get_pnl_evolution(
    user_id: str,
    timeframe: str = Query("1y", description="1m, 3m, 6m, 1y, all"),
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Get cumulative realized P&L per day for charting."""
    try:
        return await _query_service(session, resolver).get_pnl_evolution(user_id, timeframe)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{user_id}/filters")
async def get_filters(
    user_id: str,
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Get available assets and exchanges for filtering."""
    return await _query_service(session, resolver).get_available_filters(user_id)


@router.post("/{user_id}/recalculate", response_model=RecalculateResponse)
async def recalculate(
    user_id: str,
    session: AsyncSession = Depends(get_session),
    resolver: PriceResolver = Depends(get_price_resolver),
):
    """Rebuild all lots and realized gains from transaction history."""
    engine = LedgerEngine(session, resolver)
    async with ledger_locks.lock_for(user_id):
        try:
            result = await engine.recalculate_all(user_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    return RecalculateResponse(
        processed=result.processed,
        total=result.total,
        failed=result.failed_transaction_ids,
        message=(
            f"P&L recalculation complete. Processed {result.processed} "
            f"of {result.total} transactions."
        ),
    )
