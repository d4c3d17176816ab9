"""Read-only P&L aggregation over the lot and realized gain stores.

Nothing here mutates state: unrealized P&L, summaries, period breakdowns and
listings are derived from committed lots/records plus current prices.
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import CostBasisLot, RealizedGain, utc_now
from .price_resolver import PriceResolver

logger = logging.getLogger(__name__)

EVOLUTION_TIMEFRAMES = {
    "1m": 30,
    "3m": 90,
    "6m": 180,
    "1y": 365,
    "all": None,
}


@dataclass
class UnrealizedPosition:
    asset: str
    amount: float
    cost_basis: float
    current_price: float
    current_value: float
    unrealized_pnl: float
    unrealized_pnl_percent: float


@dataclass
class UnrealizedPnl:
    total_unrealized_pnl: float
    positions: List[UnrealizedPosition]


@dataclass
class AssetPnl:
    asset: str
    realized_pnl: float
    unrealized_pnl: float
    total_cost_basis: float
    current_value: float
    total_amount: float


@dataclass
class PeriodBreakdown:
    today: float
    this_week: float
    this_month: float
    this_year: float
    all_time: float


@dataclass
class PnlSummary:
    total_realized_pnl: float
    total_unrealized_pnl: float
    total_pnl: float
    by_asset: List[AssetPnl]
    period_breakdown: PeriodBreakdown


@dataclass
class Page:
    """Page envelope for paginated listings."""
    items: List[Dict[str, Any]]
    total: int
    page: int
    limit: int
    total_pages: int


@dataclass
class EvolutionPoint:
    date: date
    realized: float
    cumulative: float


@dataclass
class PnlEvolution:
    timeframe: str
    start: Optional[datetime]
    points: List[EvolutionPoint] = field(default_factory=list)


@dataclass
class PeriodBoundaries:
    start_of_day: datetime
    start_of_week: datetime
    start_of_month: datetime
    start_of_year: datetime


def period_boundaries(now: datetime, week_start: str = "sunday") -> PeriodBoundaries:
    """UTC boundaries for today / this week / this month / this year.

    Args:
        now: Reference time (naive UTC)
        week_start: "sunday" or "monday"
    """
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if week_start == "monday":
        days_into_week = now.weekday()
    else:
        days_into_week = (now.weekday() + 1) % 7
    return PeriodBoundaries(
        start_of_day=start_of_day,
        start_of_week=start_of_day - timedelta(days=days_into_week),
        start_of_month=start_of_day.replace(day=1),
        start_of_year=start_of_day.replace(month=1, day=1),
    )


def paginate(page: int, limit: int) -> int:
    """Validate paging arguments and return the row offset."""
    if page < 1:
        raise ValueError("page must be >= 1")
    if limit < 1:
        raise ValueError("limit must be >= 1")
    return (page - 1) * limit


def _total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total else 0


class PnLQueryService:
    """Aggregations for the P&L read surface."""

    def __init__(self, session: AsyncSession, price_resolver: PriceResolver, week_start: str = "sunday"):
        """Initialize the query service.

        Args:
            session: Database session
            price_resolver: Source of current USD prices
            week_start: First day of the week for the period breakdown
        """
        self.session = session
        self.price_resolver = price_resolver
        self.week_start = week_start

    async def get_unrealized_pnl(self, user_id: str) -> UnrealizedPnl:
        """Value open lots at current prices, grouped by asset."""
        result = await self.session.execute(
            select(CostBasisLot)
            .where(CostBasisLot.user_id == user_id, CostBasisLot.remaining_amount > 0)
            .order_by(CostBasisLot.asset, CostBasisLot.acquired_at, CostBasisLot.id)
        )
        lots = result.scalars().all()

        holdings: "OrderedDict[str, Dict[str, float]]" = OrderedDict()
        for lot in lots:
            entry = holdings.setdefault(lot.asset, {"amount": 0.0, "cost_basis": 0.0})
            entry["amount"] += lot.remaining_amount
            entry["cost_basis"] += lot.remaining_amount * lot.cost_per_unit

        prices = await self.price_resolver.current_prices(list(holdings))

        positions = []
        for asset, entry in holdings.items():
            price = prices.get(asset, 0.0)
            current_value = entry["amount"] * price
            unrealized = current_value - entry["cost_basis"]
            percent = unrealized / entry["cost_basis"] * 100 if entry["cost_basis"] > 0 else 0.0
            positions.append(UnrealizedPosition(
                asset=asset,
                amount=entry["amount"],
                cost_basis=entry["cost_basis"],
                current_price=price,
                current_value=current_value,
                unrealized_pnl=unrealized,
                unrealized_pnl_percent=percent,
            ))

        logger.debug(f"Valued {len(positions)} open positions for user {user_id}")
        return UnrealizedPnl(
            total_unrealized_pnl=sum(p.unrealized_pnl for p in positions),
            positions=positions,
        )

    async def get_summary(self, user_id: str, now: Optional[datetime] = None) -> PnlSummary:
        """Realized + unrealized totals, per-asset breakdown and period buckets."""
        result = await self.session.execute(
            select(RealizedGain).where(RealizedGain.user_id == user_id)
        )
        records = result.scalars().all()
        total_realized = sum(r.realized_gain for r in records)

        unrealized = await self.get_unrealized_pnl(user_id)

        bounds = period_boundaries(now or utc_now(), self.week_start)
        breakdown = PeriodBreakdown(
            today=_sum_since(records, bounds.start_of_day),
            this_week=_sum_since(records, bounds.start_of_week),
            this_month=_sum_since(records, bounds.start_of_month),
            this_year=_sum_since(records, bounds.start_of_year),
            all_time=total_realized,
        )

        realized_by_asset: Dict[str, float] = {}
        for record in records:
            realized_by_asset[record.asset] = realized_by_asset.get(record.asset, 0.0) + record.realized_gain

        positions = {p.asset: p for p in unrealized.positions}
        by_asset = []
        for asset in sorted(set(realized_by_asset) | set(positions)):
            position = positions.get(asset)
            by_asset.append(AssetPnl(
                asset=asset,
                realized_pnl=realized_by_asset.get(asset, 0.0),
                unrealized_pnl=position.unrealized_pnl if position else 0.0,
                total_cost_basis=position.cost_basis if position else 0.0,
                current_value=position.current_value if position else 0.0,
                total_amount=position.amount if position else 0.0,
            ))

        return PnlSummary(
            total_realized_pnl=total_realized,
            total_unrealized_pnl=unrealized.total_unrealized_pnl,
            total_pnl=total_realized + unrealized.total_unrealized_pnl,
            by_asset=by_asset,
            period_breakdown=breakdown,
        )

    async def get_realized_pnl(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[RealizedGain]:
        """Realized gain records in [start, end], newest first."""
        query = self._realized_query(user_id, start, end, None, None)
        result = await self.session.execute(
            query.order_by(RealizedGain.realized_at.desc(), RealizedGain.id.desc())
        )
        return list(result.scalars().all())

    async def get_realized_pnl_paginated(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        assets: Optional[Sequence[str]] = None,
        exchanges: Optional[Sequence[str]] = None,
    ) -> Page:
        """Filtered, paginated realized gain history, newest first."""
        offset = paginate(page, limit)
        query = self._realized_query(user_id, start, end, assets, exchanges)

        total = await self._count(query)
        result = await self.session.execute(
            query.order_by(RealizedGain.realized_at.desc(), RealizedGain.id.desc())
            .limit(limit).offset(offset)
        )
        return Page(
            items=[record.to_dict() for record in result.scalars().all()],
            total=total,
            page=page,
            limit=limit,
            total_pages=_total_pages(total, limit),
        )

    async def get_cost_basis_lots(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        assets: Optional[Sequence[str]] = None,
        exchanges: Optional[Sequence[str]] = None,
        show_empty: bool = False,
    ) -> Page:
        """Paginated lots in FIFO order; fully consumed lots only when show_empty."""
        offset = paginate(page, limit)
        query = select(CostBasisLot).where(CostBasisLot.user_id == user_id)
        if not show_empty:
            query = query.where(CostBasisLot.remaining_amount > 0)
        if assets:
            query = query.where(CostBasisLot.asset.in_(list(assets)))
        if exchanges:
            query = query.where(CostBasisLot.exchange.in_(list(exchanges)))

        total = await self._count(query)
        result = await self.session.execute(
            query.order_by(CostBasisLot.acquired_at, CostBasisLot.id).limit(limit).offset(offset)
        )
        return Page(
            items=[lot.to_dict() for lot in result.scalars().all()],
            total=total,
            page=page,
            limit=limit,
            total_pages=_total_pages(total, limit),
        )

    async def get_available_filters(self, user_id: str) -> Dict[str, List[str]]:
        """Distinct assets and exchanges across lots and realized records."""
        assets = set()
        exchanges = set()
        for model in (CostBasisLot, RealizedGain):
            result = await self.session.execute(
                select(model.asset, model.exchange).where(model.user_id == user_id).distinct()
            )
            for asset, exchange in result.all():
                assets.add(asset)
                exchanges.add(exchange)
        return {"assets": sorted(assets), "exchanges": sorted(exchanges)}

    async def get_pnl_evolution(
        self,
        user_id: str,
        timeframe: str = "1y",
        now: Optional[datetime] = None,
    ) -> PnlEvolution:
        """Daily realized P&L with running total over a timeframe.

        Raises:
            ValueError: If timeframe is not one of EVOLUTION_TIMEFRAMES
        """
        if timeframe not in EVOLUTION_TIMEFRAMES:
            raise ValueError(
                f"Unknown timeframe '{timeframe}', expected one of {list(EVOLUTION_TIMEFRAMES)}"
            )

        days = EVOLUTION_TIMEFRAMES[timeframe]
        start = None
        if days is not None:
            start = (now or utc_now()).replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=days)

        query = self._realized_query(user_id, start, None, None, None)
        result = await self.session.execute(query.order_by(RealizedGain.realized_at, RealizedGain.id))

        daily: "OrderedDict[date, float]" = OrderedDict()
        for record in result.scalars().all():
            day = record.realized_at.date()
            daily[day] = daily.get(day, 0.0) + record.realized_gain

        evolution = PnlEvolution(timeframe=timeframe, start=start)
        cumulative = 0.0
        for day, realized in daily.items():
            cumulative += realized
            evolution.points.append(EvolutionPoint(date=day, realized=realized, cumulative=cumulative))
        return evolution

    def _realized_query(self, user_id, start, end, assets, exchanges):
        query = select(RealizedGain).where(RealizedGain.user_id == user_id)
        if start is not None:
            query = query.where(RealizedGain.realized_at >= start)
        if end is not None:
            query = query.where(RealizedGain.realized_at <= end)
        if assets:
            query = query.where(RealizedGain.asset.in_(list(assets)))
        if exchanges:
            query = query.where(RealizedGain.exchange.in_(list(exchanges)))
        return query

    async def _count(self, query) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(query.order_by(None).subquery())
        )
        return result.scalar_one()


def _sum_since(records: Sequence[RealizedGain], since: datetime) -> float:
    return sum(r.realized_gain for r in records if r.realized_at >= since)
