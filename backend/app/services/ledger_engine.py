"""Cost basis ledger engine: lot creation, FIFO consumption and full replay.

CRITICAL: This module turns normalized transactions into persisted lots and
realized gain records.
- Acquisitions (deposit, interest, trade buy) create lots
- Disposals (withdrawal, trade sell) consume lots in FIFO order
- Realized gains are recorded immediately, one record per disposal
- Replay rebuilds a user's lots and records from transaction history

Design constraints:
- Lots are read ordered by (acquired_at, id) before every disposal
- Each transaction is applied inside a SAVEPOINT; caller must commit
- The engine does not lock. Calls for the same (user, asset) must be
  serialized by the caller (see UserLockRegistry)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    Transaction, TransactionType, TransactionSide,
    CostBasisLot, RealizedGain, LotConsumption,
    LotSource, HoldingPeriod, QUANTITY_EPSILON,
)
from .price_resolver import PriceResolver, resolve_price

logger = logging.getLogger(__name__)

LONG_TERM_THRESHOLD = timedelta(days=365)


class LedgerError(Exception):
    """Raised when a transaction cannot be applied to the ledger."""

    def __init__(self, message: str, transaction_id: Optional[int] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class LedgerAction(str, Enum):
    """What the ledger does with a transaction."""
    ACQUISITION = "acquisition"
    DISPOSAL = "disposal"
    IGNORED = "ignored"


# Transfers and fees do not touch cost basis
_TYPE_ACTIONS = {
    TransactionType.DEPOSIT: LedgerAction.ACQUISITION,
    TransactionType.INTEREST: LedgerAction.ACQUISITION,
    TransactionType.WITHDRAWAL: LedgerAction.DISPOSAL,
    TransactionType.TRANSFER: LedgerAction.IGNORED,
    TransactionType.FEE: LedgerAction.IGNORED,
}

_SIDE_ACTIONS = {
    TransactionSide.BUY: LedgerAction.ACQUISITION,
    TransactionSide.SELL: LedgerAction.DISPOSAL,
}

_LOT_SOURCES = {
    TransactionType.DEPOSIT: LotSource.DEPOSIT,
    TransactionType.INTEREST: LotSource.INTEREST,
    TransactionType.TRADE: LotSource.BUY,
}


def classify(tx: Transaction) -> LedgerAction:
    """Classify a transaction as acquisition, disposal or ignored.

    Raises:
        LedgerError: For a trade without a known side or an unmapped type
    """
    if tx.type == TransactionType.TRADE:
        action = _SIDE_ACTIONS.get(tx.side)
        if action is None:
            raise LedgerError(f"Trade {tx.id} has no buy/sell side", tx.id)
        return action

    action = _TYPE_ACTIONS.get(tx.type)
    if action is None:
        raise LedgerError(f"Unhandled transaction type {tx.type!r} for transaction {tx.id}", tx.id)
    return action


def holding_period_for(realized_at: datetime, acquired_at: Optional[datetime]) -> HoldingPeriod:
    """Long term when held at least 365 x 24h (fixed approximation, not calendar years)."""
    if acquired_at is None:
        return HoldingPeriod.SHORT_TERM
    if realized_at - acquired_at >= LONG_TERM_THRESHOLD:
        return HoldingPeriod.LONG_TERM
    return HoldingPeriod.SHORT_TERM


@dataclass
class FifoMatch:
    """Outcome of matching a disposal against open lots."""
    requested: float
    consumptions: List[LotConsumption] = field(default_factory=list)
    amount_sold: float = 0.0
    cost_basis: float = 0.0

    @property
    def shortfall(self) -> float:
        return max(0.0, self.requested - self.amount_sold)


def consume_fifo(lots: Sequence[CostBasisLot], quantity: float, consumed_at: datetime) -> FifoMatch:
    """Consume ``quantity`` from ``lots`` oldest first.

    ``lots`` must already be ordered by (acquired_at, id). Lots are mutated in
    place; the returned breakdown rows are not attached to any record yet.
    Stops early, leaving a shortfall, when the lots run out.
    """
    match = FifoMatch(requested=quantity)
    remaining_to_sell = quantity

    for lot in lots:
        if remaining_to_sell <= QUANTITY_EPSILON:
            break
        if lot.remaining_amount <= 0:
            continue

        cost_per_unit = lot.cost_per_unit
        consumed = lot.consume(remaining_to_sell, consumed_at)
        if consumed <= 0:
            continue

        match.consumptions.append(LotConsumption(
            position=len(match.consumptions),
            lot_id=lot.id,
            amount_consumed=consumed,
            cost_per_unit=cost_per_unit,
            lot_acquired_at=lot.acquired_at,
        ))
        match.amount_sold += consumed
        match.cost_basis += consumed * cost_per_unit
        remaining_to_sell -= consumed

        logger.debug(
            f"Consumed {consumed:.8f} {lot.asset} from lot {lot.id} "
            f"acquired {lot.acquired_at.isoformat()}"
        )

    return match


@dataclass
class RecalculationResult:
    """Result of a full ledger replay."""
    processed: int
    total: int
    failed_transaction_ids: List[int] = field(default_factory=list)
    cancelled: bool = False


class LedgerEngine:
    """FIFO cost basis engine over the lot and realized gain stores.

    Note:
        Caller must commit the session after process_transaction/recalculate_all.
    """

    def __init__(self, session: AsyncSession, price_resolver: PriceResolver):
        """Initialize the engine.

        Args:
            session: Database session
            price_resolver: Source of USD prices for transactions without one
        """
        self.session = session
        self.price_resolver = price_resolver

    async def process_transaction(self, tx: Transaction) -> Optional[object]:
        """Apply one transaction to the ledger.

        Returns:
            The created CostBasisLot or RealizedGain, or None if ignored

        Raises:
            LedgerError: If the transaction is invalid
            SQLAlchemyError: If the store write fails (nothing is applied)
        """
        action = classify(tx)
        if action == LedgerAction.IGNORED:
            logger.debug(f"Transaction {tx.id} ({tx.type.value}) does not affect cost basis")
            return None

        quantity = abs(tx.amount or 0.0)
        if quantity <= 0:
            raise LedgerError(f"Transaction {tx.id} has zero amount", tx.id)

        price = await self._resolve_unit_price(tx)

        try:
            async with self.session.begin_nested():
                if action == LedgerAction.ACQUISITION:
                    return await self._add_lot(tx, quantity, price)
                return await self._consume_lots(tx, quantity, price)
        except LedgerError:
            raise
        except Exception as e:
            logger.error(f"Failed to persist ledger changes for transaction {tx.id}: {e}")
            raise

    async def recalculate_all(
        self,
        user_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RecalculationResult:
        """Wipe and rebuild a user's lots and realized gains from history.

        Per-transaction failures are logged and skipped; ``processed`` counts
        successes only. Setting ``cancel_event`` stops the replay before the next
        transaction; the caller should then roll back instead of committing.
        """
        logger.info(f"Starting P&L recalculation for user {user_id}")

        await self._wipe(user_id)

        result = await self.session.execute(Transaction.history_for(user_id))
        transactions = result.scalars().all()

        logger.info(f"Processing {len(transactions)} transactions for user {user_id}")

        outcome = RecalculationResult(processed=0, total=len(transactions))
        for tx in transactions:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    f"P&L recalculation for user {user_id} cancelled after "
                    f"{outcome.processed}/{outcome.total} transactions"
                )
                outcome.cancelled = True
                break
            tx_id = tx.id
            try:
                await self.process_transaction(tx)
                outcome.processed += 1
            except Exception as e:
                outcome.failed_transaction_ids.append(tx_id)
                logger.warning(f"Failed to process transaction {tx_id}: {e}")

        logger.info(
            f"P&L recalculation complete for user {user_id}. "
            f"Processed {outcome.processed}/{outcome.total} transactions"
        )
        return outcome

    async def _wipe(self, user_id: str) -> None:
        gain_ids = select(RealizedGain.id).where(RealizedGain.user_id == user_id)
        await self.session.execute(
            delete(LotConsumption).where(LotConsumption.realized_gain_id.in_(gain_ids))
        )
        await self.session.execute(delete(RealizedGain).where(RealizedGain.user_id == user_id))
        await self.session.execute(delete(CostBasisLot).where(CostBasisLot.user_id == user_id))

    async def _resolve_unit_price(self, tx: Transaction) -> float:
        if tx.price:
            return float(tx.price)
        return await resolve_price(self.price_resolver, tx.asset, at=tx.timestamp)

    async def _add_lot(self, tx: Transaction, quantity: float, cost_per_unit: float) -> CostBasisLot:
        lot = CostBasisLot(
            user_id=tx.user_id,
            asset=tx.asset,
            original_amount=quantity,
            remaining_amount=quantity,
            cost_per_unit=cost_per_unit,
            acquired_at=tx.timestamp,
            source_transaction_id=tx.id,
            exchange=tx.exchange,
            source=_LOT_SOURCES[tx.type],
            is_fully_consumed=False,
        )
        self.session.add(lot)
        await self.session.flush()

        logger.debug(
            f"Added lot {lot.id}: {quantity:.8f} {tx.asset} "
            f"@ ${cost_per_unit:.2f} ({lot.source.value})"
        )
        return lot

    async def _consume_lots(self, tx: Transaction, quantity: float, proceeds_per_unit: float) -> RealizedGain:
        result = await self.session.execute(
            select(CostBasisLot)
            .where(
                CostBasisLot.user_id == tx.user_id,
                CostBasisLot.asset == tx.asset,
                CostBasisLot.remaining_amount > 0,
            )
            .order_by(CostBasisLot.acquired_at, CostBasisLot.id)
        )
        lots = result.scalars().all()

        match = consume_fifo(lots, quantity, tx.timestamp)

        if not match.consumptions:
            logger.warning(
                f"No lots available for disposal {tx.id} of {quantity:.8f} {tx.asset}; "
                f"recording zero-amount realized gain"
            )
        elif match.shortfall > QUANTITY_EPSILON:
            logger.warning(
                f"Not enough lots to cover disposal {tx.id} of {quantity:.8f} {tx.asset}. "
                f"Missing: {match.shortfall:.8f}"
            )

        proceeds = match.amount_sold * proceeds_per_unit
        oldest = match.consumptions[0].lot_acquired_at if match.consumptions else None

        gain = RealizedGain(
            user_id=tx.user_id,
            source_transaction_id=tx.id,
            asset=tx.asset,
            amount_sold=match.amount_sold,
            proceeds=proceeds,
            cost_basis=match.cost_basis,
            realized_gain=proceeds - match.cost_basis,
            realized_at=tx.timestamp,
            holding_period=holding_period_for(tx.timestamp, oldest),
            exchange=tx.exchange,
            lot_breakdown=match.consumptions,
        )
        self.session.add(gain)
        await self.session.flush()

        logger.info(
            f"Realized gain: {match.amount_sold:.8f} {tx.asset} "
            f"gain/loss=${gain.realized_gain:+.2f} ({gain.holding_period.value})"
        )
        return gain
