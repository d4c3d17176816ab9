"""Cost basis lot model - FIFO cost basis tracking per user and asset.

CRITICAL: Lots track the USD cost basis of acquired units using FIFO (First-In-First-Out).
- Acquisitions (buy, deposit, interest) create lots
- Disposals (sell, withdrawal) consume lots in acquired_at order
- Lot consumption is deterministic and persisted
- NEVER compute realized gains on the fly - always use persisted records

Design constraints:
- remaining_amount only ever decreases and never goes below zero
- Lots are only deleted by a full recalculation wipe
- Realized records keep a weak reference (plain id) to the lots they consumed
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Boolean, Index, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base, utc_now

# Remaining quantities at or below this are dust and snap to zero
QUANTITY_EPSILON = 1e-12


class LotSource(str, Enum):
    """Acquisition cause of a lot."""
    BUY = "buy"
    DEPOSIT = "deposit"
    INTEREST = "interest"
    TRANSFER_IN = "transfer_in"


class HoldingPeriod(str, Enum):
    """Tax-style holding period classification."""
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"


class CostBasisLot(Base):
    """Acquisition lot for FIFO cost basis tracking.

    Example workflow:
        DEPOSIT 1.0 BTC @ $20,000 -> Lot A (1.0 BTC remaining)
        DEPOSIT 0.5 BTC @ $30,000 -> Lot B (0.5 BTC remaining)
        WITHDRAWAL 1.2 BTC @ $40,000 ->
            Lot A: 1.0 BTC consumed (0 remaining)
            Lot B: 0.2 BTC consumed (0.3 remaining)
    """
    __tablename__ = "cost_basis_lots"
    __table_args__ = (
        Index("ix_cost_basis_lots_fifo", "user_id", "asset", "acquired_at"),
        Index("ix_cost_basis_lots_open", "user_id", "asset", "remaining_amount"),
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(String(100), nullable=False, index=True)
    asset = Column(String(20), nullable=False)

    original_amount = Column(Float, nullable=False)
    remaining_amount = Column(Float, nullable=False)
    cost_per_unit = Column(Float, nullable=False)           # USD

    acquired_at = Column(DateTime, nullable=False)
    source_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True, index=True)
    exchange = Column(String(50), nullable=False)
    source = Column(SQLEnum(LotSource), nullable=False)

    is_fully_consumed = Column(Boolean, default=False, nullable=False, index=True)
    consumed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)

    source_transaction = relationship("Transaction", foreign_keys=[source_transaction_id])

    def __repr__(self):
        return (
            f"<CostBasisLot(id={self.id}, "
            f"asset={self.asset}, "
            f"remaining={self.remaining_amount:.8f}, "
            f"cost=${self.cost_per_unit:.2f})>"
        )

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "asset": self.asset,
            "original_amount": self.original_amount,
            "remaining_amount": self.remaining_amount,
            "cost_per_unit": self.cost_per_unit,
            "cost_basis": self.remaining_amount * self.cost_per_unit,
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
            "source_transaction_id": self.source_transaction_id,
            "exchange": self.exchange,
            "source": self.source.value if self.source else None,
            "is_fully_consumed": self.is_fully_consumed,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
        }

    def consume(self, quantity: float, consumed_at: datetime) -> float:
        """Consume quantity from this lot.

        Args:
            quantity: Amount to consume
            consumed_at: Timestamp of consumption

        Returns:
            Amount actually consumed (may be less if lot doesn't have enough)

        Note:
            This method updates remaining_amount but does NOT flush.
        """
        consumed = max(0.0, min(quantity, self.remaining_amount))
        self.remaining_amount -= consumed

        if self.remaining_amount <= QUANTITY_EPSILON:
            self.remaining_amount = 0.0
            self.is_fully_consumed = True
            self.consumed_at = consumed_at

        return consumed


class RealizedGain(Base):
    """Realized gain/loss record for one disposal transaction.

    CRITICAL: This is the AUTHORITATIVE source for realized P&L.

    Invariants:
        cost_basis  == sum(amount_consumed * cost_per_unit) over lot_breakdown
        amount_sold == sum(amount_consumed) over lot_breakdown
    """
    __tablename__ = "realized_gains"
    __table_args__ = (
        Index("ix_realized_gains_user_realized_at", "user_id", "realized_at"),
        Index("ix_realized_gains_user_asset", "user_id", "asset"),
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(String(100), nullable=False, index=True)
    source_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True, index=True)
    asset = Column(String(20), nullable=False)

    amount_sold = Column(Float, nullable=False)             # Matched against lots
    proceeds = Column(Float, nullable=False)                # amount_sold * disposal price
    cost_basis = Column(Float, nullable=False)
    realized_gain = Column(Float, nullable=False)           # proceeds - cost_basis

    realized_at = Column(DateTime, nullable=False)
    holding_period = Column(SQLEnum(HoldingPeriod), nullable=False)
    exchange = Column(String(50), nullable=False)

    created_at = Column(DateTime, default=utc_now, nullable=False)

    lot_breakdown = relationship(
        "LotConsumption",
        back_populates="realized_gain",
        cascade="all, delete-orphan",
        order_by="LotConsumption.position",
        lazy="selectin",
    )

    def __repr__(self):
        return (
            f"<RealizedGain(id={self.id}, "
            f"asset={self.asset}, "
            f"amount_sold={self.amount_sold:.8f}, "
            f"realized_gain=${self.realized_gain:+.2f})>"
        )

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source_transaction_id": self.source_transaction_id,
            "asset": self.asset,
            "amount_sold": self.amount_sold,
            "proceeds": self.proceeds,
            "cost_basis": self.cost_basis,
            "realized_gain": self.realized_gain,
            "realized_at": self.realized_at.isoformat() if self.realized_at else None,
            "holding_period": self.holding_period.value if self.holding_period else None,
            "exchange": self.exchange,
            "lot_breakdown": [entry.to_dict() for entry in self.lot_breakdown],
        }


class LotConsumption(Base):
    """One lot's contribution to a realized gain record (ordered by position)."""
    __tablename__ = "realized_gain_lots"

    id = Column(Integer, primary_key=True)
    realized_gain_id = Column(
        Integer, ForeignKey("realized_gains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)

    # Weak reference: lots can be wiped without touching audit rows
    lot_id = Column(Integer, nullable=False)
    amount_consumed = Column(Float, nullable=False)
    cost_per_unit = Column(Float, nullable=False)
    lot_acquired_at = Column(DateTime, nullable=False)

    realized_gain = relationship("RealizedGain", back_populates="lot_breakdown")

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "lot_id": self.lot_id,
            "amount_consumed": self.amount_consumed,
            "cost_per_unit": self.cost_per_unit,
            "lot_acquired_at": self.lot_acquired_at.isoformat() if self.lot_acquired_at else None,
        }
