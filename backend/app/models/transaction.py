"""Transaction model - normalized acquisition/disposal events from the feed.

CRITICAL: Transactions are the input of the cost basis ledger.
- Produced by exchange sync, CSV import or manual entry (already normalized)
- Immutable once recorded; the ledger never mutates them
- Unique per (exchange, external_id); duplicates are dropped by the feed

Design constraints:
- Replay order is (timestamp, id) ascending
- amount is a signed magnitude; the ledger uses its absolute value
- price is USD per unit and optional (absent for most deposits/withdrawals)
"""

from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, Index, UniqueConstraint, select, Enum as SQLEnum

from .database import Base, utc_now


class TransactionType(str, Enum):
    """Transaction type enumeration."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRADE = "trade"
    TRANSFER = "transfer"
    INTEREST = "interest"
    FEE = "fee"


class TransactionSide(str, Enum):
    """Trade side enumeration (only meaningful for trades)."""
    BUY = "buy"
    SELL = "sell"


class Transaction(Base):
    """Normalized transaction record.

    Example:
        deposit  1.0 BTC            (no price, resolved historically)
        trade    0.5 ETH buy @ 2000 (explicit USD price)
        withdrawal 0.2 BTC          (disposal, consumes lots FIFO)
    """
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("exchange", "external_id", name="uq_transactions_exchange_external_id"),
        Index("ix_transactions_user_timestamp", "user_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(String(100), nullable=False, index=True)
    exchange = Column(String(50), nullable=False)
    external_id = Column(String(200), nullable=False)

    type = Column(SQLEnum(TransactionType), nullable=False, index=True)
    side = Column(SQLEnum(TransactionSide), nullable=True)
    asset = Column(String(20), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    price = Column(Float, nullable=True)                   # USD per unit

    fee = Column(Float, nullable=True)
    fee_asset = Column(String(20), nullable=True)

    timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        side = f" {self.side.value}" if self.side else ""
        return (
            f"<Transaction(id={self.id}, "
            f"{self.type.value}{side} {self.amount:.8f} {self.asset} "
            f"@ {self.exchange})>"
        )

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "exchange": self.exchange,
            "external_id": self.external_id,
            "type": self.type.value,
            "side": self.side.value if self.side else None,
            "asset": self.asset,
            "amount": self.amount,
            "price": self.price,
            "fee": self.fee,
            "fee_asset": self.fee_asset,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def history_for(cls, user_id: str):
        """Select a user's transactions in replay order (timestamp, then insertion)."""
        return select(cls).where(cls.user_id == user_id).order_by(cls.timestamp, cls.id)
