# Database Models

from .database import (
    Base,
    engine,
    async_session_maker,
    get_session,
    init_db,
    enable_sqlite_savepoints,
    utc_now,
    to_naive_utc,
)
from .transaction import Transaction, TransactionType, TransactionSide
from .tax_lot import (
    CostBasisLot,
    RealizedGain,
    LotConsumption,
    LotSource,
    HoldingPeriod,
    QUANTITY_EPSILON,
)

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_session",
    "init_db",
    "enable_sqlite_savepoints",
    "utc_now",
    "to_naive_utc",
    "Transaction",
    "TransactionType",
    "TransactionSide",
    "CostBasisLot",
    "RealizedGain",
    "LotConsumption",
    "LotSource",
    "HoldingPeriod",
    "QUANTITY_EPSILON",
]
