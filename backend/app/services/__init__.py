# Business Logic Services

from .config import (
    ConfigService,
    config_service,
    setup_logging,
    ConfigValidationException,
    ConfigValidationError,
)
from .price_resolver import (
    PriceResolver,
    StaticPriceResolver,
    ExchangePriceResolver,
    resolve_price,
)
from .ledger_engine import (
    LedgerEngine,
    LedgerError,
    LedgerAction,
    RecalculationResult,
    classify,
    consume_fifo,
    holding_period_for,
)
from .pnl_queries import (
    PnLQueryService,
    UnrealizedPnl,
    PnlSummary,
    Page,
)
from .transactions import (
    TransactionService,
    UserLockRegistry,
    ledger_locks,
)

__all__ = [
    # Config
    "ConfigService",
    "config_service",
    "setup_logging",
    "ConfigValidationException",
    "ConfigValidationError",
    # Prices
    "PriceResolver",
    "StaticPriceResolver",
    "ExchangePriceResolver",
    "resolve_price",
    # Ledger
    "LedgerEngine",
    "LedgerError",
    "LedgerAction",
    "RecalculationResult",
    "classify",
    "consume_fifo",
    "holding_period_for",
    # Queries
    "PnLQueryService",
    "UnrealizedPnl",
    "PnlSummary",
    "Page",
    # Feed
    "TransactionService",
    "UserLockRegistry",
    "ledger_locks",
]
