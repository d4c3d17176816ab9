# API Routers

from . import health, pnl

__all__ = ["health", "pnl"]
