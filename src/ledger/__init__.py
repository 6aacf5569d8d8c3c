"""
Trade ledger module.

Handles:
- Ledger records and direction-aware PnL
- Learn-mode filtering (live+practice, backtest, all)
- Canonical environment signatures
- Paged reads from the ledger store
"""

from src.ledger.environment import EnvironmentKey
from src.ledger.fetcher import PagedTradeFetcher, list_page_function
from src.ledger.trades import (
    LearnMode,
    TradeRecord,
    filter_by_learn_mode,
    has_environment_context,
)

__all__ = [
    "EnvironmentKey",
    "PagedTradeFetcher",
    "list_page_function",
    "LearnMode",
    "TradeRecord",
    "filter_by_learn_mode",
    "has_environment_context",
]
