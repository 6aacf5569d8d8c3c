#!/usr/bin/env python3
"""
Build a portfolio from evaluated strategy equity curves.

Input is a JSON file holding a list of strategies:
    [{"id": "ema_eurusd", "equity_curve": [1000, 1004.2, ...],
      "regime_scores": {"trend": 2, "range": 1, "shock": 0}, "sharpe": 1.4}, ...]

Usage:
    python scripts/build_portfolio.py strategies.json --regime trend
    python scripts/build_portfolio.py strategies.json --regime shock --max-correlation 0.3
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import structlog
from dotenv import load_dotenv

from src.config import load_config
from src.main import setup_logging
from src.portfolio import PortfolioConstructor, StrategyStream

logger = structlog.get_logger(__name__)


def load_streams(path: str, periods_per_year: int) -> list[StrategyStream]:
    with open(path) as f:
        payload = json.load(f)

    if isinstance(payload, dict):
        payload = payload.get("strategies", [])

    return [StrategyStream.from_dict(item, periods_per_year=periods_per_year) for item in payload]


def main():
    parser = argparse.ArgumentParser(description="Build a decorrelated, regime-routed portfolio")
    parser.add_argument("strategies", help="JSON file with strategy equity curves")
    parser.add_argument("--regime", default="range", help="trend, range or shock")
    parser.add_argument("--max-correlation", type=float, default=None)
    parser.add_argument("--config", default="config/settings.yaml")
    parser.add_argument("--output", default=None, help="Write the result JSON here instead of stdout")

    args = parser.parse_args()

    load_dotenv()
    config = load_config(args.config)
    setup_logging(config.log_level)

    try:
        streams = load_streams(args.strategies, config.portfolio.periods_per_year)
        result = PortfolioConstructor(config.portfolio).construct(
            streams,
            args.regime,
            max_correlation=args.max_correlation,
        )
    except Exception as e:
        logger.exception("portfolio_build_failed", error=str(e))
        sys.exit(1)

    if args.output:
        Path(args.output).write_text(result.to_json())
        logger.info("portfolio_written", path=args.output, accepted=result.accepted_count)
    else:
        print(json.dumps(result.to_dict(), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
