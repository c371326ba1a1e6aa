"""
Automated trading sweep CLI (scheduler entry point).

Examples:
  python backend/scripts/run_automated_trading.py --user-id u1 --portfolio-id <id>
  python backend/scripts/run_automated_trading.py --user-id u1 --portfolio-id <id> \
      --stocks AAPL MSFT --crypto BTCUSD
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure backend package imports resolve when launched from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from api.dependencies import (  # noqa: E402
    build_signal_service,
    build_trading_engine,
    close_gateways,
    get_market_data,
)
from api.middleware import configure_structured_logging  # noqa: E402
from config.settings import get_settings  # noqa: E402
from engine.models import AssetType  # noqa: E402
from services.portfolio import PortfolioService  # noqa: E402
from storage.database import SessionLocal, init_db  # noqa: E402
from storage.service import StorageService  # noqa: E402

logger = logging.getLogger("run_automated_trading")


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        portfolio_service = PortfolioService(StorageService(db), market_data=get_market_data())

        requests = [(symbol, AssetType.STOCK) for symbol in args.stocks or []]
        requests += [(symbol, AssetType.CRYPTO) for symbol in args.crypto or []]
        if requests:
            outcomes = await build_signal_service(portfolio_service).generate_batch(
                requests, user_id=args.user_id, portfolio_id=args.portfolio_id,
            )
            for outcome in outcomes:
                if not outcome.success:
                    logger.warning("Signal for %s skipped: %s", outcome.symbol, outcome.error)

        engine = build_trading_engine(portfolio_service)
        summary = await engine.process_automated_trading(args.user_id, args.portfolio_id)
        _print({
            "success": summary.success,
            "portfolio_id": summary.portfolio_id,
            "processed": summary.processed,
            "executed": summary.executed,
            "failed": summary.failed,
            "results": [outcome.__dict__ for outcome in summary.results],
            "error": summary.error,
        })
        return 0 if summary.success else 1
    finally:
        db.close()
        await close_gateways()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run one automated trading sweep")
    parser.add_argument("--user-id", required=True, help="Portfolio owner")
    parser.add_argument("--portfolio-id", required=True, help="Portfolio to trade")
    parser.add_argument("--stocks", nargs="*", help="Generate stock signals before the sweep")
    parser.add_argument("--crypto", nargs="*", help="Generate crypto signals before the sweep")
    args = parser.parse_args(argv)

    configure_structured_logging(get_settings().log_level)
    init_db()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
