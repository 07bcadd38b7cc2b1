"""Deposit scanner runner.

Runs the deposit monitor on its own, without the API, to record inbound
transfers to the pool addresses.

Usage:
    python -m poolwallet.scanner.runner            # all chains, forever
    python -m poolwallet.scanner.runner --once     # one cycle of every chain
    python -m poolwallet.scanner.runner --chain btc --once

Environment variables are the usual settings (DATABASE_URL, WALLET_SEED_PHRASE,
WALLET_ENCRYPTION_KEY, ETH_RPC_URL, BTC_API_URL, ...).
"""

import argparse
import asyncio
import logging

from poolwallet.config import get_settings
from poolwallet.main import Application, configure_logging

logger = logging.getLogger(__name__)


async def run(chains: list[str], once: bool) -> None:
    app = Application(get_settings())
    try:
        await app.initialize()
        if once:
            for chain in chains or app.monitor.chains:
                recorded = await app.monitor.scan_once(chain)
                logger.info(f"{chain}: {recorded} new deposits")
        else:
            await app.monitor.run(chains or None)
    finally:
        await app.close()


def main():
    parser = argparse.ArgumentParser(description="Pool deposit scanner")
    parser.add_argument(
        "--chain",
        action="append",
        choices=["evm", "btc"],
        help="Chain to scan (repeatable; default: all)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single scan cycle and exit")
    args = parser.parse_args()

    configure_logging(get_settings())
    try:
        asyncio.run(run(args.chain or [], args.once))
    except KeyboardInterrupt:
        logger.info("Scanner stopped")


if __name__ == "__main__":
    main()
