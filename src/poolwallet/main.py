"""Main entry point - runs the deposit monitor and the API."""

import asyncio
import logging
import signal
from datetime import timedelta
from typing import Optional

import uvicorn

from poolwallet.api.app import create_app
from poolwallet.api.deps import Services
from poolwallet.assets import Asset
from poolwallet.chains import EsploraClient, JsonRpcClient
from poolwallet.config import Settings, get_settings
from poolwallet.crypto import get_encryptor
from poolwallet.hdwallet.allocator import AddressAllocator
from poolwallet.hdwallet.factory import WalletSet
from poolwallet.ledger.database import create_database
from poolwallet.ledger.service import SettlementLedger
from poolwallet.notifications.base import EventDispatcher, LoggingNotifier
from poolwallet.notifications.telegram import TelegramNotifier
from poolwallet.scanner.factory import create_scan_targets
from poolwallet.scanner.monitor import DepositMonitor
from poolwallet.services.pool_balances import ReconciliationReporter
from poolwallet.signing.vault import KeyVault
from poolwallet.withdrawal.btc import TransactionBuilder
from poolwallet.withdrawal.engine import WithdrawalEngine
from poolwallet.withdrawal.factory import create_broadcasters

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Builds every component explicitly and runs the long-lived tasks."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        btc_builder: Optional[TransactionBuilder] = None,
    ):
        self.settings = settings or get_settings()
        settings = self.settings

        self.db = create_database(settings.database_url)
        self.wallets = WalletSet.from_mnemonic(settings.wallet_seed_phrase, testnet=settings.testnet)
        self.vault = KeyVault(self.db, self.wallets, get_encryptor(settings))
        self.allocator = AddressAllocator(self.wallets, self.vault)

        self.events = EventDispatcher([LoggingNotifier()])
        telegram = TelegramNotifier.from_settings(settings)
        if telegram:
            self.events.add(telegram)

        self.eth_client = JsonRpcClient(settings.eth_rpc_url, timeout=settings.http_timeout)
        self.btc_client = EsploraClient(settings.btc_api_url, timeout=settings.http_timeout)

        self.ledger = SettlementLedger(
            self.db,
            self.events,
            intent_ttl=timedelta(hours=settings.deposit_intent_ttl_hours),
        )
        self.reporter = ReconciliationReporter(
            self.vault, self.eth_client, self.btc_client, settings.usdt_contract_address
        )
        self.withdrawals = WithdrawalEngine(
            self.db,
            self.vault,
            self.reporter,
            create_broadcasters(settings, self.wallets, self.eth_client, self.btc_client, btc_builder),
            {asset: settings.fee_rate(asset) for asset in Asset},
            broadcast_timeout=settings.broadcast_timeout,
            stall_after=settings.withdrawal_stall_seconds,
            events=self.events,
        )
        self.monitor = DepositMonitor(
            self.ledger,
            self.vault,
            create_scan_targets(settings, self.eth_client, self.btc_client),
        )
        self._shutdown_event = asyncio.Event()

    @property
    def services(self) -> Services:
        return Services(
            settings=self.settings,
            vault=self.vault,
            allocator=self.allocator,
            ledger=self.ledger,
            reporter=self.reporter,
            withdrawals=self.withdrawals,
        )

    async def initialize(self) -> None:
        """Create tables, provision pool keys and verify them."""
        await self.db.init()
        logger.info("Database initialized")

        pools = await self.vault.derive_and_store_pool_keys()
        for asset, info in pools.items():
            state = "created" if info.created else "loaded"
            logger.info(f"{asset.value} pool address {info.address} ({state})")

        checks = await self.vault.verify_pool_keys()
        failed = [asset.value for asset, ok in checks.items() if not ok]
        if failed:
            logger.critical(f"Pool key verification failed for: {', '.join(failed)}")

    async def start(self):
        """Start all services."""
        logger.info("Starting poolwallet...")
        logger.info(f"Environment: {self.settings.environment}")

        await self.initialize()

        tasks = self.monitor.start()
        tasks.append(asyncio.create_task(self._check_withdrawals(), name="withdrawal-checks"))
        tasks.append(asyncio.create_task(self._run_api()))
        logger.info("API task created")

        # Wait for shutdown signal
        await self._shutdown_event.wait()

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.close()

    async def _check_withdrawals(self):
        """Periodically settle interrupted approvals and re-check refunded failures."""
        interval = self.settings.withdrawal_check_interval
        logger.info(f"Starting withdrawal checks (interval: {interval}s)")
        while True:
            try:
                await self.withdrawals.recover_stalled_withdrawals()
                await self.withdrawals.check_late_confirmations()
            except Exception as e:
                logger.error(f"Withdrawal check error: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            config = uvicorn.Config(
                create_app(self.services),
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def close(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        await self.monitor.stop()
        await self.events.close()
        await self.eth_client.close()
        await self.btc_client.close()
        await self.db.close()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    app = Application(settings)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
