"""Factory for the deposit monitor's scan targets.

Supported chains:
- evm: ETH and USDT (ERC20) over JSON-RPC
- btc: BTC over the Blockstream/Esplora API
"""

from poolwallet.assets import Asset
from poolwallet.chains import EsploraClient, JsonRpcClient
from poolwallet.config import Settings
from poolwallet.scanner.blockstream import BlockstreamScanner
from poolwallet.scanner.evm import EVMScanner
from poolwallet.scanner.monitor import ScanTarget


def create_scan_targets(
    settings: Settings,
    eth_client: JsonRpcClient,
    btc_client: EsploraClient,
) -> list[ScanTarget]:
    """Build one scan target per chain with its configured poll interval."""
    confirmations = {asset: settings.min_confirmations(asset) for asset in Asset}
    return [
        ScanTarget(
            EVMScanner(
                eth_client,
                settings.usdt_contract_address,
                window_blocks=settings.eth_scan_window_blocks,
                min_confirmations=confirmations,
            ),
            settings.eth_poll_interval,
        ),
        ScanTarget(
            BlockstreamScanner(btc_client, min_confirmations=confirmations),
            settings.btc_poll_interval,
        ),
    ]
