"""
Wires settings into a running keeper: registry, clients, calculator, executor and scheduler.
"""
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from .config import Settings
from .decoder import VaultDecoder
from .error_handling import ConfigurationError
from .external_apis import BlockfrostLedgerReader, Charli3OracleClient, HttpSettlementClient
from .il_calculator import ImpermanentLossCalculator
from .price_source import PriceSourceClient, UsdPriceTable
from .protection import ProtectionExecutor, SimulatedSettlementLayer
from .registry import InMemoryVaultRegistry, MongoVaultRegistry, VaultRegistry
from .scheduler import MonitoringScheduler
from .sync import VaultSynchronizer

logger = structlog.get_logger()


@dataclass
class KeeperService:
    registry: VaultRegistry
    price_source: PriceSourceClient
    executor: ProtectionExecutor
    scheduler: MonitoringScheduler
    synchronizer: Optional[VaultSynchronizer] = None
    clients: List = field(default_factory=list)

    async def start(self):
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()
        for client in self.clients:
            await client.close()


def build_keeper(config: Settings, database=None) -> KeeperService:
    """Build the keeper from settings. ``database`` is required for the mongo registry."""
    if config.SETTLEMENT_MODE not in ("simulated", "http"):
        raise ConfigurationError(f"Unknown SETTLEMENT_MODE: {config.SETTLEMENT_MODE}")
    if config.SETTLEMENT_MODE == "http" and not config.SETTLEMENT_URL:
        raise ConfigurationError("SETTLEMENT_MODE=http requires SETTLEMENT_URL")
    if config.REGISTRY_BACKEND not in ("mongo", "memory"):
        raise ConfigurationError(f"Unknown REGISTRY_BACKEND: {config.REGISTRY_BACKEND}")
    if config.MONITOR_INTERVAL_SECONDS <= 0:
        raise ConfigurationError("MONITOR_INTERVAL_SECONDS must be positive")

    if config.REGISTRY_BACKEND == "mongo":
        if database is None:
            raise ConfigurationError("Mongo registry requires a connected database")
        registry: VaultRegistry = MongoVaultRegistry(database)
    else:
        registry = InMemoryVaultRegistry()

    clients = []
    price_table = UsdPriceTable(config.USD_PRICE_ESTIMATES)

    oracle = Charli3OracleClient(
        base_url=config.ORACLE_BASE_URL,
        api_key=config.ORACLE_API_KEY,
        timeout=config.ORACLE_TIMEOUT_SECONDS,
    )
    clients.append(oracle)
    price_source = PriceSourceClient(
        oracle,
        price_table,
        cache_ttl_seconds=config.PRICE_CACHE_TTL_SECONDS,
        request_timeout=config.ORACLE_TIMEOUT_SECONDS,
    )

    if config.SETTLEMENT_MODE == "http":
        settlement = HttpSettlementClient(config.SETTLEMENT_URL, timeout=config.SETTLEMENT_TIMEOUT_SECONDS)
        clients.append(settlement)
    else:
        settlement = SimulatedSettlementLayer()

    executor = ProtectionExecutor(
        registry,
        settlement,
        max_exit_percentage=config.MAX_EXIT_PERCENTAGE,
        severity_multiplier=config.EXIT_SEVERITY_MULTIPLIER,
        settlement_timeout=config.SETTLEMENT_TIMEOUT_SECONDS,
    )

    synchronizer = None
    if config.VAULT_CONTRACT_ADDRESS:
        reader = BlockfrostLedgerReader(
            base_url=config.BLOCKFROST_URL,
            project_id=config.BLOCKFROST_PROJECT_ID,
            timeout=config.LEDGER_TIMEOUT_SECONDS,
        )
        clients.append(reader)
        decoder = VaultDecoder(
            config.KNOWN_TOKEN_POLICIES,
            base_asset=config.BASE_ASSET_SYMBOL,
            decimals=config.ASSET_DECIMALS,
            max_depth=config.MAX_DATUM_DEPTH,
        )
        synchronizer = VaultSynchronizer(
            reader, decoder, registry, config.VAULT_CONTRACT_ADDRESS,
            timeout=config.LEDGER_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("VAULT_CONTRACT_ADDRESS not set, ledger sync disabled")

    scheduler = MonitoringScheduler(
        registry,
        price_source,
        ImpermanentLossCalculator(price_table),
        executor,
        synchronizer=synchronizer,
        interval_seconds=config.MONITOR_INTERVAL_SECONDS,
        max_listing_retries=config.LISTING_MAX_RETRIES,
        backoff_base_seconds=config.LISTING_BACKOFF_BASE_SECONDS,
        listing_timeout=config.LISTING_TIMEOUT_SECONDS,
        max_concurrency=config.MAX_CONCURRENT_ASSESSMENTS,
        auto_remediate_unresolved=config.AUTO_REMEDIATE_UNRESOLVED_SYMBOLS,
    )

    logger.info(
        "Keeper built",
        registry_backend=config.REGISTRY_BACKEND,
        settlement_mode=config.SETTLEMENT_MODE,
        ledger_sync=synchronizer is not None,
        interval_seconds=config.MONITOR_INTERVAL_SECONDS,
    )
    return KeeperService(
        registry=registry,
        price_source=price_source,
        executor=executor,
        scheduler=scheduler,
        synchronizer=synchronizer,
        clients=clients,
    )
