import asyncio

import structlog

from .decoder import VaultDecoder
from .error_handling import TransientFetchError, error_collector
from .log_shipping import log_event
from .models import SyncResult, VaultStatus
from .registry import VaultRegistry

logger = structlog.get_logger()


class VaultSynchronizer:
    """Mirrors vaults observed at the contract address into the registry.

    New records are decoded and stored as active. Vaults the registry still
    tracks but the ledger no longer shows are moved to withdrawn.
    """

    def __init__(self, ledger_reader, decoder: VaultDecoder, registry: VaultRegistry,
                 contract_address: str, timeout: float = 15.0):
        self.ledger_reader = ledger_reader
        self.decoder = decoder
        self.registry = registry
        self.contract_address = contract_address
        self.timeout = timeout

    async def sync(self) -> SyncResult:
        try:
            records = await asyncio.wait_for(
                self.ledger_reader.fetch_records(self.contract_address), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientFetchError("Ledger fetch timed out") from e

        result = SyncResult(records_seen=len(records))

        new_records = []
        for record in records:
            if await self.registry.get(record.reference) is None:
                new_records.append(record)

        decoded = self.decoder.decode_batch(new_records)
        result.decode_errors = len(decoded.errors)
        for error in decoded.errors:
            error_collector.record_error(error, {"reference": error.reference, "phase": "sync"})
        for vault in decoded.vaults:
            await self.registry.put(vault)
            result.vaults_added += 1

        observed = {record.reference for record in records}
        for status in (VaultStatus.ACTIVE, VaultStatus.PROTECTED):
            for vault in await self.registry.list_by_status(status):
                if vault.vault_id not in observed:
                    logger.info("Vault no longer on ledger, marking withdrawn", vault_id=vault.vault_id)
                    await self.registry.update_status(vault.vault_id, VaultStatus.WITHDRAWN)
                    result.vaults_pruned += 1

        logger.info(
            "Ledger sync complete",
            records_seen=result.records_seen,
            vaults_added=result.vaults_added,
            vaults_pruned=result.vaults_pruned,
            decode_errors=result.decode_errors,
        )
        if result.vaults_added or result.vaults_pruned or result.decode_errors:
            await log_event("vault_sync", result.model_dump())
        return result
