"""
Vault registry: the single source of truth for vault records and their status.

Two backends share one contract: ``get``, ``put``, ``list_by_status`` and
``list_by_owner``, plus an append-only protection event log. Vaults are never
deleted and ``put`` refuses status moves that go backwards.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from pymongo.errors import AutoReconnect

from .config import Collections
from .error_handling import InvalidStatusTransitionError, TransientFetchError
from .models import ProtectionEvent, Vault, VaultStatus

logger = structlog.get_logger()


def _check_transition(existing: Optional[Vault], vault: Vault):
    if existing is not None and not existing.can_transition_to(vault.status):
        raise InvalidStatusTransitionError(
            f"Vault {vault.vault_id} cannot move from {existing.status.value} to {vault.status.value}"
        )


class VaultRegistry(ABC):
    @abstractmethod
    async def get(self, vault_id: str) -> Optional[Vault]:
        ...

    @abstractmethod
    async def put(self, vault: Vault) -> Vault:
        ...

    @abstractmethod
    async def list_by_status(self, status: VaultStatus) -> List[Vault]:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_key_hash: str) -> List[Vault]:
        ...

    @abstractmethod
    async def record_event(self, event: ProtectionEvent):
        ...

    @abstractmethod
    async def list_events(self, vault_id: str) -> List[ProtectionEvent]:
        ...

    async def update_status(self, vault_id: str, status: VaultStatus) -> Optional[Vault]:
        vault = await self.get(vault_id)
        if vault is None:
            return None
        updated = vault.model_copy(update={"status": status, "updated_at": datetime.utcnow()})
        return await self.put(updated)


class InMemoryVaultRegistry(VaultRegistry):
    """Process-local registry, used for tests and single-node demo deployments"""

    def __init__(self):
        self._vaults: Dict[str, Vault] = {}
        self._events: List[ProtectionEvent] = []
        self._lock = asyncio.Lock()

    async def get(self, vault_id: str) -> Optional[Vault]:
        return self._vaults.get(vault_id)

    async def put(self, vault: Vault) -> Vault:
        async with self._lock:
            _check_transition(self._vaults.get(vault.vault_id), vault)
            self._vaults[vault.vault_id] = vault
        logger.debug("Vault stored", vault_id=vault.vault_id, status=vault.status.value)
        return vault

    async def list_by_status(self, status: VaultStatus) -> List[Vault]:
        return [v for v in self._vaults.values() if v.status == status]

    async def list_by_owner(self, owner_key_hash: str) -> List[Vault]:
        owner = owner_key_hash.lower()
        return [v for v in self._vaults.values() if v.owner_key_hash == owner]

    async def record_event(self, event: ProtectionEvent):
        self._events.append(event)

    async def list_events(self, vault_id: str) -> List[ProtectionEvent]:
        return [e for e in self._events if e.vault_id == vault_id]


class MongoVaultRegistry(VaultRegistry):
    """Registry backed by MongoDB collections (motor)"""

    def __init__(self, database):
        self.vaults = database[Collections.VAULTS]
        self.events = database[Collections.PROTECTION_EVENTS]

    @staticmethod
    def _to_document(vault: Vault) -> dict:
        doc = vault.model_dump()
        doc["status"] = vault.status.value
        doc["_id"] = vault.vault_id
        return doc

    @staticmethod
    def _from_document(doc: dict) -> Vault:
        doc = dict(doc)
        doc.pop("_id", None)
        return Vault.model_validate(doc)

    async def get(self, vault_id: str) -> Optional[Vault]:
        try:
            doc = await self.vaults.find_one({"_id": vault_id})
        except AutoReconnect as e:
            raise TransientFetchError(f"Registry unreachable: {e}") from e
        return self._from_document(doc) if doc else None

    async def put(self, vault: Vault) -> Vault:
        existing = await self.get(vault.vault_id)
        _check_transition(existing, vault)
        try:
            await self.vaults.replace_one({"_id": vault.vault_id}, self._to_document(vault), upsert=True)
        except AutoReconnect as e:
            raise TransientFetchError(f"Registry unreachable: {e}") from e
        logger.debug("Vault stored", vault_id=vault.vault_id, status=vault.status.value)
        return vault

    async def _find(self, query: dict) -> List[Vault]:
        try:
            docs = await self.vaults.find(query).to_list(length=None)
        except AutoReconnect as e:
            raise TransientFetchError(f"Registry unreachable: {e}") from e
        return [self._from_document(doc) for doc in docs]

    async def list_by_status(self, status: VaultStatus) -> List[Vault]:
        return await self._find({"status": status.value})

    async def list_by_owner(self, owner_key_hash: str) -> List[Vault]:
        return await self._find({"owner_key_hash": owner_key_hash.lower()})

    async def record_event(self, event: ProtectionEvent):
        try:
            await self.events.insert_one(event.model_dump())
        except AutoReconnect as e:
            raise TransientFetchError(f"Registry unreachable: {e}") from e

    async def list_events(self, vault_id: str) -> List[ProtectionEvent]:
        try:
            docs = await self.events.find({"vault_id": vault_id}).sort("timestamp", 1).to_list(length=None)
        except AutoReconnect as e:
            raise TransientFetchError(f"Registry unreachable: {e}") from e
        return [ProtectionEvent.model_validate({k: v for k, v in doc.items() if k != "_id"}) for doc in docs]
