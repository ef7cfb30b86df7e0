from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING
import structlog
import time
from typing import Optional
from .config import settings, Collections

logger = structlog.get_logger()

VAULT_INDEXES = [
    IndexModel([("status", ASCENDING), ("emergency_withdraw_enabled", ASCENDING)]),
    IndexModel([("owner_key_hash", ASCENDING)]),
]

PROTECTION_EVENT_INDEXES = [
    IndexModel([("vault_id", ASCENDING), ("timestamp", ASCENDING)]),
    IndexModel([("action", ASCENDING), ("timestamp", DESCENDING)]),
]

class DatabaseManager:
    """Owns the motor client backing the Mongo vault registry"""

    def __init__(self, uri: Optional[str] = None, db_name: Optional[str] = None):
        self.uri = uri or settings.MONGODB_URI
        self.db_name = db_name or settings.MONGO_DB_NAME
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None

    @property
    def connected(self) -> bool:
        return self.database is not None

    async def connect(self) -> AsyncIOMotorDatabase:
        """Open the client, verify it answers and ensure registry indexes"""
        if self.connected:
            return self.database

        self.mongo_client = AsyncIOMotorClient(
            self.uri,
            maxPoolSize=10,
            serverSelectionTimeoutMS=5000,
            socketTimeoutMS=20000
        )
        try:
            await self.mongo_client.admin.command('ping')
        except Exception as e:
            logger.error("Registry database unreachable", database=self.db_name, error=str(e))
            self.mongo_client.close()
            self.mongo_client = None
            raise

        self.database = self.mongo_client[self.db_name]
        await self.database[Collections.VAULTS].create_indexes(VAULT_INDEXES)
        await self.database[Collections.PROTECTION_EVENTS].create_indexes(PROTECTION_EVENT_INDEXES)
        logger.info("Connected to registry database", database=self.db_name)
        return self.database

    async def disconnect(self):
        if self.mongo_client:
            self.mongo_client.close()
            logger.info("Registry database connection closed", database=self.db_name)
        self.mongo_client = None
        self.database = None

    async def health_check(self) -> dict:
        """Ping the server and report latency"""
        if not self.mongo_client:
            return {"status": "disconnected", "latency_ms": None}

        started = time.perf_counter()
        try:
            await self.mongo_client.admin.command('ping')
        except Exception as e:
            return {"status": "error", "latency_ms": None, "error": str(e)}
        return {"status": "connected", "latency_ms": round((time.perf_counter() - started) * 1000, 2)}

# Global database manager instance
db_manager = DatabaseManager()
