from pydantic_settings import BaseSettings
from typing import Dict, Optional

# Policy id -> symbol for tokens seen in vault LP assets
DEFAULT_KNOWN_TOKEN_POLICIES: Dict[str, str] = {
    "8db269c3ec630e06ae29f74bc39edd1f87c819f1056206e879a1cd61": "DJED",
    "279c909f348e533da5808898f87f9a14bb2c3dfbbacccd631d927a3f": "SNEK",
    "e4214b7cce62ac6fbba385d164df48e157eae5863521b4b67ca71d86": "MIN",
    "25c5de5f5b286073c593edfd77b48abc7a48e5a4f3d4cd9d428ff9355": "USDC",
    "d894897411707efa755a76deb66d26dfd50593f2e70863e1661e98a0": "SPACE",
    "f43a62fdc3965df486de8a0d32fe800963589c41b38946602a0dc53541474958": "AGIX",
    "533bb94a8850ee3ccbe483106489399112b74c905342cb1792a797a0": "HUNT",
    "3a888d65f16790950a72daee1f63aa05add6d268434107cfa5b67712": "iUSD",
    "5d16cc1a177b5d9ba9cfa9793b07e60f1fb70fea1f8aef064415d114": "NTX",
    "af2e27f580f7f08e93190a81f72462f153026d06450924726645891b": "DJED",
    "9a9693a9a37912a5097918f97918d15240c92ab729a0b7c4aa144d77": "SUNDAE",
}

# Conservative USD estimates used when no live quote is available
DEFAULT_USD_PRICE_ESTIMATES: Dict[str, float] = {
    "ADA": 0.45,
    "DJED": 1.02,
    "USDC": 1.00,
    "iUSD": 1.00,
    "SNEK": 0.0015,
    "AGIX": 0.35,
    "C3": 0.12,
    "WMT": 0.08,
    "MIN": 0.025,
    "COPI": 0.18,
    "HOSKY": 0.0001,
}


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # MongoDB Configuration
    MONGODB_URI: str
    MONGO_DB_NAME: str = "yield_safe_keeper"
    REGISTRY_BACKEND: str = "mongo"  # mongo | memory

    # Ledger indexer
    BLOCKFROST_URL: str = "https://cardano-preprod.blockfrost.io/api/v0"
    BLOCKFROST_PROJECT_ID: Optional[str] = None
    VAULT_CONTRACT_ADDRESS: Optional[str] = None
    LEDGER_TIMEOUT_SECONDS: float = 15.0

    # Price oracle
    ORACLE_BASE_URL: str = "https://api.charli3.io/api/v1"
    ORACLE_API_KEY: Optional[str] = None
    ORACLE_TIMEOUT_SECONDS: float = 5.0
    PRICE_CACHE_TTL_SECONDS: float = 300.0
    HTTP_MAX_ATTEMPTS: int = 2

    # Monitoring loop
    KEEPER_PORT: int = 8002
    MONITOR_INTERVAL_SECONDS: float = 60.0
    LISTING_MAX_RETRIES: int = 3
    LISTING_BACKOFF_BASE_SECONDS: float = 2.0
    LISTING_TIMEOUT_SECONDS: float = 30.0
    MAX_CONCURRENT_ASSESSMENTS: int = 10

    # Protection policy
    SETTLEMENT_MODE: str = "simulated"  # simulated | http
    SETTLEMENT_URL: Optional[str] = None
    SETTLEMENT_TIMEOUT_SECONDS: float = 30.0
    MAX_EXIT_PERCENTAGE: float = 50.0
    EXIT_SEVERITY_MULTIPLIER: float = 10.0
    AUTO_REMEDIATE_UNRESOLVED_SYMBOLS: bool = False

    # Datum decoding
    BASE_ASSET_SYMBOL: str = "ADA"
    ASSET_DECIMALS: int = 6
    MAX_DATUM_DEPTH: int = 3
    KNOWN_TOKEN_POLICIES: Dict[str, str] = DEFAULT_KNOWN_TOKEN_POLICIES
    USD_PRICE_ESTIMATES: Dict[str, float] = DEFAULT_USD_PRICE_ESTIMATES

    # Log aggregator, shipping disabled when unset
    LOKI_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

# Global settings instance
settings = Settings()

# MongoDB Collection Names
class Collections:
    VAULTS = "keeper_vaults"
    PROTECTION_EVENTS = "keeper_protection_events"

# Sentinel for LP assets whose paired token could not be identified
UNKNOWN_SYMBOL = "UNKNOWN"
