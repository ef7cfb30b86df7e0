from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class VaultStatus(str, Enum):
    ACTIVE = "active"
    PROTECTED = "protected"
    WITHDRAWN = "withdrawn"


# Allowed forward moves; a status never returns to an earlier one
STATUS_TRANSITIONS: Dict[VaultStatus, set] = {
    VaultStatus.ACTIVE: {VaultStatus.ACTIVE, VaultStatus.PROTECTED, VaultStatus.WITHDRAWN},
    VaultStatus.PROTECTED: {VaultStatus.PROTECTED, VaultStatus.WITHDRAWN},
    VaultStatus.WITHDRAWN: {VaultStatus.WITHDRAWN},
}


class SnapshotSource(str, Enum):
    LIVE = "live"
    CACHED = "cached"
    ESTIMATED = "estimated"


class SchedulerState(str, Enum):
    IDLE = "idle"
    LISTING = "listing"
    EVALUATING = "evaluating"
    REMEDIATING = "remediating"


# Vault Models
class Vault(BaseModel):
    vault_id: str
    owner_key_hash: str
    pool_reference: str
    asset_a: str
    asset_b: str
    symbol_resolved: bool = True

    # Deposit, in integer base units
    deposit_amount_a: int
    deposit_amount_b: int
    lp_token_amount: int
    asset_decimals: int = 6

    # Policy
    entry_price: Optional[float] = None  # asset B per asset A
    il_threshold_basis_points: int
    emergency_withdraw_enabled: bool

    status: VaultStatus = VaultStatus.ACTIVE
    created_at: datetime
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("il_threshold_basis_points")
    @classmethod
    def validate_threshold(cls, v):
        if v <= 0:
            raise ValueError("IL threshold must be positive")
        return v

    @field_validator("owner_key_hash")
    @classmethod
    def normalize_owner(cls, v):
        return v.lower()

    @property
    def pair(self) -> str:
        return f"{self.asset_a}/{self.asset_b}"

    @property
    def threshold_percentage(self) -> float:
        return self.il_threshold_basis_points / 100

    @property
    def amount_a(self) -> float:
        return self.deposit_amount_a / 10 ** self.asset_decimals

    @property
    def amount_b(self) -> float:
        return self.deposit_amount_b / 10 ** self.asset_decimals

    def can_transition_to(self, status: VaultStatus) -> bool:
        return status in STATUS_TRANSITIONS[self.status]


# Price Models
class PoolSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    pair: str
    price: float  # asset B per asset A
    reserve_a: float = 0.0
    reserve_b: float = 0.0
    tvl: float = 0.0
    volume_24h: float = 0.0
    timestamp: datetime
    source: SnapshotSource
    age_seconds: Optional[float] = None

    @field_validator("price")
    @classmethod
    def validate_price(cls, v):
        if not v > 0:
            raise ValueError("Snapshot price must be positive")
        return v


# Assessment Models
class ILAssessment(BaseModel):
    vault_id: str
    il_percentage: float
    il_amount: float
    lp_value: float
    hold_value: float
    should_trigger_protection: bool
    computed_at: datetime = Field(default_factory=datetime.utcnow)

    entry_price: float
    current_price: float
    price_ratio: float
    threshold_percentage: float
    snapshot_source: SnapshotSource


# Protection Models
class ExitStrategy(BaseModel):
    excess_il: float
    exit_percentage: float
    tokens_to_unwind: int


class SettlementInstruction(BaseModel):
    vault_id: str
    lp_tokens_to_unwind: int
    exit_percentage: float
    il_percentage: float
    requested_at: datetime = Field(default_factory=datetime.utcnow)


class SettlementAck(BaseModel):
    accepted: bool
    reference: Optional[str] = None
    simulated: bool = False
    message: Optional[str] = None


class ProtectionEvent(BaseModel):
    vault_id: str
    action: str  # partial_exit | skipped | failed
    success: bool
    il_percentage: float
    threshold_percentage: float
    exit_percentage: float = 0.0
    tokens_unwound: int = 0
    settlement_reference: Optional[str] = None
    simulated: bool = False
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# Ledger Models
class RawLedgerRecord(BaseModel):
    tx_hash: str
    output_index: int
    datum: Optional[Dict[str, Any]] = None  # detailed JSON schema of the inline datum
    owner_credential: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.tx_hash}#{self.output_index}"


class SyncResult(BaseModel):
    records_seen: int = 0
    vaults_added: int = 0
    vaults_pruned: int = 0
    decode_errors: int = 0


# Monitoring Models
class CycleReport(BaseModel):
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    listing_attempts: int = 0
    abandoned: bool = False
    vaults_listed: int = 0
    vaults_assessed: int = 0
    breaches: int = 0
    protected: int = 0
    skipped: int = 0
    manual_review: List[str] = []
    failures: int = 0
    snapshot_sources: Dict[str, str] = {}
    near_threshold: List[str] = []
    unreconciled: List[str] = []
    reconciled: List[str] = []
    sync: Optional[SyncResult] = None
