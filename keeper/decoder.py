"""
Decoding of vault datums into Vault records.

Datum layout, Constr 0 with six fields:

    [0] owner            bytes
    [1] policy           Constr(max_il_bp, Constr(amount_a, amount_b), Bool)
    [2] lp_asset         Constr(policy_id, token_name)
    [3] lp_token_amount  int
    [4] deposit_time     int, POSIX seconds
    [5] initial_pool     Constr(reserve_a, reserve_b, total_lp, last_update)
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from .config import UNKNOWN_SYMBOL
from .error_handling import DecodeError
from .ledger_data import PlutusBytes, PlutusConstr, PlutusData, PlutusInt, parse_plutus_data
from .models import RawLedgerRecord, Vault, VaultStatus

logger = structlog.get_logger()

VAULT_DATUM_FIELDS = 6
POLICY_FIELDS = 3
RATIO_FIELDS = 2
ASSET_FIELDS = 2
POOL_STATE_FIELDS = 4

GENERIC_LP_NAMES = {"LP", "LPT"}


@dataclass
class DecodeBatchResult:
    vaults: List[Vault] = field(default_factory=list)
    errors: List[DecodeError] = field(default_factory=list)
    skipped: int = 0


def _constr(node: PlutusData, arity: int, what: str) -> Tuple[PlutusData, ...]:
    if not isinstance(node, PlutusConstr):
        raise DecodeError(f"{what}: expected constructor, got {type(node).__name__}")
    if len(node.fields) != arity:
        raise DecodeError(f"{what}: expected {arity} fields, got {len(node.fields)}")
    return node.fields


def _int(node: PlutusData, what: str) -> int:
    if not isinstance(node, PlutusInt):
        raise DecodeError(f"{what}: expected int, got {type(node).__name__}")
    return node.value


def _bytes(node: PlutusData, what: str) -> bytes:
    if not isinstance(node, PlutusBytes):
        raise DecodeError(f"{what}: expected bytes, got {type(node).__name__}")
    return node.value


def _bool(node: PlutusData, what: str) -> bool:
    if not isinstance(node, PlutusConstr) or node.fields or node.index not in (0, 1):
        raise DecodeError(f"{what}: expected Bool constructor")
    return node.index == 1


class VaultDecoder:
    """Turns raw ledger records into Vault records. Pure: nothing is persisted here."""

    def __init__(
        self,
        known_policies: Optional[Dict[str, str]] = None,
        base_asset: str = "ADA",
        decimals: int = 6,
        max_depth: int = 3,
    ):
        self.known_policies = {k.lower(): v for k, v in (known_policies or {}).items()}
        self.base_asset = base_asset
        self.decimals = decimals
        self.max_depth = max_depth

    def resolve_symbol(self, policy_id: str, token_name: bytes) -> str:
        """Best-effort symbol lookup; falls back to the UNKNOWN sentinel."""
        symbol = self.known_policies.get(policy_id.lower())
        if symbol:
            return symbol

        try:
            name = token_name.decode("utf-8")
        except UnicodeDecodeError:
            name = ""
        if 1 < len(name) < 10 and name.isprintable() and name.upper() not in GENERIC_LP_NAMES:
            return name.upper()

        logger.debug("Could not resolve token symbol", policy_id=policy_id)
        return UNKNOWN_SYMBOL

    def decode_vault(self, datum: dict, reference: str) -> Vault:
        try:
            tree = parse_plutus_data(datum, max_depth=self.max_depth)
            top = _constr(tree, VAULT_DATUM_FIELDS, "vault datum")

            owner = _bytes(top[0], "owner")

            policy = _constr(top[1], POLICY_FIELDS, "policy")
            max_il_bp = _int(policy[0], "policy.max_il_percent")
            ratio = _constr(policy[1], RATIO_FIELDS, "policy.deposit_ratio")
            amount_a = _int(ratio[0], "deposit_ratio.asset_a_amount")
            amount_b = _int(ratio[1], "deposit_ratio.asset_b_amount")
            emergency_withdraw = _bool(policy[2], "policy.emergency_withdraw")

            lp_asset = _constr(top[2], ASSET_FIELDS, "lp_asset")
            lp_policy_id = _bytes(lp_asset[0], "lp_asset.policy_id").hex()
            lp_token_name = _bytes(lp_asset[1], "lp_asset.token_name")

            lp_tokens = _int(top[3], "lp_token_amount")
            deposit_time = _int(top[4], "deposit_time")

            pool = _constr(top[5], POOL_STATE_FIELDS, "initial_pool_state")
            reserve_a = _int(pool[0], "initial_pool_state.reserve_a")
            reserve_b = _int(pool[1], "initial_pool_state.reserve_b")
        except DecodeError as e:
            e.reference = reference
            raise

        if max_il_bp <= 0:
            raise DecodeError(f"policy.max_il_percent must be positive, got {max_il_bp}", reference)
        if min(amount_a, amount_b, lp_tokens, reserve_a, reserve_b) < 0:
            raise DecodeError("Negative amount in vault datum", reference)

        # Reserves share the same decimals, so the scaling cancels out
        entry_price = reserve_b / reserve_a if reserve_a > 0 else 0.0

        symbol = self.resolve_symbol(lp_policy_id, lp_token_name)
        try:
            created_at = datetime.fromtimestamp(deposit_time, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError) as e:
            raise DecodeError(f"Invalid deposit_time: {deposit_time}", reference) from e

        return Vault(
            vault_id=reference,
            owner_key_hash=owner.hex(),
            pool_reference=lp_policy_id,
            asset_a=self.base_asset,
            asset_b=symbol,
            symbol_resolved=symbol != UNKNOWN_SYMBOL,
            deposit_amount_a=amount_a,
            deposit_amount_b=amount_b,
            lp_token_amount=lp_tokens,
            asset_decimals=self.decimals,
            entry_price=entry_price,
            il_threshold_basis_points=max_il_bp,
            emergency_withdraw_enabled=emergency_withdraw,
            status=VaultStatus.ACTIVE,
            created_at=created_at,
        )

    def decode_batch(self, records: Iterable[RawLedgerRecord]) -> DecodeBatchResult:
        result = DecodeBatchResult()
        for record in records:
            if record.datum is None:
                result.skipped += 1
                logger.debug("Skipping record without datum", reference=record.reference)
                continue
            try:
                vault = self.decode_vault(record.datum, record.reference)
            except DecodeError as e:
                logger.warning("Failed to decode vault datum", reference=record.reference, error=str(e))
                result.errors.append(e)
                continue
            result.vaults.append(vault)
            logger.info(
                "Decoded vault",
                vault_id=vault.vault_id,
                pair=vault.pair,
                entry_price=vault.entry_price,
                threshold_bp=vault.il_threshold_basis_points,
            )
        return result
