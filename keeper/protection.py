import asyncio
import math
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from .error_handling import (
    InvalidStatusTransitionError, ProtectionNotAllowedError, RemediationFailedError,
    UnreconciledSettlementError, bounded_retry, error_collector
)
from .log_shipping import log_event
from .models import (
    ExitStrategy, ILAssessment, ProtectionEvent, SettlementAck, SettlementInstruction,
    Vault, VaultStatus
)
from .registry import VaultRegistry

logger = structlog.get_logger()


class SimulatedSettlementLayer:
    """Acknowledges every instruction without touching the ledger.

    Used where real settlement is unavailable; the acknowledgment is flagged
    as simulated so the audit trail shows what really happened.
    """

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds
        self.submitted = []

    async def submit(self, instruction: SettlementInstruction) -> SettlementAck:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        self.submitted.append(instruction)
        reference = "sim_" + uuid.uuid4().hex[:12]
        logger.info(
            "Simulated remediation",
            vault_id=instruction.vault_id,
            lp_tokens=instruction.lp_tokens_to_unwind,
            reference=reference,
        )
        return SettlementAck(accepted=True, reference=reference, simulated=True)


class ProtectionExecutor:
    """Turns a breaching assessment into a partial unwind of the position"""

    def __init__(
        self,
        registry: VaultRegistry,
        settlement,
        max_exit_percentage: float = 50.0,
        severity_multiplier: float = 10.0,
        settlement_timeout: float = 30.0,
        write_retries: int = 3,
        write_backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.settlement = settlement
        self.max_exit_percentage = max_exit_percentage
        self.severity_multiplier = severity_multiplier
        self.settlement_timeout = settlement_timeout
        self.write_retries = write_retries
        self.write_backoff_seconds = write_backoff_seconds
        self._sleep = sleep
        self._unreconciled: Dict[str, Tuple[Vault, Optional[ProtectionEvent]]] = {}

    def plan_exit(self, vault: Vault, assessment: ILAssessment) -> ExitStrategy:
        """Unwind more the further IL is past the threshold, capped at half the position"""
        excess_il = assessment.il_percentage - vault.threshold_percentage
        exit_percentage = min(self.max_exit_percentage, max(0.0, excess_il * self.severity_multiplier))
        tokens = math.floor(vault.lp_token_amount * exit_percentage / 100)
        return ExitStrategy(excess_il=excess_il, exit_percentage=exit_percentage, tokens_to_unwind=tokens)

    async def execute(self, vault: Vault, assessment: ILAssessment) -> ProtectionEvent:
        if vault.vault_id in self._unreconciled:
            raise ProtectionNotAllowedError(f"Vault {vault.vault_id} has an unwind awaiting registry reconciliation")
        if not vault.emergency_withdraw_enabled:
            raise ProtectionNotAllowedError(f"Vault {vault.vault_id} has emergency withdraw disabled")
        if vault.status != VaultStatus.ACTIVE:
            raise ProtectionNotAllowedError(f"Vault {vault.vault_id} is {vault.status.value}")
        if not assessment.should_trigger_protection:
            raise ProtectionNotAllowedError(f"Vault {vault.vault_id} is within its IL threshold")

        strategy = self.plan_exit(vault, assessment)
        logger.info(
            "Executing protection",
            vault_id=vault.vault_id,
            pair=vault.pair,
            il_percentage=round(assessment.il_percentage, 4),
            threshold_percentage=vault.threshold_percentage,
            exit_percentage=strategy.exit_percentage,
            tokens_to_unwind=strategy.tokens_to_unwind,
        )

        if strategy.tokens_to_unwind <= 0:
            event = ProtectionEvent(
                vault_id=vault.vault_id,
                action="skipped",
                success=False,
                il_percentage=assessment.il_percentage,
                threshold_percentage=vault.threshold_percentage,
                exit_percentage=strategy.exit_percentage,
                error_message="Nothing to unwind",
            )
            await self.registry.record_event(event)
            logger.warning("Protection skipped, nothing to unwind", vault_id=vault.vault_id)
            return event

        instruction = SettlementInstruction(
            vault_id=vault.vault_id,
            lp_tokens_to_unwind=strategy.tokens_to_unwind,
            exit_percentage=strategy.exit_percentage,
            il_percentage=assessment.il_percentage,
        )

        try:
            ack = await asyncio.wait_for(self.settlement.submit(instruction), timeout=self.settlement_timeout)
        except asyncio.TimeoutError:
            await self._record_failure(vault, assessment, strategy, "settlement timed out")
            raise RemediationFailedError(vault.vault_id, "settlement timed out")
        except Exception as e:
            await self._record_failure(vault, assessment, strategy, str(e))
            raise RemediationFailedError(vault.vault_id, str(e)) from e

        if not ack.accepted:
            reason = ack.message or "rejected by settlement layer"
            await self._record_failure(vault, assessment, strategy, reason)
            raise RemediationFailedError(vault.vault_id, reason)

        # Status only moves once the settlement layer has acknowledged
        protected = vault.model_copy(update={
            "status": VaultStatus.PROTECTED,
            "lp_token_amount": vault.lp_token_amount - strategy.tokens_to_unwind,
            "updated_at": datetime.utcnow(),
        })
        event = ProtectionEvent(
            vault_id=vault.vault_id,
            action="partial_exit",
            success=True,
            il_percentage=assessment.il_percentage,
            threshold_percentage=vault.threshold_percentage,
            exit_percentage=strategy.exit_percentage,
            tokens_unwound=strategy.tokens_to_unwind,
            settlement_reference=ack.reference,
            simulated=ack.simulated,
        )

        # Held here until both writes land, so the vault is never unwound twice
        self._unreconciled[vault.vault_id] = (protected, event)
        try:
            await self._persist(vault.vault_id)
        except Exception as e:
            logger.error(
                "Acknowledged unwind not recorded, holding vault until reconciled",
                vault_id=vault.vault_id,
                reference=ack.reference,
                error=str(e),
            )
            await log_event("protection_unreconciled", {
                "vault_id": vault.vault_id,
                "reference": ack.reference,
                "tokens_unwound": strategy.tokens_to_unwind,
                "error": str(e),
            }, "error")
            raise UnreconciledSettlementError(vault.vault_id, ack.reference, str(e)) from e

        logger.info(
            "Vault protected",
            vault_id=vault.vault_id,
            reference=ack.reference,
            simulated=ack.simulated,
            lp_tokens_remaining=protected.lp_token_amount,
        )
        await log_event("vault_protected", {
            "vault_id": vault.vault_id,
            "il_percentage": assessment.il_percentage,
            "exit_percentage": strategy.exit_percentage,
            "tokens_unwound": strategy.tokens_to_unwind,
            "simulated": ack.simulated,
        })
        return event

    def is_unreconciled(self, vault_id: str) -> bool:
        return vault_id in self._unreconciled

    @property
    def unreconciled_ids(self) -> List[str]:
        return sorted(self._unreconciled)

    async def reconcile(self) -> List[str]:
        """Retry the registry writes of acknowledged unwinds.

        Returns the vault ids that are now recorded. Vaults that still fail
        stay held and are tried again on the next call.
        """
        reconciled = []
        for vault_id in list(self._unreconciled):
            try:
                await self._persist(vault_id)
            except Exception as e:
                logger.warning("Vault still unreconciled", vault_id=vault_id, error=str(e))
                error_collector.record_error(e, {"vault_id": vault_id, "phase": "reconciling"})
                continue
            logger.info("Acknowledged unwind recorded", vault_id=vault_id)
            reconciled.append(vault_id)
        return reconciled

    async def _persist(self, vault_id: str):
        protected, event = self._unreconciled[vault_id]
        if event is not None:
            await self._write(self.registry.record_event, event)
            self._unreconciled[vault_id] = (protected, None)
        try:
            await self._write(self.registry.put, protected)
        except InvalidStatusTransitionError:
            # Registry already moved past active, e.g. the ledger shows a withdrawal
            logger.warning("Registry status moved on, dropping pending write", vault_id=vault_id)
        del self._unreconciled[vault_id]

    async def _write(self, operation, *args):
        retrying = bounded_retry(
            max_retries=self.write_retries,
            base_delay=self.write_backoff_seconds,
            sleep=self._sleep,
        )
        return await retrying(operation, *args)

    async def _record_failure(self, vault: Vault, assessment: ILAssessment, strategy: ExitStrategy, reason: str):
        logger.error("Remediation failed", vault_id=vault.vault_id, reason=reason)
        event = ProtectionEvent(
            vault_id=vault.vault_id,
            action="failed",
            success=False,
            il_percentage=assessment.il_percentage,
            threshold_percentage=vault.threshold_percentage,
            exit_percentage=strategy.exit_percentage,
            error_message=reason,
        )
        try:
            await self._write(self.registry.record_event, event)
        except Exception as e:
            # The remediation error is what the caller needs to see
            logger.error("Could not record failed remediation", vault_id=vault.vault_id, error=str(e))
            error_collector.record_error(e, {"vault_id": vault.vault_id, "phase": "audit"})
