import pytest
from unittest.mock import AsyncMock

from keeper.error_handling import (
    ProtectionNotAllowedError, RemediationFailedError, TransientFetchError, UnreconciledSettlementError,
    error_collector
)
from keeper.models import ILAssessment, SettlementAck, SnapshotSource, VaultStatus
from keeper.protection import ProtectionExecutor, SimulatedSettlementLayer

from conftest import fail_protected_writes, make_vault


def make_assessment(vault, il_percentage: float) -> ILAssessment:
    return ILAssessment(
        vault_id=vault.vault_id,
        il_percentage=il_percentage,
        il_amount=0.0,
        lp_value=0.0,
        hold_value=0.0,
        should_trigger_protection=il_percentage > vault.threshold_percentage,
        entry_price=1.0,
        current_price=1.0,
        price_ratio=1.0,
        threshold_percentage=vault.threshold_percentage,
        snapshot_source=SnapshotSource.LIVE,
    )


class TestExitPlanning:

    @pytest.fixture
    def executor(self, registry):
        return ProtectionExecutor(registry, SimulatedSettlementLayer())

    def test_exit_scales_with_excess(self, executor, sample_vault):
        strategy = executor.plan_exit(sample_vault, make_assessment(sample_vault, 8.0))

        assert strategy.excess_il == pytest.approx(3.0)
        assert strategy.exit_percentage == pytest.approx(30.0)
        assert strategy.tokens_to_unwind == 300_000

    def test_exit_is_capped_at_half(self, executor, sample_vault):
        strategy = executor.plan_exit(sample_vault, make_assessment(sample_vault, 20.0))

        assert strategy.exit_percentage == 50.0
        assert strategy.tokens_to_unwind == 500_000

    def test_tokens_round_down(self, executor):
        vault = make_vault(lp_token_amount=7)

        strategy = executor.plan_exit(vault, make_assessment(vault, 6.0))

        # 10% of 7 tokens
        assert strategy.tokens_to_unwind == 0


class TestProtectionExecutor:
    """Remediation through the settlement layer"""

    @pytest.fixture
    def settlement(self):
        return SimulatedSettlementLayer()

    @pytest.fixture
    def executor(self, registry, settlement):
        return ProtectionExecutor(registry, settlement, settlement_timeout=0.05)

    @pytest.mark.asyncio
    async def test_successful_partial_exit(self, executor, registry, settlement, sample_vault):
        await registry.put(sample_vault)

        event = await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        stored = await registry.get(sample_vault.vault_id)
        assert stored.status == VaultStatus.PROTECTED
        assert stored.lp_token_amount == 700_000

        assert event.success is True
        assert event.action == "partial_exit"
        assert event.tokens_unwound == 300_000
        assert event.exit_percentage == pytest.approx(30.0)
        assert event.simulated is True
        assert event.settlement_reference.startswith("sim_")

        assert len(settlement.submitted) == 1
        assert settlement.submitted[0].lp_tokens_to_unwind == 300_000
        assert await registry.list_events(sample_vault.vault_id) == [event]

    @pytest.mark.asyncio
    async def test_rejected_settlement_leaves_vault_active(self, registry, sample_vault):
        settlement = AsyncMock()
        settlement.submit.return_value = SettlementAck(accepted=False, message="pool paused")
        executor = ProtectionExecutor(registry, settlement)
        await registry.put(sample_vault)

        with pytest.raises(RemediationFailedError, match="pool paused"):
            await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        stored = await registry.get(sample_vault.vault_id)
        assert stored.status == VaultStatus.ACTIVE
        assert stored.lp_token_amount == 1_000_000

        events = await registry.list_events(sample_vault.vault_id)
        assert [e.action for e in events] == ["failed"]
        assert events[0].error_message == "pool paused"

    @pytest.mark.asyncio
    async def test_settlement_error_is_wrapped(self, registry, sample_vault):
        settlement = AsyncMock()
        settlement.submit.side_effect = ConnectionError("refused")
        executor = ProtectionExecutor(registry, settlement)
        await registry.put(sample_vault)

        with pytest.raises(RemediationFailedError) as exc_info:
            await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        assert exc_info.value.vault_id == sample_vault.vault_id
        assert (await registry.get(sample_vault.vault_id)).status == VaultStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_settlement_timeout(self, executor, registry, settlement, sample_vault):
        settlement.delay_seconds = 1
        await registry.put(sample_vault)

        with pytest.raises(RemediationFailedError, match="timed out"):
            await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        assert (await registry.get(sample_vault.vault_id)).status == VaultStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_nothing_to_unwind_is_skipped(self, executor, registry, settlement):
        vault = make_vault(lp_token_amount=7)
        await registry.put(vault)

        event = await executor.execute(vault, make_assessment(vault, 6.0))

        assert event.action == "skipped"
        assert event.success is False
        assert settlement.submitted == []
        assert (await registry.get(vault.vault_id)).status == VaultStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_emergency_withdraw_disabled(self, executor, settlement):
        vault = make_vault(emergency_withdraw_enabled=False)

        with pytest.raises(ProtectionNotAllowedError):
            await executor.execute(vault, make_assessment(vault, 8.0))
        assert settlement.submitted == []

    @pytest.mark.asyncio
    async def test_only_active_vaults(self, executor):
        vault = make_vault(status=VaultStatus.PROTECTED)

        with pytest.raises(ProtectionNotAllowedError):
            await executor.execute(vault, make_assessment(vault, 8.0))

    @pytest.mark.asyncio
    async def test_requires_breach(self, executor, sample_vault):
        with pytest.raises(ProtectionNotAllowedError):
            await executor.execute(sample_vault, make_assessment(sample_vault, 4.0))


class TestAcknowledgedUnwinds:
    """An unwind the settlement layer accepted is never lost or repeated"""

    @pytest.fixture
    def settlement(self):
        return SimulatedSettlementLayer()

    @pytest.fixture
    def sleep(self):
        return AsyncMock()

    @pytest.fixture
    def executor(self, registry, settlement, sleep):
        return ProtectionExecutor(registry, settlement, sleep=sleep)

    @pytest.mark.asyncio
    async def test_transient_write_failure_is_retried(self, executor, registry, settlement, sleep, sample_vault):
        await registry.put(sample_vault)
        fail_protected_writes(registry, 1)

        event = await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        assert event.success is True
        assert sleep.await_count == 1
        stored = await registry.get(sample_vault.vault_id)
        assert stored.status == VaultStatus.PROTECTED
        assert stored.lp_token_amount == 700_000
        assert len(settlement.submitted) == 1
        assert executor.unreconciled_ids == []

    @pytest.mark.asyncio
    async def test_unrecorded_unwind_is_held_until_reconciled(self, executor, registry, settlement, sample_vault):
        await registry.put(sample_vault)
        fail_protected_writes(registry, 4)

        with pytest.raises(UnreconciledSettlementError) as exc_info:
            await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        assert exc_info.value.reference.startswith("sim_")
        assert (await registry.get(sample_vault.vault_id)).status == VaultStatus.ACTIVE
        events = await registry.list_events(sample_vault.vault_id)
        assert [e.action for e in events] == ["partial_exit"]
        assert events[0].settlement_reference == exc_info.value.reference
        assert executor.is_unreconciled(sample_vault.vault_id)

        # The stale active record must not trigger a second unwind
        with pytest.raises(ProtectionNotAllowedError):
            await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))
        assert len(settlement.submitted) == 1

        assert await executor.reconcile() == [sample_vault.vault_id]

        stored = await registry.get(sample_vault.vault_id)
        assert stored.status == VaultStatus.PROTECTED
        assert stored.lp_token_amount == 700_000
        assert len(await registry.list_events(sample_vault.vault_id)) == 1
        assert executor.unreconciled_ids == []

    @pytest.mark.asyncio
    async def test_reconcile_keeps_vault_held_while_registry_is_down(self, executor, registry, sample_vault):
        await registry.put(sample_vault)
        fail_protected_writes(registry, 8)

        with pytest.raises(UnreconciledSettlementError):
            await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        assert await executor.reconcile() == []
        assert executor.unreconciled_ids == [sample_vault.vault_id]
        assert error_collector.error_counts == {"TransientFetchError": 1}

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_hide_rejection(self, registry, sample_vault):
        settlement = AsyncMock()
        settlement.submit.return_value = SettlementAck(accepted=False, message="pool paused")
        executor = ProtectionExecutor(registry, settlement, sleep=AsyncMock())
        await registry.put(sample_vault)
        registry.record_event = AsyncMock(side_effect=TransientFetchError("registry down"))

        with pytest.raises(RemediationFailedError, match="pool paused"):
            await executor.execute(sample_vault, make_assessment(sample_vault, 8.0))

        assert error_collector.error_counts == {"TransientFetchError": 1}
