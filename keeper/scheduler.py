import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from .error_handling import (
    OracleUnavailableError, ProtectionNotAllowedError, RemediationFailedError, TransientFetchError,
    UnreconciledSettlementError, bounded_retry, error_collector
)
from .il_calculator import ImpermanentLossCalculator, classify_urgency, is_near_threshold
from .log_shipping import log_event
from .models import CycleReport, ILAssessment, PoolSnapshot, SchedulerState, Vault, VaultStatus
from .price_source import PriceSourceClient
from .protection import ProtectionExecutor
from .registry import VaultRegistry

logger = structlog.get_logger()


class MonitoringScheduler:
    """Periodic IL monitoring: list active vaults, assess, protect breaches"""

    def __init__(
        self,
        registry: VaultRegistry,
        price_source: PriceSourceClient,
        calculator: ImpermanentLossCalculator,
        executor: ProtectionExecutor,
        synchronizer=None,
        interval_seconds: float = 60.0,
        max_listing_retries: int = 3,
        backoff_base_seconds: float = 2.0,
        listing_timeout: float = 30.0,
        max_concurrency: int = 10,
        auto_remediate_unresolved: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.price_source = price_source
        self.calculator = calculator
        self.executor = executor
        self.synchronizer = synchronizer
        self.interval_seconds = interval_seconds
        self.max_listing_retries = max_listing_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.listing_timeout = listing_timeout
        self.max_concurrency = max_concurrency
        self.auto_remediate_unresolved = auto_remediate_unresolved
        self._sleep = sleep
        self._clock = clock

        self.state = SchedulerState.IDLE
        self.is_running = False
        self.cycles_completed = 0
        self.last_report: Optional[CycleReport] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def start(self):
        """Start the monitoring loop in the background"""
        if self.is_running:
            logger.warning("Monitoring loop already running")
            return
        self._stop_event.clear()
        self.is_running = True
        self._task = asyncio.create_task(self.run_forever())
        logger.info("Monitoring loop started", interval_seconds=self.interval_seconds)
        await log_event("monitoring_started", {"interval_seconds": self.interval_seconds})

    def request_stop(self):
        """Ask the loop to exit once the current cycle has finished"""
        self._stop_event.set()

    async def stop(self):
        if not self.is_running:
            return
        logger.info("Stopping monitoring loop")
        self.request_stop()
        if self._task:
            await self._task
            self._task = None
        await log_event("monitoring_stopped", {"cycles_completed": self.cycles_completed})

    async def run_forever(self):
        self.is_running = True
        next_tick = self._clock()
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_cycle()
                except Exception as e:
                    # Cycle-level bugs must not kill the loop
                    logger.exception("Unexpected error in monitoring cycle")
                    error_collector.record_error(e, {"phase": "cycle"})
                    self.state = SchedulerState.IDLE

                next_tick += self.interval_seconds
                delay = next_tick - self._clock()
                if delay < 0:
                    logger.warning("Monitoring cycle overran interval", overrun_seconds=round(-delay, 1))
                    next_tick = self._clock()
                    delay = 0.0
                await self._idle(delay)
        finally:
            self.is_running = False
            self.state = SchedulerState.IDLE

    async def _idle(self, delay: float):
        """Wait for the next tick, waking early on a stop request"""
        if self._stop_event.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                task.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        start = self._clock()
        logger.info("Starting monitoring cycle")

        self.state = SchedulerState.LISTING
        if self.executor.unreconciled_ids:
            report.reconciled = await self.executor.reconcile()

        if self.synchronizer is not None:
            await self._sync(report)

        try:
            vaults = await self._list_vaults(report)
        except Exception as e:
            report.abandoned = True
            report.finished_at = datetime.utcnow()
            self.state = SchedulerState.IDLE
            self.last_report = report
            logger.error("Monitoring cycle abandoned while listing vaults",
                         attempts=report.listing_attempts, error=str(e))
            error_collector.record_error(e, {"phase": "listing", "attempts": report.listing_attempts})
            await log_event("monitoring_cycle_abandoned", {
                "attempts": report.listing_attempts, "error": str(e)
            }, "error")
            return report

        report.vaults_listed = len(vaults)

        self.state = SchedulerState.EVALUATING
        assessments = await self._evaluate(vaults, report)
        breaches = [(v, a) for v, a in assessments if a.should_trigger_protection]
        for vault, assessment in assessments:
            if is_near_threshold(assessment.il_percentage, assessment.threshold_percentage):
                logger.warning(
                    "IL approaching threshold",
                    vault_id=vault.vault_id,
                    il_percentage=round(assessment.il_percentage, 4),
                    threshold_percentage=assessment.threshold_percentage,
                )
                report.near_threshold.append(vault.vault_id)
        report.breaches = len(breaches)

        if breaches:
            self.state = SchedulerState.REMEDIATING
            await self._remediate(breaches, report)

        self.state = SchedulerState.IDLE
        report.finished_at = datetime.utcnow()
        self.last_report = report
        self.cycles_completed += 1

        duration = self._clock() - start
        logger.info(
            "Monitoring cycle completed",
            duration_seconds=round(duration, 2),
            vaults=report.vaults_listed,
            assessed=report.vaults_assessed,
            breaches=report.breaches,
            protected=report.protected,
            failures=report.failures,
        )
        await log_event("monitoring_cycle_completed", {
            "vaults_processed": report.vaults_listed,
            "breaches": report.breaches,
            "protected": report.protected,
            "duration_seconds": duration,
        })
        return report

    async def _sync(self, report: CycleReport):
        """Mirror the ledger into the registry; a failure here never blocks monitoring"""
        try:
            report.sync = await self.synchronizer.sync()
        except Exception as e:
            report.sync = None
            logger.warning("Ledger sync failed, monitoring known vaults",
                           error_type=type(e).__name__, error=str(e))
            error_collector.record_error(e, {"phase": "sync"})

    async def _list_vaults(self, report: CycleReport) -> List[Vault]:
        async def attempt() -> List[Vault]:
            report.listing_attempts += 1
            try:
                active = await asyncio.wait_for(
                    self.registry.list_by_status(VaultStatus.ACTIVE), timeout=self.listing_timeout
                )
            except asyncio.TimeoutError as e:
                raise TransientFetchError("Listing vaults timed out") from e
            return [v for v in active if v.emergency_withdraw_enabled]

        retrying = bounded_retry(
            max_retries=self.max_listing_retries,
            base_delay=self.backoff_base_seconds,
            sleep=self._sleep,
        )
        return await retrying(attempt)

    async def _evaluate(self, vaults: List[Vault], report: CycleReport) -> List[Tuple[Vault, ILAssessment]]:
        # One snapshot per pair per cycle
        pairs = sorted({(v.asset_a, v.asset_b) for v in vaults})
        results = await asyncio.gather(
            *(self.price_source.get_snapshot(a, b) for a, b in pairs), return_exceptions=True
        )
        snapshots: Dict[Tuple[str, str], PoolSnapshot] = {}
        for (asset_a, asset_b), result in zip(pairs, results):
            if isinstance(result, Exception):
                logger.error("No snapshot for pair", pair=f"{asset_a}/{asset_b}", error=str(result))
                error_collector.record_error(result, {"pair": f"{asset_a}/{asset_b}", "phase": "evaluating"})
                continue
            snapshots[(asset_a, asset_b)] = result
            report.snapshot_sources[result.pair] = result.source.value

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def assess(vault: Vault) -> ILAssessment:
            snapshot = snapshots.get((vault.asset_a, vault.asset_b))
            if snapshot is None:
                raise OracleUnavailableError(f"No snapshot for {vault.pair}")
            async with semaphore:
                return self.calculator.assess(vault, snapshot)

        results = await asyncio.gather(*(assess(v) for v in vaults), return_exceptions=True)

        assessments = []
        for vault, result in zip(vaults, results):
            if isinstance(result, Exception):
                report.failures += 1
                logger.warning("Skipping vault this cycle", vault_id=vault.vault_id,
                               error_type=type(result).__name__, error=str(result))
                error_collector.record_error(result, {"vault_id": vault.vault_id, "phase": "evaluating"})
                continue
            report.vaults_assessed += 1
            assessments.append((vault, result))
        return assessments

    async def _remediate(self, breaches: List[Tuple[Vault, ILAssessment]], report: CycleReport):
        for vault, assessment in breaches:
            logger.warning(
                "IL threshold breached",
                vault_id=vault.vault_id,
                pair=vault.pair,
                il_percentage=round(assessment.il_percentage, 4),
                threshold_percentage=assessment.threshold_percentage,
                urgency=classify_urgency(assessment.il_percentage, assessment.threshold_percentage),
                snapshot_source=assessment.snapshot_source.value,
            )

            if self.executor.is_unreconciled(vault.vault_id):
                logger.warning("Earlier unwind not yet recorded, not remediating again", vault_id=vault.vault_id)
                report.unreconciled.append(vault.vault_id)
                report.skipped += 1
                continue

            if not vault.symbol_resolved and not self.auto_remediate_unresolved:
                logger.warning("Unresolved asset symbol, leaving for manual review", vault_id=vault.vault_id)
                report.manual_review.append(vault.vault_id)
                report.skipped += 1
                continue

            try:
                event = await self.executor.execute(vault, assessment)
            except UnreconciledSettlementError as e:
                report.failures += 1
                report.unreconciled.append(vault.vault_id)
                error_collector.record_error(e, {"vault_id": vault.vault_id, "phase": "remediating"})
                continue
            except (RemediationFailedError, ProtectionNotAllowedError) as e:
                report.failures += 1
                error_collector.record_error(e, {"vault_id": vault.vault_id, "phase": "remediating"})
                continue
            except Exception as e:
                report.failures += 1
                logger.exception("Unexpected error protecting vault", vault_id=vault.vault_id)
                error_collector.record_error(e, {"vault_id": vault.vault_id, "phase": "remediating"})
                continue

            if event.success:
                report.protected += 1
            else:
                report.skipped += 1

    def status(self) -> Dict:
        return {
            "state": self.state.value,
            "is_running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "cycles_completed": self.cycles_completed,
            "unreconciled_vaults": self.executor.unreconciled_ids,
            "last_cycle": self.last_report.model_dump(mode="json") if self.last_report else None,
        }
