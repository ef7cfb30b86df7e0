"""
Error taxonomy, transient-failure classification and error collection for the keeper
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt,
    wait_exponential
)

logger = structlog.get_logger()


class KeeperError(Exception):
    """Base class for all keeper errors"""
    pass


class DecodeError(KeeperError):
    """Raised when an on-ledger payload cannot be decoded into a vault"""

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


class OracleUnavailableError(KeeperError):
    """Raised when the price oracle returns nothing usable for a pair"""
    pass


class InvalidEntryPriceError(KeeperError):
    """Raised when a vault's entry price cannot support an IL assessment"""

    def __init__(self, vault_id: str, entry_price: Any):
        super().__init__(f"Vault {vault_id} has invalid entry price: {entry_price!r}")
        self.vault_id = vault_id
        self.entry_price = entry_price


class TransientFetchError(KeeperError):
    """Raised for connectivity or timeout failures while listing or fetching state"""
    pass


class RemediationFailedError(KeeperError):
    """Raised when the settlement layer rejects or times out on a remediation"""

    def __init__(self, vault_id: str, reason: str):
        super().__init__(f"Remediation failed for vault {vault_id}: {reason}")
        self.vault_id = vault_id
        self.reason = reason


class UnreconciledSettlementError(KeeperError):
    """Raised when settlement accepted an unwind the registry could not record"""

    def __init__(self, vault_id: str, reference: Optional[str], reason: str):
        super().__init__(
            f"Vault {vault_id} unwound by settlement ({reference}) but not recorded: {reason}"
        )
        self.vault_id = vault_id
        self.reference = reference
        self.reason = reason


class InvalidStatusTransitionError(KeeperError):
    """Raised when a vault status change would move backwards"""
    pass


class ProtectionNotAllowedError(KeeperError):
    """Raised when a vault is not eligible for automatic remediation"""
    pass


class ConfigurationError(KeeperError):
    """Raised when configuration is invalid"""
    pass


TRANSIENT_EXCEPTIONS = (
    TransientFetchError,
    asyncio.TimeoutError,
    httpx.TransportError,
    ConnectionError,
)


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying within the same cycle"""
    return isinstance(error, TRANSIENT_EXCEPTIONS)


def _log_retry(retry_state: RetryCallState):
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Transient failure, retrying",
        attempt=retry_state.attempt_number,
        retry_in_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error),
    )


def bounded_retry(
    max_retries: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncRetrying:
    """Async retry policy: ``max_retries`` retries after the first attempt,
    waiting base, 2*base, 4*base... between attempts. Only transient errors
    are retried; the last error is re-raised once attempts run out."""
    return AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )


class ErrorCollector:
    """Keeps a bounded history of errors for the status probe"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.error_counts: Dict[str, int] = {}
        self.max_errors = max_errors

    def record_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        error_type = type(error).__name__
        self.errors.append({
            "timestamp": datetime.utcnow(),
            "type": error_type,
            "message": str(error),
            "context": context or {},
        })
        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.error(
            "Error recorded",
            error_type=error_type,
            error_message=str(error),
            context=context,
        )

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)
        recent_errors = [e for e in self.errors if e["timestamp"] > cutoff_time]

        error_types: Dict[str, Dict] = {}
        for error in recent_errors:
            entry = error_types.setdefault(error["type"], {"count": 0, "examples": []})
            entry["count"] += 1
            if len(entry["examples"]) < 3:
                entry["examples"].append({
                    "message": error["message"],
                    "timestamp": error["timestamp"].isoformat(),
                    "context": error["context"],
                })

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types,
        }

    def clear(self):
        self.errors.clear()
        self.error_counts.clear()


# Global error collector
error_collector = ErrorCollector()
