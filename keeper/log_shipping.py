import httpx
import structlog
from datetime import datetime
from typing import Dict, Optional

from .config import settings

logger = structlog.get_logger()

class LogShipper:
    """Sends structured keeper events to the log aggregator"""

    def __init__(self, url: Optional[str] = None, service: str = "yield_safe_keeper"):
        self.url = url
        self.service = service
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def log(self, event_type: str, data: Dict, level: str = "info"):
        """Ship one event; failures are logged and swallowed"""
        if not self.enabled:
            return
        if not self.client:
            self.client = httpx.AsyncClient(timeout=10.0)

        log_data = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": self.service,
            "event_type": event_type,
            "level": level,
            "data": data
        }

        try:
            response = await self.client.post(
                f"{self.url}/api/logs",
                json=log_data,
                headers={"Content-Type": "application/json"}
            )
            if response.status_code >= 400:
                logger.warning("Failed to ship log event", status_code=response.status_code,
                               event_type=event_type)
        except httpx.HTTPError as e:
            # Shipping must never fail the caller
            logger.warning("Error shipping log event", error=str(e), event_type=event_type)

# Global shipper instance
log_shipper = LogShipper(settings.LOKI_URL)

async def log_event(event_type: str, data: Dict, level: str = "info"):
    """Send an event to the log aggregator when one is configured"""
    await log_shipper.log(event_type, data, level)
