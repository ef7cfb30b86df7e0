import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from typing import Dict, List, Optional, Any
import structlog

from .config import settings
from .error_handling import OracleUnavailableError, TransientFetchError
from .models import RawLedgerRecord, SettlementAck, SettlementInstruction

logger = structlog.get_logger()

class APIError(Exception):
    """Non-retryable HTTP error response"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class BaseAPIClient:
    def __init__(self, base_url: str, headers: Optional[Dict] = None, timeout: float = 30.0):
        self.base_url = base_url
        self.default_headers = headers or {}
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None

    def _open(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.default_headers,
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100)
            )
        return self.client

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self):
        self._open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @retry(
        stop=stop_after_attempt(settings.HTTP_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make HTTP request, retrying transport failures only"""
        client = self._open()
        response = await client.request(method, endpoint, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {method} {endpoint}",
                        status_code=e.response.status_code)
            raise APIError(f"API request failed: {e.response.status_code}",
                           status_code=e.response.status_code) from e
        return response.json()

class Charli3OracleClient(BaseAPIClient):
    """Current pair data from the Charli3 price oracle"""

    def __init__(self, base_url: str = settings.ORACLE_BASE_URL,
                 api_key: Optional[str] = settings.ORACLE_API_KEY,
                 timeout: float = settings.ORACLE_TIMEOUT_SECONDS):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        super().__init__(base_url, headers, timeout)

    async def get_pair_data(self, asset_a: str, asset_b: str) -> Dict[str, Any]:
        """Return {price, reserve_a, reserve_b, tvl, volume_24h, timestamp} for a pair"""
        pair = f"{asset_a}/{asset_b}"
        try:
            data = await self._make_request("GET", "/pairs/current", params={"pair": pair})
        except (httpx.TransportError, APIError) as e:
            raise OracleUnavailableError(f"Oracle request failed for {pair}: {e}") from e
        except ValueError as e:
            raise OracleUnavailableError(f"Oracle returned invalid JSON for {pair}") from e

        # Charli3 wraps payloads in "d" on some endpoints
        if isinstance(data, dict) and isinstance(data.get("d"), dict):
            data = data["d"]
        if not isinstance(data, dict) or not data:
            raise OracleUnavailableError(f"Oracle returned no data for {pair}")

        price = data.get("price")
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
            raise OracleUnavailableError(f"Oracle returned no usable price for {pair}")

        return {
            "price": float(price),
            "reserve_a": float(data.get("reserve_a") or data.get("liquidity_a") or 0.0),
            "reserve_b": float(data.get("reserve_b") or data.get("liquidity_b") or 0.0),
            "tvl": float(data.get("tvl") or 0.0),
            "volume_24h": float(data.get("volume_24h") or 0.0),
            "timestamp": data.get("timestamp"),
        }

class BlockfrostLedgerReader(BaseAPIClient):
    """Reads UTxOs and their inline datums at a script address"""

    PAGE_SIZE = 100

    def __init__(self, base_url: str = settings.BLOCKFROST_URL,
                 project_id: Optional[str] = settings.BLOCKFROST_PROJECT_ID,
                 timeout: float = settings.LEDGER_TIMEOUT_SECONDS):
        headers = {"project_id": project_id} if project_id else {}
        super().__init__(base_url, headers, timeout)

    async def fetch_records(self, address: str) -> List[RawLedgerRecord]:
        try:
            utxos = await self._fetch_utxos(address)
            records = []
            for utxo in utxos:
                datum = None
                if utxo.get("data_hash"):
                    datum = await self._fetch_datum(utxo["data_hash"])
                records.append(RawLedgerRecord(
                    tx_hash=utxo["tx_hash"],
                    output_index=utxo.get("output_index", utxo.get("tx_index", 0)),
                    datum=datum,
                    owner_credential=utxo.get("address"),
                ))
            return records
        except httpx.TransportError as e:
            raise TransientFetchError(f"Ledger unreachable: {e}") from e
        except APIError as e:
            if e.status_code is not None and (e.status_code >= 500 or e.status_code == 429):
                raise TransientFetchError(f"Ledger temporarily unavailable: {e}") from e
            raise

    async def _fetch_utxos(self, address: str) -> List[Dict]:
        utxos: List[Dict] = []
        page = 1
        while True:
            try:
                batch = await self._make_request(
                    "GET", f"/addresses/{address}/utxos",
                    params={"page": page, "count": self.PAGE_SIZE}
                )
            except APIError as e:
                # An address that never received funds is reported as missing
                if e.status_code == 404:
                    return utxos
                raise
            utxos.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                return utxos
            page += 1

    async def _fetch_datum(self, datum_hash: str) -> Optional[Dict]:
        try:
            data = await self._make_request("GET", f"/scripts/datum/{datum_hash}")
        except APIError as e:
            if e.status_code == 404:
                logger.warning("Datum not found", datum_hash=datum_hash)
            else:
                # Record is kept without a datum and retried on the next sync
                logger.warning("Datum lookup failed", datum_hash=datum_hash, status_code=e.status_code)
            return None
        return data.get("json_value")

class HttpSettlementClient(BaseAPIClient):
    """Submits remediation instructions to the settlement service"""

    def __init__(self, base_url: str, timeout: float = settings.SETTLEMENT_TIMEOUT_SECONDS):
        super().__init__(base_url, {"Content-Type": "application/json"}, timeout)

    async def submit(self, instruction: SettlementInstruction) -> SettlementAck:
        data = await self._make_request(
            "POST", "/remediations", json=instruction.model_dump(mode="json")
        )
        return SettlementAck(
            accepted=bool(data.get("accepted")),
            reference=data.get("reference") or data.get("tx_hash"),
            simulated=False,
            message=data.get("message"),
        )
