"""JSON-RPC chain source with round robin and failover across RPC endpoints."""

from typing import List, Dict, Any, Optional
import asyncio
import aiohttp
import structlog

from config.settings import ChainConfig, Settings
from models.fee_event import FeeCollectedEvent
from services.chain_source import ChainSource
from services.parsers.fee_collector_parser import FeeCollectorParser
from utils.exceptions import SourceUnavailable, DecodeError

logger = structlog.get_logger(__name__)


def _short(url: str) -> str:
    return url[:50] + "..." if len(url) > 50 else url


class RpcChainSource(ChainSource):
    """Reads FeesCollected events of one chain over JSON-RPC."""

    def __init__(self, chain_config: ChainConfig, settings: Optional[Settings] = None):
        self.chain_config = chain_config
        self.settings = settings or Settings()
        self.parser = FeeCollectorParser(chain_config.chain_id)
        self.session: Optional[aiohttp.ClientSession] = None
        self._timestamp_semaphore = asyncio.Semaphore(self.settings.rpc_max_concurrency)

    async def connect(self) -> None:
        """Open the HTTP session used for RPC calls."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.rpc_timeout)
            )
        logger.info("Blockchain source ready",
                    chain_id=self.chain_config.chain_id,
                    chain_name=self.chain_config.name,
                    rpc_urls=len(self.chain_config.rpc_urls),
                    backup_rpc_urls=len(self.chain_config.backup_rpc_urls))

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()
        logger.info("Disconnected from blockchain", chain_id=self.chain_config.chain_id)

    def get_next_primary_rpc_url(self) -> str:
        """Get next RPC URL using round robin from primary rpc_urls list."""
        primary_urls = self.chain_config.rpc_urls
        current_url = primary_urls[self.chain_config.current_rpc_index % len(primary_urls)]
        self.chain_config.current_rpc_index = (self.chain_config.current_rpc_index + 1) % len(primary_urls)
        return current_url

    def _candidate_urls(self) -> List[str]:
        # Every primary once, starting at the round robin position, then the backups
        primary_urls = self.chain_config.rpc_urls
        first = self.get_next_primary_rpc_url()
        start = primary_urls.index(first)
        primaries = primary_urls[start:] + primary_urls[:start]
        return primaries + list(self.chain_config.backup_rpc_urls)

    async def _make_rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make async RPC call with failover support."""
        if not self.session or self.session.closed:
            raise SourceUnavailable("RPC session not initialized, call connect() first")

        rpc_urls = self._candidate_urls()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": 1
        }

        last_error: Optional[Exception] = None

        for i, rpc_url in enumerate(rpc_urls):
            try:
                async with self.session.post(
                    rpc_url,
                    json=payload,
                    headers={"Content-Type": "application/json"}
                ) as response:

                    if response.status != 200:
                        raise SourceUnavailable(f"HTTP {response.status}: {await response.text()}")

                    data = await response.json(content_type=None)
                    if not isinstance(data, dict):
                        raise SourceUnavailable(f"Unexpected JSON-RPC response body: {data!r}")

                    if "error" in data:
                        raise SourceUnavailable(f"RPC error: {data['error']}")

                    result = data.get("result")
                    if result is None:
                        raise SourceUnavailable(f"RPC returned null result for {method}")

                    if i > 0:
                        logger.info("RPC call succeeded after failover",
                                    method=method,
                                    attempt=i + 1,
                                    rpc_url=_short(rpc_url))
                    return result

            except (SourceUnavailable, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                logger.warning("RPC call failed, trying next URL",
                               chain_id=self.chain_config.chain_id,
                               method=method,
                               rpc_url=_short(rpc_url),
                               error=str(e) or type(e).__name__,
                               attempt=i + 1,
                               remaining_rpcs=len(rpc_urls) - i - 1)

                if i < len(rpc_urls) - 1 and self.settings.rpc_retry_delay > 0:
                    await asyncio.sleep(self.settings.rpc_retry_delay * (2 ** i))

        logger.error("All RPC URLs failed",
                     chain_id=self.chain_config.chain_id,
                     method=method,
                     total_rpcs_tried=len(rpc_urls),
                     last_error=str(last_error))

        raise SourceUnavailable(f"All {len(rpc_urls)} RPC URLs failed. Last error: {last_error}")

    async def get_current_height(self) -> int:
        result = await self._make_rpc_call("eth_blockNumber", [])
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise SourceUnavailable(f"Invalid eth_blockNumber result: {result!r}") from e

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get block timestamp in Unix seconds."""
        async with self._timestamp_semaphore:
            result = await self._make_rpc_call("eth_getBlockByNumber", [hex(block_number), False])

        if not isinstance(result, dict) or "timestamp" not in result:
            raise SourceUnavailable(f"Invalid block data returned for block {block_number}")
        try:
            return int(result["timestamp"], 16)
        except (TypeError, ValueError) as e:
            raise SourceUnavailable(f"Invalid timestamp for block {block_number}: {result['timestamp']!r}") from e

    async def get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """Get FeesCollected logs of the configured contract."""
        params = {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "address": self.chain_config.contract_address,
            "topics": [self.parser.topic]
        }
        result = await self._make_rpc_call("eth_getLogs", [params])
        if not isinstance(result, list):
            raise DecodeError(f"eth_getLogs returned {type(result).__name__}, expected a list")
        return result

    async def fetch_events(self, from_block: int, to_block: int) -> List[FeeCollectedEvent]:
        logs = await self.get_logs(from_block, to_block)
        if not logs:
            return []

        try:
            block_numbers = sorted({int(log["blockNumber"], 16) for log in logs})
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Log without a valid blockNumber: {e}") from e

        lookups = [asyncio.create_task(self.get_block_timestamp(b)) for b in block_numbers]
        try:
            timestamps = await asyncio.gather(*lookups)
        finally:
            # A failed lookup must not leave its siblings running
            pending = [task for task in lookups if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        timestamp_by_block = dict(zip(block_numbers, timestamps))

        events = [
            self.parser.parse_fees_collected(log, timestamp_by_block[int(log["blockNumber"], 16)])
            for log in logs
        ]
        events.sort(key=lambda e: (e.block_number, e.log_index))

        logger.debug("Fetched fee events",
                     chain_id=self.chain_config.chain_id,
                     from_block=from_block,
                     to_block=to_block,
                     logs=len(logs),
                     events=len(events))
        return events

    async def health_check(self) -> Dict[str, Any]:
        """RPC health for the status endpoint."""
        try:
            latest_block = await self.get_current_height()
            return {"status": "healthy", "latest_block": latest_block}
        except SourceUnavailable as e:
            return {"status": "unhealthy", "error": str(e)}
