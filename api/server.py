"""
HTTP query API for the Fee Collector Indexer

Serves fee events by integrator, indexing status and a health check.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from web3 import Web3

from config.settings import ChainConfig
from repositories.base import EventRepository
from utils.exceptions import PersistenceError


logger = structlog.get_logger(__name__)

StatusProvider = Callable[[], Awaitable[Dict[str, Any]]]


def create_app(
    event_repo: EventRepository,
    chain_configs: Optional[Dict[str, ChainConfig]] = None,
    loop_status: Optional[StatusProvider] = None
) -> FastAPI:
    """Build the FastAPI application over an event repository."""
    chain_configs = chain_configs or {}

    app = FastAPI(
        title="Fee Collector Indexer API",
        description="FeesCollected events indexed from EVM chains",
        version="1.0.0"
    )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("API error", method=request.method, path=request.url.path, error=str(exc))
        return JSONResponse(content={"error": "Internal server error"}, status_code=500)

    @app.get("/health", response_class=JSONResponse)
    async def health():
        return {"status": "ok"}

    @app.get("/api/events", response_class=JSONResponse)
    async def list_events(integrator: Optional[str] = Query(None)):
        """All fee events of an integrator in chronological order."""
        if not integrator:
            return JSONResponse(
                content={"error": "integrator query parameter is required"},
                status_code=400
            )

        # Case-insensitive: a mixed-case address need not carry a valid checksum
        normalized = integrator.lower()
        if not normalized.startswith("0x") or not Web3.is_address(normalized):
            return JSONResponse(
                content={"error": "Invalid integrator address format. Must be a valid Ethereum address (0x...)"},
                status_code=400
            )

        logger.debug("Querying events for integrator", integrator=normalized)

        try:
            events = await event_repo.list_events_by_integrator(normalized)
        except PersistenceError as e:
            logger.error("Error fetching events", integrator=normalized, error=str(e))
            return JSONResponse(content={"error": "Failed to fetch events"}, status_code=500)

        return [event.model_dump(mode="json") for event in events]

    @app.get("/api/status", response_class=JSONResponse)
    async def status():
        """Watermark per configured chain and unresolved skipped ranges."""
        try:
            chains = {}
            for name, chain_config in chain_configs.items():
                chains[name] = {
                    "chain_id": chain_config.chain_id,
                    "last_processed_block": await event_repo.get_watermark(chain_config.chain_id),
                }
            skipped = await event_repo.list_skipped_ranges()
        except PersistenceError as e:
            logger.error("Error fetching status", error=str(e))
            return JSONResponse(content={"error": "Failed to fetch status"}, status_code=500)

        body = {
            "chains": chains,
            "skipped_ranges": [r.model_dump(mode="json") for r in skipped],
        }
        if loop_status is not None:
            body["indexers"] = await loop_status()
        return body

    return app


class ApiServer:
    """Runs the API under uvicorn inside the worker's event loop."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8080):
        self.app = app
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Serve until stop() is called."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
            access_log=False
        )
        self.server = uvicorn.Server(config)

        logger.info("Starting API server", host=self.host, port=self.port,
                    endpoint="GET /api/events?integrator=0x...")
        await self.server.serve()

    def stop(self) -> None:
        if self.server is not None:
            self.server.should_exit = True
