#!/usr/bin/env python3
"""
Fee Collector Indexer - Main Entry Point

Indexes FeesCollected events emitted by the LI.FI FeeCollector contract
on EVM chains into MongoDB and serves them over HTTP by integrator.
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple
import structlog
import click
from datetime import datetime

# Add current directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from api.server import ApiServer, create_app
from config.settings import Settings, ChainConfig, get_settings, load_chain_configs
from repositories.mongodb import MongoEventRepository
from services.blockchain_service import RpcChainSource
from services.indexer import IndexerService
from utils.exceptions import ConfigurationError
from utils.logging import configure_logging

# Basic structlog setup for startup
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(20),  # INFO level
    logger_factory=structlog.WriteLoggerFactory(file=sys.stdout),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger()


class IndexerWorker:
    """Runs one indexing loop per configured chain plus the query API."""

    def __init__(self, settings: Settings, chain_configs: Dict[str, ChainConfig]):
        self.settings = settings
        self.chain_configs = chain_configs
        self.event_repo: Optional[MongoEventRepository] = None
        self.chain_sources: Dict[int, RpcChainSource] = {}
        self.indexer_services: Dict[int, IndexerService] = {}
        self.api_server: Optional[ApiServer] = None
        self.tasks: List[asyncio.Task] = []
        self._shutdown_event: Optional[asyncio.Event] = None

        logger.info("IndexerWorker initialized",
                   settings_log_level=self.settings.log_level,
                   settings_log_format=self.settings.log_format,
                   chains=list(self.chain_configs.keys()))

    async def start(self) -> None:
        """Start every chain loop and block until they finish or shutdown is requested."""
        self._shutdown_event = asyncio.Event()
        try:
            logger.info("Starting Fee Collector Indexer",
                       chains=[config.describe() for config in self.chain_configs.values()])

            # One client pool shared by all loops
            self.event_repo = MongoEventRepository(
                self.settings.mongodb_url,
                self.settings.mongodb_database,
                self.settings.mongodb_timeout_ms
            )
            await self.event_repo.connect()

            for chain_config in self.chain_configs.values():
                await self._initialize_chain_indexer(chain_config)

            self._setup_signal_handlers()

            for chain_id, indexer_service in self.indexer_services.items():
                task = asyncio.create_task(
                    indexer_service.start(),
                    name=f"indexer-{chain_id}"
                )
                self.tasks.append(task)

            if self.settings.api_enabled:
                app = create_app(self.event_repo, self.chain_configs, self.health_check)
                self.api_server = ApiServer(app, self.settings.api_host, self.settings.api_port)
                self.tasks.append(asyncio.create_task(self.api_server.start(), name="api-server"))

            logger.info("All indexer services started",
                       count=len(self.indexer_services),
                       tasks=[task.get_name() for task in self.tasks])

            indexers = [task for task in self.tasks if task.get_name().startswith("indexer-")]
            indexers_done = asyncio.gather(*indexers, return_exceptions=True)
            shutdown_requested = asyncio.create_task(self._shutdown_event.wait())
            try:
                await asyncio.wait(
                    {indexers_done, shutdown_requested},
                    return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                shutdown_requested.cancel()

            if indexers_done.done():
                logger.info("All indexer loops finished")

        except Exception as e:
            logger.error("Failed to start indexer worker", error=str(e))
            raise
        finally:
            await self.stop()

    async def _initialize_chain_indexer(self, chain_config: ChainConfig) -> None:
        """Create the chain source and indexing loop for one chain."""
        chain_id = chain_config.chain_id
        try:
            chain_source = RpcChainSource(chain_config, self.settings)
            await chain_source.connect()
            self.chain_sources[chain_id] = chain_source

            self.indexer_services[chain_id] = IndexerService(
                self.settings,
                chain_config,
                chain_source,
                self.event_repo
            )

            logger.info("Initialized indexer for chain",
                       chain_id=chain_id,
                       chain_name=chain_config.name,
                       start_block=chain_config.start_block)

        except Exception as e:
            logger.error("Failed to initialize chain indexer",
                        chain_id=chain_id,
                        error=str(e))
            raise

    def request_shutdown(self) -> None:
        """Ask every loop and the API server to stop."""
        for indexer_service in self.indexer_services.values():
            indexer_service.stop()
        if self.api_server is not None:
            self.api_server.stop()
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop all loops gracefully, cancel stragglers, then close connections."""
        start_time = datetime.utcnow()
        self.request_shutdown()

        pending_tasks = [task for task in self.tasks if not task.done()]
        if pending_tasks:
            timeout = self.settings.shutdown_timeout_seconds
            logger.info("Waiting for tasks to stop gracefully",
                       timeout_seconds=timeout,
                       tasks=[task.get_name() for task in pending_tasks])

            _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
            if pending:
                logger.warning("Some tasks did not stop within timeout, cancelling",
                             timeout_seconds=timeout,
                             tasks=[task.get_name() for task in pending])
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        for task in self.tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                logger.error("Task failed",
                            task_name=task.get_name(),
                            error=str(task.exception()))
        self.tasks.clear()

        await self._close_connections()

        shutdown_duration = (datetime.utcnow() - start_time).total_seconds()
        logger.info("Fee Collector Indexer stopped",
                   shutdown_duration_seconds=shutdown_duration)

    async def _close_connections(self) -> None:
        for chain_id, chain_source in self.chain_sources.items():
            try:
                await chain_source.disconnect()
            except Exception as e:
                logger.warning("Error closing chain source", chain_id=chain_id, error=str(e))
        self.chain_sources.clear()

        if self.event_repo is not None:
            await self.event_repo.disconnect()
            self.event_repo = None

    def _setup_signal_handlers(self) -> None:
        """First SIGINT/SIGTERM stops gracefully, a second one cancels everything."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            signal_name = signal.Signals(signum).name
            if self._shutdown_event is not None and not self._shutdown_event.is_set():
                logger.info("Received shutdown signal, initiating graceful shutdown",
                           signal_name=signal_name)
                self.request_shutdown()
            else:
                logger.warning("Second shutdown signal received, forcing shutdown",
                             signal_name=signal_name)
                for task in self.tasks:
                    task.cancel()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)
        logger.info("Signal handlers configured for graceful shutdown")

    async def health_check(self) -> Dict[str, Any]:
        """Get health status of all indexer services."""
        health = {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "services": {}
        }

        for chain_id, indexer_service in self.indexer_services.items():
            try:
                service_health = await indexer_service.health_check()
                chain_source = self.chain_sources.get(chain_id)
                if chain_source is not None:
                    rpc_health = await chain_source.health_check()
                    service_health["rpc"] = rpc_health
                    if rpc_health["status"] != "healthy":
                        service_health["status"] = "unhealthy"
                health["services"][str(chain_id)] = service_health

                if service_health.get("status") != "healthy":
                    health["status"] = "unhealthy"
            except Exception as e:
                health["services"][str(chain_id)] = {
                    "status": "unhealthy",
                    "error": str(e)
                }
                health["status"] = "unhealthy"

        if self.event_repo is not None and not await self.event_repo.health_check():
            health["status"] = "unhealthy"
            health["database"] = "unreachable"

        return health


def _load_configuration(chain: Optional[str] = None) -> Tuple[Settings, Dict[str, ChainConfig]]:
    """Settings and chain configs, optionally narrowed to one chain. Exits on bad config."""
    try:
        settings = get_settings()
        if chain:
            # Allow any chain with a config file, enabled or not
            settings.enabled_chains = chain
        chain_configs = load_chain_configs(settings)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    return settings, chain_configs


def _connect_repository(settings: Settings) -> MongoEventRepository:
    return MongoEventRepository(
        settings.mongodb_url,
        settings.mongodb_database,
        settings.mongodb_timeout_ms
    )


# CLI Commands
@click.group()
def cli():
    """Fee Collector Indexer CLI"""
    pass


@cli.command()
@click.option('--chain', help='Index only this chain (name of a file in config/chains)')
@click.option('--log-format', type=click.Choice(['json', 'console']), help='Log output format (overrides FEEIDX_LOG_FORMAT)')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Log level (overrides FEEIDX_LOG_LEVEL)')
@click.option('--debug', is_flag=True, help='Enable debug logging (same as --log-level DEBUG)')
def start(chain: str = None, log_format: str = None, log_level: str = None, debug: bool = False):
    """Start indexing all enabled chains and serve the query API."""
    settings, chain_configs = _load_configuration(chain)

    if debug:
        effective_log_level = "DEBUG"
    elif log_level:
        effective_log_level = log_level
    else:
        effective_log_level = settings.log_level

    effective_log_format = log_format or settings.log_format

    print("Starting Fee Collector Indexer...")
    print(f"Log format: {effective_log_format} (env: {settings.log_format})")
    print(f"Log level: {effective_log_level} (env: {settings.log_level})")
    print(f"Chains: {', '.join(chain_configs)}")
    print("=" * 50)
    sys.stdout.flush()

    configure_logging(effective_log_level, effective_log_format)
    logger.info("Fee Collector Indexer starting",
               log_format=effective_log_format,
               log_level=effective_log_level,
               debug_flag=debug)

    worker = IndexerWorker(settings, chain_configs)

    try:
        asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Indexer interrupted by user")
    except Exception as e:
        logger.error("Indexer failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('chain')
@click.option('--from-block', type=int, required=True, help='First block to re-index')
@click.option('--to-block', type=int, required=True, help='Last block to re-index (inclusive)')
def backfill(chain: str, from_block: int, to_block: int):
    """Re-index a block range without touching the live watermark."""
    if from_block < 0 or to_block < from_block:
        click.echo("--from-block must be non-negative and not greater than --to-block", err=True)
        sys.exit(1)

    settings, chain_configs = _load_configuration(chain)
    chain_config = chain_configs[chain]
    configure_logging(settings.log_level, settings.log_format)

    async def run_backfill() -> IndexerService:
        event_repo = _connect_repository(settings)
        chain_source = RpcChainSource(chain_config, settings)
        await event_repo.connect()
        await chain_source.connect()

        service = IndexerService(
            settings,
            chain_config,
            chain_source,
            event_repo,
            track_watermark=False,
            start_block=from_block,
            end_block=to_block
        )

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, service.stop)

        try:
            await service.start()
            covered_to = (service.cursor or from_block) - 1
            if service.chunks_skipped == 0 and covered_to >= from_block:
                resolved = await event_repo.resolve_skipped_ranges(
                    chain_config.chain_id, from_block, covered_to
                )
                logger.info("Backfill complete",
                           chain_id=chain_config.chain_id,
                           from_block=from_block,
                           to_block=covered_to,
                           resolved_ranges=resolved)
        finally:
            await chain_source.disconnect()
            await event_repo.disconnect()
        return service

    try:
        service = asyncio.run(run_backfill())
    except Exception as e:
        click.echo(f"Backfill failed: {e}", err=True)
        sys.exit(1)

    last_block = (service.cursor or from_block) - 1
    click.echo(f"Backfilled {chain_config.name} blocks {from_block}..{last_block}: "
               f"{service.events_saved} events, {service.chunks_skipped} chunks skipped")
    if last_block < to_block:
        click.echo(f"Blocks {last_block + 1}..{to_block} are not final yet or were not reached")
    if service.chunks_skipped:
        sys.exit(1)


@cli.command()
@click.option('--chain', help='Only show ranges of this chain')
@click.option('--all', 'include_resolved', is_flag=True, help='Include ranges already resolved by a backfill')
def gaps(chain: str = None, include_resolved: bool = False):
    """List block ranges skipped after exhausting their retries."""
    settings, chain_configs = _load_configuration(chain)
    chain_id = chain_configs[chain].chain_id if chain else None

    async def list_gaps():
        event_repo = _connect_repository(settings)
        await event_repo.connect()
        try:
            return await event_repo.list_skipped_ranges(chain_id, include_resolved)
        finally:
            await event_repo.disconnect()

    try:
        ranges = asyncio.run(list_gaps())
    except Exception as e:
        click.echo(f"Failed to list skipped ranges: {e}", err=True)
        sys.exit(1)

    if not ranges:
        click.echo("No skipped ranges")
        return

    for skipped in ranges:
        status = "resolved" if skipped.resolved else "open"
        click.echo(f"chain {skipped.chain_id}: blocks {skipped.from_block}..{skipped.to_block} "
                   f"[{status}] attempts={skipped.attempts} detected={skipped.detected_at.isoformat()}")
        if skipped.last_error:
            click.echo(f"    last error: {skipped.last_error}")


@cli.command()
def config():
    """Show current configuration."""
    settings, chain_configs = _load_configuration()

    click.echo("=== Fee Collector Indexer Configuration ===\n")

    click.echo("Settings:")
    for key, value in settings.model_dump().items():
        if 'url' in key.lower() or 'password' in key.lower():
            value = "***masked***"
        click.echo(f"  {key}: {value}")

    click.echo(f"\nEnabled Chains ({len(chain_configs)}):")
    for name, chain_config in chain_configs.items():
        click.echo(f"  {name}:")
        for key, value in chain_config.describe().items():
            click.echo(f"    {key}: {value}")


@cli.command()
@click.argument('chain')
def test_connection(chain: str):
    """Test blockchain connection for a specific chain."""
    settings, chain_configs = _load_configuration(chain)
    chain_config = chain_configs[chain]

    async def test_chain_connection():
        chain_source = RpcChainSource(chain_config, settings)
        try:
            await chain_source.connect()
            latest_block = await chain_source.get_current_height()
            click.echo(f"Connected to {chain_config.name} (Chain ID: {chain_config.chain_id})")
            click.echo(f"Latest block: {latest_block}")
            return True
        except Exception as e:
            click.echo(f"Failed to connect to {chain_config.name}: {e}")
            return False
        finally:
            await chain_source.disconnect()

    if not asyncio.run(test_chain_connection()):
        sys.exit(1)


if __name__ == "__main__":
    cli()
