from pydantic_settings import BaseSettings
from typing import Dict, List, Optional
import json
import os
from pathlib import Path

from web3 import Web3

from utils.exceptions import ConfigurationError


CHAINS_DIR = Path(__file__).parent / "chains"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Database settings
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_database: str = "fee_collector"
    mongodb_timeout_ms: int = 10000

    # Chains to index, comma separated names of files in config/chains
    enabled_chains: str = "polygon"

    # Worker settings
    worker_interval_seconds: float = 10  # Poll interval once caught up
    worker_max_retries: int = 10  # Attempts per chunk before the circuit breaker trips
    worker_retry_delay: float = 5  # Fixed delay between chunk attempts
    worker_error_backoff: float = 5  # Delay after a failed cycle (e.g. height lookup)

    # Blockchain settings
    rpc_timeout: int = 30
    rpc_retry_delay: float = 1  # Base delay before trying the next RPC URL
    rpc_max_concurrency: int = 8  # Parallel block timestamp lookups

    # API settings
    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Shutdown
    shutdown_timeout_seconds: float = 30

    class Config:
        env_file = ".env"
        env_prefix = "FEEIDX_"
        extra = "ignore"

    @property
    def enabled_chain_names(self) -> List[str]:
        return [name.strip() for name in self.enabled_chains.split(",") if name.strip()]


class ChainConfig:
    """Chain-specific configuration."""

    def __init__(
        self,
        chain_id: int,
        name: str,
        contract_address: str,
        start_block: int,
        chunk_size: int,
        finality_depth: int,
        rpc_url: Optional[str] = None,
        rpc_urls: Optional[List[str]] = None,
        backup_rpc_urls: Optional[List[str]] = None,
        end_block: Optional[int] = None,
        poll_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.chain_id = chain_id
        self.name = name
        self.contract_address = contract_address
        self.start_block = start_block
        self.end_block = end_block
        self.chunk_size = chunk_size
        self.finality_depth = finality_depth
        # Support both single rpc_url and multiple rpc_urls for round robin
        self.rpc_urls = rpc_urls or ([rpc_url] if rpc_url else [])
        self.backup_rpc_urls = backup_rpc_urls or []
        self.current_rpc_index = 0  # For round robin
        self.poll_interval = poll_interval
        self.max_retries = max_retries

        self.validate()

    def validate(self) -> None:
        """Check field values, normalizing the contract address to lowercase."""
        prefix = self.name
        if not isinstance(self.chain_id, int) or isinstance(self.chain_id, bool):
            raise ConfigurationError(f"{prefix}: chain_id must be an integer")
        address = self.contract_address
        if not isinstance(address, str) or not address.startswith("0x") or not Web3.is_address(address.lower()):
            raise ConfigurationError(
                f"{prefix}: contract_address must be a valid address (0x + 40 hex chars), "
                f"got: {self.contract_address}"
            )
        self.contract_address = self.contract_address.lower()

        for field in ("start_block", "chunk_size", "finality_depth"):
            value = getattr(self, field)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"{prefix}: {field} must be an integer")
        if self.start_block < 0:
            raise ConfigurationError(f"{prefix}: start_block must be non-negative")
        if self.chunk_size <= 0:
            raise ConfigurationError(f"{prefix}: chunk_size must be greater than 0")
        if self.finality_depth < 0:
            raise ConfigurationError(f"{prefix}: finality_depth must be non-negative")
        if self.end_block is not None and self.end_block < self.start_block:
            raise ConfigurationError(f"{prefix}: end_block must not be lower than start_block")
        if self.max_retries is not None and self.max_retries < 1:
            raise ConfigurationError(f"{prefix}: max_retries must be at least 1")
        if self.poll_interval is not None and self.poll_interval < 0:
            raise ConfigurationError(f"{prefix}: poll_interval must be non-negative")
        if not self.rpc_urls:
            raise ConfigurationError(
                f"{prefix}: no RPC URL configured (set rpc_url in the chain file "
                f"or {prefix.upper()}_RPC_URL in the environment)"
            )

    @classmethod
    def load_from_file(cls, config_path: Path) -> "ChainConfig":
        """Load chain configuration from JSON file.

        The ``<NAME>_RPC_URL`` environment variable, when set, replaces the
        RPC URLs from the file so credentials can stay out of the repository.
        """
        name = config_path.stem
        try:
            with open(config_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{name}: invalid JSON in {config_path}: {e}") from e

        env_rpc_url = os.getenv(f"{name.upper()}_RPC_URL")
        rpc_urls = [env_rpc_url] if env_rpc_url else data.get("rpc_urls")

        try:
            return cls(
                chain_id=data["chain_id"],
                name=data.get("name", name),
                contract_address=data["contract_address"],
                start_block=data["start_block"],
                chunk_size=data["chunk_size"],
                finality_depth=data["finality_depth"],
                rpc_url=data.get("rpc_url"),
                rpc_urls=rpc_urls,
                backup_rpc_urls=data.get("backup_rpc_urls"),
                end_block=data.get("end_block"),
                poll_interval=data.get("poll_interval"),
                max_retries=data.get("max_retries"),
            )
        except KeyError as e:
            raise ConfigurationError(f"{name}: missing required field {e.args[0]}") from e

    def describe(self) -> Dict[str, object]:
        """Non-secret summary used by the CLI and startup logs."""
        return {
            "chain_id": self.chain_id,
            "name": self.name,
            "contract_address": self.contract_address,
            "start_block": self.start_block,
            "end_block": self.end_block,
            "chunk_size": self.chunk_size,
            "finality_depth": self.finality_depth,
            "rpc_urls": len(self.rpc_urls),
            "backup_rpc_urls": len(self.backup_rpc_urls),
        }


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()


def load_chain_configs(settings: Settings, config_dir: Optional[Path] = None) -> Dict[str, ChainConfig]:
    """Load the configurations of all enabled chains, keyed by chain name."""
    config_dir = config_dir or CHAINS_DIR

    names = settings.enabled_chain_names
    if not names:
        raise ConfigurationError("enabled_chains must contain at least one chain")

    configs = {}
    for name in names:
        config_file = config_dir / f"{name}.json"
        if not config_file.exists():
            raise ConfigurationError(f"Chain configuration file not found: {config_file}")
        configs[name] = ChainConfig.load_from_file(config_file)

    chain_ids = [c.chain_id for c in configs.values()]
    if len(set(chain_ids)) != len(chain_ids):
        raise ConfigurationError(f"Duplicate chain_id across enabled chains: {chain_ids}")

    return configs
