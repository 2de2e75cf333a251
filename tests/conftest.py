import pytest

from config.settings import ChainConfig, Settings
from tests.fakes import FakeChainSource, InMemoryEventRepository

CONTRACT = "0xbD6C7B0d2f68c2b7805d88388319cfB6EcB50eA9"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        worker_interval_seconds=0,
        worker_retry_delay=0,
        worker_error_backoff=0,
        worker_max_retries=3,
        api_enabled=False,
    )


@pytest.fixture
def chain_config():
    return ChainConfig(
        chain_id=137,
        name="polygon",
        contract_address=CONTRACT,
        start_block=100,
        chunk_size=10,
        finality_depth=5,
        rpc_urls=["http://localhost:8545"],
    )


@pytest.fixture
def event_repo():
    return InMemoryEventRepository()


@pytest.fixture
def chain_source():
    return FakeChainSource(height=1000)
