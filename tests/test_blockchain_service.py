"""RpcChainSource tests with the HTTP layer replaced by fakes."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from eth_abi import encode

from config.settings import ChainConfig, Settings
from services.blockchain_service import RpcChainSource
from services.parsers.fee_collector_parser import FEES_COLLECTED_TOPIC
from utils.exceptions import DecodeError, SourceUnavailable

CONTRACT = "0xbD6C7B0d2f68c2b7805d88388319cfB6EcB50eA9"


class FakeResponse:
    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return self.payload

    async def text(self):
        return str(self.payload)


class FakeSession:
    """Answers each URL with a scripted response."""

    closed = False

    def __init__(self, responses):
        self.responses = responses
        self.posted = []

    def post(self, url, json=None, headers=None):
        self.posted.append((url, json))
        return self.responses[url]


def fee_log(block_number, log_index):
    return {
        "topics": [FEES_COLLECTED_TOPIC, "0x" + "0" * 24 + "11" * 20, "0x" + "0" * 24 + "22" * 20],
        "data": "0x" + encode(["uint256", "uint256"], [100, 5]).hex(),
        "blockNumber": hex(block_number),
        "transactionHash": "0x" + f"{block_number:060x}{log_index:04x}",
        "logIndex": hex(log_index),
    }


@pytest.fixture
def source():
    config = ChainConfig(
        chain_id=137,
        name="polygon",
        contract_address=CONTRACT,
        start_block=0,
        chunk_size=10,
        finality_depth=128,
        rpc_urls=["http://primary-1", "http://primary-2"],
        backup_rpc_urls=["http://backup"],
    )
    return RpcChainSource(config, Settings(_env_file=None, rpc_retry_delay=0))


class TestRpcCalls:

    @pytest.mark.asyncio
    async def test_fails_over_to_backup(self, source):
        source.session = FakeSession({
            "http://primary-1": FakeResponse(status=502, payload="bad gateway"),
            "http://primary-2": FakeResponse(payload={"error": {"code": -32000, "message": "limit"}}),
            "http://backup": FakeResponse(payload={"result": "0x10"}),
        })

        assert await source.get_current_height() == 16
        assert [url for url, _ in source.session.posted] == ["http://primary-1", "http://primary-2", "http://backup"]

    @pytest.mark.asyncio
    async def test_round_robin_across_primaries(self, source):
        source.session = FakeSession({
            "http://primary-1": FakeResponse(payload={"result": "0x1"}),
            "http://primary-2": FakeResponse(payload={"result": "0x2"}),
        })

        first = await source.get_current_height()
        second = await source.get_current_height()

        assert {first, second} == {1, 2}

    @pytest.mark.asyncio
    async def test_all_urls_failing_raises(self, source):
        source.session = FakeSession({
            url: FakeResponse(payload={"result": None})
            for url in ("http://primary-1", "http://primary-2", "http://backup")
        })

        with pytest.raises(SourceUnavailable):
            await source.get_current_height()

    @pytest.mark.asyncio
    async def test_non_object_body_fails_over(self, source):
        source.session = FakeSession({
            "http://primary-1": FakeResponse(payload=[1, 2]),
            "http://primary-2": FakeResponse(payload=42),
            "http://backup": FakeResponse(payload={"result": "0x20"}),
        })

        assert await source.get_current_height() == 32
        assert len(source.session.posted) == 3

    @pytest.mark.asyncio
    async def test_malformed_timestamp_is_source_error(self, source):
        source._make_rpc_call = AsyncMock(return_value={"timestamp": "not-hex"})

        with pytest.raises(SourceUnavailable):
            await source.get_block_timestamp(100)

    @pytest.mark.asyncio
    async def test_health_check_reports_rpc_failure(self, source):
        source._make_rpc_call = AsyncMock(side_effect=SourceUnavailable("all down"))

        health = await source.health_check()

        assert health["status"] == "unhealthy"
        assert "all down" in health["error"]

    @pytest.mark.asyncio
    async def test_requires_connect(self, source):
        with pytest.raises(SourceUnavailable):
            await source.get_current_height()


class TestFetchEvents:

    @pytest.mark.asyncio
    async def test_fetches_filtered_logs_with_timestamps(self, source):
        timestamps = {"0x64": "0x6553f100", "0x65": "0x6553f10c"}

        async def rpc(method, params):
            if method == "eth_getLogs":
                return [fee_log(101, 0), fee_log(100, 4), fee_log(100, 2)]
            if method == "eth_getBlockByNumber":
                return {"timestamp": timestamps[params[0]]}
            raise AssertionError(method)

        source._make_rpc_call = AsyncMock(side_effect=rpc)

        events = await source.fetch_events(100, 109)

        assert [(e.block_number, e.log_index) for e in events] == [(100, 2), (100, 4), (101, 0)]
        assert events[0].block_timestamp == 0x6553F100
        assert events[2].block_timestamp == 0x6553F10C

        log_filter = source._make_rpc_call.call_args_list[0].args[1][0]
        assert log_filter["address"] == CONTRACT.lower()
        assert log_filter["topics"] == [FEES_COLLECTED_TOPIC]
        assert (log_filter["fromBlock"], log_filter["toBlock"]) == ("0x64", "0x6d")

        block_calls = [c for c in source._make_rpc_call.call_args_list if c.args[0] == "eth_getBlockByNumber"]
        assert len(block_calls) == 2

    @pytest.mark.asyncio
    async def test_empty_range_skips_block_lookups(self, source):
        source._make_rpc_call = AsyncMock(return_value=[])

        assert await source.fetch_events(100, 109) == []
        source._make_rpc_call.assert_called_once()

    @pytest.mark.asyncio
    async def test_malformed_log_raises_decode_error(self, source):
        bad = fee_log(100, 0)
        bad["data"] = "0x"

        async def rpc(method, params):
            if method == "eth_getLogs":
                return [bad]
            return {"timestamp": "0x1"}

        source._make_rpc_call = AsyncMock(side_effect=rpc)

        with pytest.raises(DecodeError):
            await source.fetch_events(100, 109)

    @pytest.mark.asyncio
    async def test_failed_lookup_cancels_sibling_lookups(self, source):
        progress = []

        async def lookup(block_number):
            if block_number == 100:
                await asyncio.sleep(0.01)
                raise SourceUnavailable("block 100 unavailable")
            progress.append("started")
            await asyncio.sleep(0.2)
            progress.append("finished")
            return 1

        source.get_logs = AsyncMock(return_value=[fee_log(100, 0), fee_log(101, 0)])
        source.get_block_timestamp = lookup

        with pytest.raises(SourceUnavailable):
            await source.fetch_events(100, 109)

        current = asyncio.current_task()
        assert [t for t in asyncio.all_tasks() if t is not current and not t.done()] == []

        await asyncio.sleep(0.3)
        assert progress == ["started"]
