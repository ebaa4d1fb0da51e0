"""
Unit tests for the controller wiring and lifecycle.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest
from web3 import AsyncWeb3

from flash_arbitrage.config_loader import (
    BotConfig,
    ExecutionConfig,
    MetricsConfig,
    NetworkConfig,
    VenueConfig,
    WalletConfig,
)
from flash_arbitrage.controller import Controller, build_web3
from flash_arbitrage.exceptions import ConfigurationError, DiscoveryError, SubscriptionError
from flash_arbitrage.types import VenueKind
from flash_arbitrage.venues import VenueState

TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
KEY_ENV = "FLASH_ARBITRAGE_TEST_KEY"


def make_config(dry_run=False):
    return BotConfig(
        network=NetworkConfig(rpc_http_url="http://localhost:8545", rpc_ws_url="ws://localhost:8546"),
        venues=(
            VenueConfig("uniswap", VenueKind.UNISWAP_V3, "uniswap-subgraph"),
            VenueConfig("pancakeswap", VenueKind.PANCAKESWAP_V3, "pancake-subgraph", "0x" + "fb" * 20),
        ),
        wallet=WalletConfig(private_key_env=KEY_ENV),
        execution=ExecutionConfig(contract_address="0x" + "fa" * 20, dry_run=dry_run),
        metrics=MetricsConfig(enabled=False),
    )


def make_connection():
    connection = Mock()
    connection.refresh = AsyncMock()
    connection.stop = AsyncMock()
    connection.failure = None
    return connection


class TestWiring:
    def test_venues_share_one_nonce_allocator(self, monkeypatch):
        monkeypatch.setenv(KEY_ENV, TEST_PRIVATE_KEY)
        controller = Controller(make_config(), web3=Mock(), connection=make_connection())

        pipelines = [venue.execution_pipeline for venue in controller.venues]
        assert controller.nonces is not None
        assert all(p.nonces is controller.nonces for p in pipelines)
        assert all(p.account is controller.account for p in pipelines)
        assert pipelines[0].contract_address == "0x" + "fa" * 20
        assert pipelines[1].contract_address == "0x" + "fb" * 20
        assert [venue.kind for venue in controller.venues] == [
            VenueKind.UNISWAP_V3,
            VenueKind.PANCAKESWAP_V3,
        ]

    def test_live_execution_requires_key(self, monkeypatch):
        monkeypatch.delenv(KEY_ENV, raising=False)
        with pytest.raises(ConfigurationError, match=KEY_ENV):
            Controller(make_config(), web3=Mock(), connection=make_connection())

    def test_invalid_key(self, monkeypatch):
        monkeypatch.setenv(KEY_ENV, "0x1234")
        with pytest.raises(ConfigurationError, match="Invalid wallet private key"):
            Controller(make_config(), web3=Mock(), connection=make_connection())

    def test_dry_run_without_key(self, monkeypatch):
        monkeypatch.delenv(KEY_ENV, raising=False)
        controller = Controller(make_config(dry_run=True), web3=Mock(), connection=make_connection())
        assert controller.account is None
        assert controller.nonces is None

    def test_build_web3(self):
        web3 = build_web3("http://localhost:8545", request_timeout=5.0, max_retries=4)
        assert isinstance(web3, AsyncWeb3)
        retry = web3.provider.exception_retry_configuration
        assert retry.retries == 4
        assert aiohttp.ClientError in tuple(retry.errors)
        assert asyncio.TimeoutError in tuple(retry.errors)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_keeps_healthy_venues(self, monkeypatch):
        monkeypatch.delenv(KEY_ENV, raising=False)
        connection = make_connection()
        controller = Controller(make_config(dry_run=True), web3=Mock(), connection=connection)
        failing, healthy = controller.venues
        failing.initialize = AsyncMock(side_effect=DiscoveryError("subgraph down"))

        async def become_ready():
            healthy.state = VenueState.READY

        healthy.initialize = AsyncMock(side_effect=become_ready)

        ready = await controller.start()

        assert ready == [healthy]
        connection.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_stops_everything(self, monkeypatch):
        monkeypatch.delenv(KEY_ENV, raising=False)
        connection = make_connection()
        controller = Controller(make_config(dry_run=True), web3=Mock(), connection=connection)
        for venue in controller.venues:
            venue.initialize = AsyncMock()
            venue.state = VenueState.READY
            venue.shutdown = AsyncMock()

        stop_event = asyncio.Event()
        stop_event.set()
        await controller.run(stop_event, poll_interval=0.01)

        connection.stop.assert_awaited_once()
        for venue in controller.venues:
            venue.shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_exits_when_stream_fails(self, monkeypatch):
        monkeypatch.delenv(KEY_ENV, raising=False)
        connection = make_connection()
        controller = Controller(make_config(dry_run=True), web3=Mock(), connection=connection)
        for venue in controller.venues:
            venue.initialize = AsyncMock()
            venue.state = VenueState.READY
            venue.shutdown = AsyncMock()
        connection.failure = SubscriptionError("gave up", attempts=10)

        await asyncio.wait_for(controller.run(asyncio.Event(), poll_interval=0.01), timeout=2)

        connection.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_returns_without_ready_venues(self, monkeypatch):
        monkeypatch.delenv(KEY_ENV, raising=False)
        connection = make_connection()
        controller = Controller(make_config(dry_run=True), web3=Mock(), connection=connection)
        for venue in controller.venues:
            venue.initialize = AsyncMock(side_effect=DiscoveryError("down"))
            venue.shutdown = AsyncMock()

        await asyncio.wait_for(controller.run(asyncio.Event()), timeout=2)

        connection.stop.assert_awaited_once()
