"""
Composition root: builds the web3 client, wallet, event stream and one
DexVenue per configured exchange, and drives their lifecycle.
"""

import asyncio
from typing import List, Optional

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.providers.rpc.utils import ExceptionRetryConfiguration

from .config_loader import BotConfig, VenueConfig
from .discovery import DexPoolSubgraph
from .exceptions import ConfigurationError
from .execution import ExecutionPipeline, NonceAllocator
from .metrics import ArbitrageMetrics
from .streaming import ConnectionManager
from .utils import get_logger, shorten_address
from .venues import DexVenue, VenueState

logger = get_logger(__name__)

RETRYABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def build_web3(rpc_http_url: str, request_timeout: float, max_retries: int) -> AsyncWeb3:
    """Async web3 client; timeouts and retries are handled by the provider."""
    provider = AsyncHTTPProvider(
        rpc_http_url,
        request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
        exception_retry_configuration=ExceptionRetryConfiguration(
            errors=RETRYABLE_ERRORS, retries=max_retries
        ),
    )
    return AsyncWeb3(provider)


class Controller:
    """Wires and runs every configured venue."""

    def __init__(
        self,
        config: BotConfig,
        web3: Optional[AsyncWeb3] = None,
        connection: Optional[ConnectionManager] = None,
        metrics: Optional[ArbitrageMetrics] = None,
    ):
        """
        Args:
            config: Normalized bot configuration
            web3: Prebuilt web3 client, built from config.network when omitted
            connection: Prebuilt event stream, built from config when omitted
            metrics: Metrics collector, built when config.metrics.enabled

        Raises:
            ConfigurationError: If live execution is configured without a key
        """
        self.config = config
        network = config.network
        self.web3 = web3 or build_web3(
            network.rpc_http_url, network.request_timeout, network.max_retries
        )

        self.account = self._load_account()
        # One allocator per wallet, shared by every venue
        self.nonces = (
            NonceAllocator(self.web3, self.account.address) if self.account else None
        )

        if metrics is None and config.metrics.enabled:
            metrics = ArbitrageMetrics()
        self.metrics = metrics

        self.connection = connection or ConnectionManager.from_config(
            network.rpc_ws_url,
            config.streaming,
            on_reconnect=self.metrics.record_reconnect if self.metrics else None,
        )
        self.venues: List[DexVenue] = [self._build_venue(v) for v in config.venues]

    def _load_account(self) -> Optional[LocalAccount]:
        private_key = self.config.wallet.private_key
        if not private_key:
            if not self.config.execution.dry_run:
                raise ConfigurationError(
                    f"Live execution requires {self.config.wallet.private_key_env} to be set"
                )
            return None
        try:
            account = Account.from_key(private_key)
        except Exception as e:
            raise ConfigurationError(f"Invalid wallet private key: {e}")
        logger.info(f"Loaded account: {shorten_address(account.address)}")
        return account

    def _build_venue(self, venue_config: VenueConfig) -> DexVenue:
        discovery = self.config.discovery
        subgraph = DexPoolSubgraph(
            discovery.subgraph_base_url,
            venue_config.subgraph_name,
            api_key=discovery.api_key,
            request_timeout=discovery.request_timeout,
        )
        pipeline = ExecutionPipeline(
            self.web3,
            self.config.execution,
            chain_id=self.config.network.chain_id,
            account=self.account,
            nonces=self.nonces,
            contract_address=venue_config.contract_address,
            venue_name=venue_config.name,
            metrics=self.metrics,
        )
        return DexVenue(
            venue_config.name,
            venue_config.kind,
            subgraph,
            self.connection,
            pipeline,
            self.config.detection,
            discovery,
            metrics=self.metrics,
        )

    @property
    def ready_venues(self) -> List[DexVenue]:
        return [venue for venue in self.venues if venue.state is VenueState.READY]

    async def start(self) -> List[DexVenue]:
        """
        Connect the event stream and initialize every venue concurrently.

        A venue that fails to initialize is logged and left out; the others
        keep running.

        Returns:
            Venues that are ready
        """
        if self.metrics is not None:
            await self.metrics.start_server(port=self.config.metrics.port)

        await self.connection.refresh()

        results = await asyncio.gather(
            *[venue.initialize() for venue in self.venues], return_exceptions=True
        )
        for venue, result in zip(self.venues, results):
            if isinstance(result, BaseException):
                logger.error(f"Error initializing venue {venue.name}: {result}")

        ready = self.ready_venues
        logger.info(f"{len(ready)}/{len(self.venues)} venues ready")
        return ready

    async def run(self, stop_event: asyncio.Event, poll_interval: float = 5.0) -> None:
        """Run until stop_event is set or the event stream gives up."""
        try:
            ready = await self.start()
            if not ready:
                logger.error("No venue could be initialized")
                return
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    if self.connection.failure is not None:
                        logger.error(f"Event stream failed: {self.connection.failure}")
                        return
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the event stream and release every venue's resources."""
        await self.connection.stop()
        for venue in self.venues:
            await venue.shutdown()
        if self.metrics is not None:
            await self.metrics.stop_server()
        logger.info("Controller stopped")
