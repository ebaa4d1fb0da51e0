"""
Per-exchange orchestration: pool discovery, pool bindings, the token index
and dispatch of swap events to detection and execution.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from .config_loader import DetectionConfig, DiscoveryConfig
from .contracts import PoolContract, SwapEventDecoder
from .detection import OpportunityDetector
from .discovery import DexPoolSubgraph
from .execution import ExecutionPipeline, ExecutionResult
from .streaming import ConnectionManager
from .token_index import TokenIndex, TokenIndexBuilder
from .types import Pool, SwapEvent, VenueKind
from .utils import get_logger

logger = get_logger(__name__)


class VenueState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class DexVenue:
    """
    One concentrated-liquidity exchange being watched.

    Uniswap V3 and PancakeSwap V3 venues only differ in how swap logs are
    decoded, which is delegated to a SwapEventDecoder.
    """

    def __init__(
        self,
        name: str,
        kind: VenueKind,
        subgraph: DexPoolSubgraph,
        connection: ConnectionManager,
        execution_pipeline: ExecutionPipeline,
        detection_config: DetectionConfig,
        discovery_config: DiscoveryConfig,
        metrics: Any = None,
    ):
        self.name = name
        self.kind = kind
        self.subgraph = subgraph
        self.connection = connection
        self.execution_pipeline = execution_pipeline
        self.detection_config = detection_config
        self.discovery_config = discovery_config
        self.metrics = metrics
        self.decoder = SwapEventDecoder(kind)

        self.state = VenueState.UNINITIALIZED
        self.pools: List[Pool] = []
        self.contracts: Dict[str, PoolContract] = {}
        self.token_index: Optional[TokenIndex] = None
        self.detector: Optional[OpportunityDetector] = None

    @property
    def is_ready(self) -> bool:
        return self.state is VenueState.READY

    async def initialize(self) -> None:
        """
        Discover pools, bind them to the event stream and build the token index.

        Raises:
            Exception: Whatever step failed; bindings created so far are torn
                down and the venue returns to UNINITIALIZED
        """
        if self.state is not VenueState.UNINITIALIZED:
            logger.warning(f"[{self.name}] Already {self.state.value}, skipping initialize")
            return
        self.state = VenueState.INITIALIZING

        try:
            await self._initialize()
        except Exception as e:
            logger.error(f"[{self.name}] Initialization failed: {e}")
            await self._teardown()
            self.state = VenueState.UNINITIALIZED
            raise

        self.state = VenueState.READY
        logger.info(f"[{self.name}] Initialized with {len(self.contracts)} pools")

    async def _initialize(self) -> None:
        await self.execution_pipeline.initialize()
        await self.subgraph.initialize()

        self.pools = await self.subgraph.get_pools(
            limit=self.discovery_config.limit,
            page_count=self.discovery_config.page_count,
            page_size=self.discovery_config.page_size,
        )
        logger.info(f"[{self.name}] Fetched {len(self.pools)} pools")

        builder = TokenIndexBuilder()
        for count, pool in enumerate(self.pools, start=1):
            if len(pool.input_tokens) != 2:
                logger.warning(
                    f"[{self.name}] Skipping pool {pool.id} with "
                    f"{len(pool.input_tokens)} input tokens"
                )
                continue
            if pool.id in self.contracts:
                continue

            logger.debug(f"[{self.name}] Creating pool # {count}")
            binding = PoolContract(pool, self.decoder, self.process_swap, self.name)
            await binding.bind(self.connection)
            self.contracts[pool.id] = binding
            builder.add_pool(pool)

        self.token_index = builder.freeze()
        self.detector = OpportunityDetector(
            self.token_index, self.price_state_of, self.detection_config, self.name
        )

    def price_state_of(self, pool_id: str) -> int:
        binding = self.contracts.get(pool_id)
        return binding.last_sqrt_price_x96 if binding is not None else 0

    async def process_swap(self, swap: SwapEvent, last_sqrt_price_x96: int) -> None:
        """Evaluate a swap and execute the resulting opportunity, if any."""
        binding = self.contracts.get(swap.pool_id)
        if binding is None:
            logger.warning(f"[{self.name}] Swap for unknown pool {swap.pool_id}")
            return
        if self.detector is None:
            logger.debug(f"[{self.name}] Not ready, ignoring swap on {swap.pool_id}")
            return

        if self.metrics is not None:
            self.metrics.record_swap(self.name)

        try:
            opportunity = self.detector.evaluate(swap, last_sqrt_price_x96, binding.pool)
        except Exception as e:
            logger.error(f"[{self.name}] Error evaluating swap on {swap.pool_id}: {e}", exc_info=True)
            return
        if opportunity is None:
            return

        if self.metrics is not None:
            self.metrics.record_opportunity(self.name, opportunity.price_impact_bps)

        await self.execution_pipeline.execute(opportunity, on_result=self._on_execution_result)

    def _on_execution_result(self, result: ExecutionResult) -> None:
        if result.success:
            logger.debug(f"[{self.name}] Execution result: {result.tx_hash or 'dry run'}")
        else:
            logger.warning(f"[{self.name}] Error triggering smart contract: {result.error}")

    async def _teardown(self) -> None:
        for binding in list(self.contracts.values()):
            await binding.unbind(self.connection)
        self.contracts.clear()
        self.token_index = None
        self.detector = None

    async def shutdown(self) -> None:
        """Unbind every pool and release the venue's resources."""
        await self._teardown()
        await self.subgraph.close()
        await self.execution_pipeline.close()
        self.state = VenueState.UNINITIALIZED
        logger.info(f"[{self.name}] Shut down")
