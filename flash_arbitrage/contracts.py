"""
Contract bindings: swap-event decoding for watched pools, the per-pool
event worker, and call/event encoding for the flash-loan arbitrage contract.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import LogTopicError, MismatchedABI

from .abis import (
    FLASH_ARBITRAGE_ABI,
    PANCAKESWAP_V3_POOL_ABI,
    UNISWAP_V3_POOL_ABI,
    event_topic,
    find_abi_entry,
    function_selector,
)
from .streaming import ConnectionManager, LogSubscription
from .types import (
    ArbitrageConcluded,
    ArbitragePlan,
    FlashLoanError,
    FlashLoanSuccess,
    Pool,
    SwapEvent,
    SwapLeg,
    VenueKind,
)
from .utils import get_logger

logger = get_logger(__name__)

POOL_ABIS = {
    VenueKind.UNISWAP_V3: UNISWAP_V3_POOL_ABI,
    VenueKind.PANCAKESWAP_V3: PANCAKESWAP_V3_POOL_ABI,
}

# Contract objects built on this instance only encode calls and decode logs
codec_web3 = Web3()

LOG_META_FIELDS = ("logIndex", "transactionIndex", "transactionHash", "blockHash", "blockNumber")

MAX_PENDING_LOGS = 1000

SwapHandler = Callable[[SwapEvent, int], Awaitable[None]]
ConfirmationEvent = Union[ArbitrageConcluded, FlashLoanSuccess, FlashLoanError]


def to_bytes(value: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return Web3.to_bytes(hexstr=value)


def to_hex(value: Union[None, str, bytes, bytearray]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return value


def to_int(value: Union[None, int, str]) -> Optional[int]:
    if value is None or isinstance(value, int):
        return value
    return int(value, 16)


def normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shape a raw log for web3 event processing.

    eth_subscribe notifications carry hex strings and may omit receipt fields;
    web3 compares topics as bytes and reads every metadata field.
    """
    normalized = {field: log.get(field) for field in LOG_META_FIELDS}
    normalized["address"] = log.get("address")
    normalized["topics"] = [to_bytes(topic) for topic in log.get("topics") or []]
    normalized["data"] = to_bytes(log.get("data") or b"")
    return normalized


class EventDecoder:
    """Decodes raw logs of one contract event through its web3 event object."""

    def __init__(self, contract: Any, name: str):
        self.name = name
        self.topic = event_topic(find_abi_entry(contract.abi, name, "event"))
        self._event = getattr(contract.events, name)()

    def matches(self, log: Dict[str, Any]) -> bool:
        topics = log.get("topics") or []
        return bool(topics) and to_hex(topics[0]).lower() == self.topic

    def decode(self, log: Dict[str, Any]) -> Dict[str, Any]:
        """
        Raises:
            DecodingError: If the log data does not match the event layout
            ValueError: If the log is not an instance of this event
        """
        if not self.matches(log):
            raise ValueError(f"Log is not a {self.name} event")
        try:
            event = self._event.process_log(normalize_log(log))
        except (MismatchedABI, LogTopicError) as e:
            raise ValueError(f"Log does not match {self.name}: {e}") from e
        return dict(event["args"])


class SwapEventDecoder:
    """Swap log decoder for one pool variant."""

    def __init__(self, kind: VenueKind):
        self.kind = kind
        self._event = EventDecoder(codec_web3.eth.contract(abi=POOL_ABIS[kind]), "Swap")

    @property
    def topic(self) -> str:
        return self._event.topic

    def decode(self, log: Dict[str, Any]) -> SwapEvent:
        values = self._event.decode(log)
        return SwapEvent(
            pool_id=str(log["address"]).lower(),
            amount0=values["amount0"],
            amount1=values["amount1"],
            sqrt_price_x96=values["sqrtPriceX96"],
            liquidity=values["liquidity"],
            tick=values["tick"],
            block_number=to_int(log.get("blockNumber")),
            transaction_hash=to_hex(log.get("transactionHash")),
        )


class PoolContract:
    """
    Binding between one pool and the event stream.

    Logs are queued and handled by a single worker task, so swaps of the same
    pool are processed one at a time and in arrival order, and each handler
    call sees the price state left by the previous swap. When the queue is
    full the oldest pending log is dropped in favour of the newest.
    """

    def __init__(
        self,
        pool: Pool,
        decoder: SwapEventDecoder,
        handler: SwapHandler,
        venue_name: str = "",
        max_pending_logs: int = MAX_PENDING_LOGS,
    ):
        self.pool = pool
        self.decoder = decoder
        self.handler = handler
        self.venue_name = venue_name
        self.last_sqrt_price_x96 = 0
        self.subscription: Optional[LogSubscription] = None
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=max_pending_logs)
        self.dropped_logs = 0
        self._worker: Optional[asyncio.Task] = None

    @property
    def log_filter(self) -> Dict[str, Any]:
        return {"address": self.pool.id, "topics": [self.decoder.topic]}

    @property
    def is_bound(self) -> bool:
        return self.subscription is not None

    async def bind(self, connection: ConnectionManager) -> None:
        """Subscribe to the pool's swap logs and start the worker."""
        self._worker = asyncio.create_task(self._work())
        try:
            self.subscription = await connection.subscribe(self.log_filter, self.on_log)
        except BaseException:
            self._stop_worker()
            raise
        logger.debug(f"[{self.venue_name}] Bound pool {self.pool.id} ({self.pool.name})")

    async def unbind(self, connection: ConnectionManager) -> None:
        if self.subscription is not None:
            await connection.unsubscribe(self.subscription)
            self.subscription = None
        self._stop_worker()

    def on_log(self, log: Dict[str, Any]) -> None:
        if log.get("removed"):
            logger.debug(f"[{self.venue_name}] Ignoring removed log on {self.pool.id}")
            return
        if self._queue.full():
            dropped = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped_logs += 1
            logger.warning(
                f"[{self.venue_name}] Swap queue full on {self.pool.id}, dropped log "
                f"from block {to_int(dropped.get('blockNumber'))} ({self.dropped_logs} dropped)"
            )
        self._queue.put_nowait(log)

    async def drain(self) -> None:
        """Wait until every queued log has been handled."""
        await self._queue.join()

    async def handle_log(self, log: Dict[str, Any]) -> None:
        try:
            swap = self.decoder.decode(log)
        except (DecodingError, KeyError, ValueError, TypeError) as e:
            logger.warning(f"[{self.venue_name}] Failed to decode swap on {self.pool.id}: {e}")
            return

        last_sqrt_price_x96 = self.last_sqrt_price_x96
        try:
            await self.handler(swap, last_sqrt_price_x96)
        except Exception as e:
            logger.error(
                f"[{self.venue_name}] Swap handler failed for {self.pool.id}: {e}",
                exc_info=True,
            )
        finally:
            self.last_sqrt_price_x96 = swap.sqrt_price_x96

    async def _work(self) -> None:
        while True:
            log = await self._queue.get()
            try:
                await self.handle_log(log)
            finally:
                self._queue.task_done()

    def _stop_worker(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None


class FlashArbitrageContract:
    """Call encoding and confirmation-event decoding for the arbitrage contract."""

    def __init__(self, address: str):
        self.address = Web3.to_checksum_address(address)
        self._contract = codec_web3.eth.contract(address=self.address, abi=FLASH_ARBITRAGE_ABI)
        self.selector = function_selector(find_abi_entry(FLASH_ARBITRAGE_ABI, "initiateFlashLoan"))
        self._events = {
            name: EventDecoder(self._contract, name)
            for name in ("ArbitrageConcluded", "FlashLoanSuccess", "FlashloanError")
        }

    @staticmethod
    def _swap_info(leg: SwapLeg) -> Tuple[str, str, int, int]:
        token_in, token_out, fee_tier, minimum_amount_out = leg.to_contract_tuple()
        return (
            Web3.to_checksum_address(token_in),
            Web3.to_checksum_address(token_out),
            fee_tier,
            minimum_amount_out,
        )

    def encode_initiate_flash_loan(self, plan: ArbitragePlan, token_a_in: int) -> bytes:
        """
        Calldata for initiateFlashLoan(ArbitInfo data, uint256 tokenAIn).

        extraCost carries the estimated gas cost in raw token A units.
        """
        arbit_info = (
            self._swap_info(plan.leg1),
            self._swap_info(plan.leg2),
            self._swap_info(plan.leg3),
            int(plan.estimated_gas_cost),
        )
        calldata = self._contract.encode_abi("initiateFlashLoan", args=[arbit_info, token_a_in])
        return Web3.to_bytes(hexstr=calldata)

    def decode_event(self, log: Dict[str, Any]) -> Optional[ConfirmationEvent]:
        """Decode one of the contract's confirmation events, None for other logs."""
        address = log.get("address")
        if address is None or str(address).lower() != self.address.lower():
            return None

        tx_hash = to_hex(log.get("transactionHash"))
        for name, decoder in self._events.items():
            if not decoder.matches(log):
                continue
            values = decoder.decode(log)
            if name == "ArbitrageConcluded":
                return ArbitrageConcluded(
                    execution_id=values["executionId"],
                    input_amount=values["inputAmount"],
                    swap1_amount_out=values["swap1AmountOut"],
                    swap2_amount_out=values["swap2AmountOut"],
                    swap3_amount_out=values["swap3AmountOut"],
                    profit=values["profit"],
                    transaction_hash=tx_hash,
                )
            if name == "FlashLoanSuccess":
                return FlashLoanSuccess(
                    execution_id=values["executionId"],
                    amount=values["amount"],
                    transaction_hash=tx_hash,
                )
            return FlashLoanError(
                execution_id=values["executionId"],
                message=values["message"],
                transaction_hash=tx_hash,
            )
        return None

    def decode_receipt_events(self, receipt: Dict[str, Any]) -> List[ConfirmationEvent]:
        events = []
        for log in receipt.get("logs", []):
            try:
                event = self.decode_event(log)
            except (DecodingError, ValueError) as e:
                logger.warning(f"Failed to decode arbitrage contract event: {e}")
                continue
            if event is not None:
                events.append(event)
        return events
