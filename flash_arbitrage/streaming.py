"""
Websocket event stream with transparent reconnects.

One websocket carries every log subscription of the process. Callers hold
LogSubscription objects that survive reconnects: after a drop the manager
reconnects with exponential backoff and re-issues eth_subscribe for every
live subscription, so pool bindings never have to be recreated.
"""

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from .config_loader import StreamingConfig
from .exceptions import SubscriptionError
from .utils import get_logger

logger = get_logger(__name__)

LogHandler = Callable[[Dict[str, Any]], None]
ConnectFactory = Callable[[str], Awaitable[Any]]


@dataclass
class ReconnectBackoffConfig:
    """Exponential reconnect backoff: initial * multiplier ** attempt, capped."""

    initial: float = 1.0
    max: float = 30.0
    multiplier: float = 2.0

    @classmethod
    def from_streaming_config(cls, config: StreamingConfig) -> "ReconnectBackoffConfig":
        return cls(
            initial=config.reconnect_initial_delay,
            max=config.reconnect_max_delay,
            multiplier=config.reconnect_multiplier,
        )

    def delay(self, attempt: int) -> float:
        return min(self.initial * (self.multiplier**attempt), self.max)


class LogSubscription:
    """
    A logical log subscription.

    remote_id changes on every reconnect; the object itself and its handler
    stay the same.
    """

    def __init__(self, log_filter: Dict[str, Any], handler: LogHandler):
        self.log_filter = log_filter
        self.handler = handler
        self.remote_id: Optional[str] = None
        self.active = True

    def deliver(self, log: Dict[str, Any]) -> None:
        if self.active:
            self.handler(log)

    def __repr__(self) -> str:
        return f"LogSubscription(remote_id={self.remote_id!r}, active={self.active})"


async def open_websocket(url: str) -> Any:
    return await websockets.connect(url, max_size=None)


class ConnectionManager:
    """Owns the websocket, the JSON-RPC plumbing and the reconnect loop."""

    def __init__(
        self,
        url: str,
        backoff: Optional[ReconnectBackoffConfig] = None,
        max_reconnect_attempts: int = 10,
        request_timeout: float = 10.0,
        connect: Optional[ConnectFactory] = None,
        on_reconnect: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            url: Websocket JSON-RPC endpoint
            backoff: Reconnect delays
            max_reconnect_attempts: Consecutive failed attempts before giving up
            request_timeout: Timeout for connecting and for each JSON-RPC call
            connect: Coroutine factory opening a websocket, for tests
            on_reconnect: Called after every successful reconnect
        """
        self.url = url
        self.backoff = backoff or ReconnectBackoffConfig()
        self.max_reconnect_attempts = max_reconnect_attempts
        self.request_timeout = request_timeout
        self.on_reconnect = on_reconnect
        self._connect = connect or open_websocket

        self._ws: Any = None
        self._subscriptions: List[LogSubscription] = []
        self._by_remote_id: Dict[str, LogSubscription] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._request_ids = itertools.count(1)
        self._connected = asyncio.Event()
        self._supervisor: Optional[asyncio.Task] = None
        self._stopping = False
        self._has_connected = False

        self.failure: Optional[SubscriptionError] = None
        self.reconnects = 0

    @classmethod
    def from_config(
        cls, url: str, config: StreamingConfig, **kwargs: Any
    ) -> "ConnectionManager":
        return cls(
            url,
            backoff=ReconnectBackoffConfig.from_streaming_config(config),
            max_reconnect_attempts=config.max_reconnect_attempts,
            request_timeout=config.request_timeout,
            **kwargs,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def subscriptions(self) -> List[LogSubscription]:
        return list(self._subscriptions)

    async def refresh(self) -> None:
        """Start the supervisor if it is not running and wait for a live connection."""
        if self._supervisor is None or self._supervisor.done():
            self._stopping = False
            self.failure = None
            self._supervisor = asyncio.create_task(self._run())
        await self.wait_until_connected()

    async def wait_until_connected(self, timeout: Optional[float] = None) -> None:
        """
        Block until the stream is connected with all subscriptions restored.

        Raises:
            SubscriptionError: If the manager gave up, is not running, or the
                timeout expired
        """
        if self.failure is not None:
            raise self.failure
        if self._connected.is_set():
            return
        if self._supervisor is None or self._supervisor.done():
            raise SubscriptionError("Connection manager is not running")

        waiter = asyncio.ensure_future(self._connected.wait())
        try:
            await asyncio.wait(
                {waiter, self._supervisor},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not waiter.done():
                waiter.cancel()

        if self._connected.is_set():
            return
        if self.failure is not None:
            raise self.failure
        raise SubscriptionError("Timed out waiting for the event stream")

    async def subscribe(
        self, log_filter: Dict[str, Any], handler: LogHandler
    ) -> LogSubscription:
        """Register a log subscription; it is restored after every reconnect."""
        subscription = LogSubscription(log_filter, handler)
        self._subscriptions.append(subscription)
        try:
            await self.wait_until_connected(self.request_timeout)
            if subscription.remote_id is None:
                await self._activate(subscription)
        except SubscriptionError:
            self._forget(subscription)
            raise
        return subscription

    async def unsubscribe(self, subscription: LogSubscription) -> None:
        self._forget(subscription)
        remote_id = subscription.remote_id
        subscription.remote_id = None
        if remote_id is None or not self.is_connected:
            return
        try:
            await self._request("eth_unsubscribe", [remote_id])
        except SubscriptionError as e:
            logger.debug(f"eth_unsubscribe {remote_id} failed: {e}")

    async def simulate_disconnect(self) -> None:
        """Drop the current socket as if the remote end had closed it."""
        if self._ws is not None:
            await self._ws.close()

    async def stop(self) -> None:
        """Unsubscribe everything, close the socket and stop reconnecting."""
        for subscription in list(self._subscriptions):
            await self.unsubscribe(subscription)
        self._stopping = True
        self._connected.clear()

        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._supervisor is not None:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None
        logger.info("Event stream stopped")

    def _forget(self, subscription: LogSubscription) -> None:
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if subscription.remote_id is not None:
            self._by_remote_id.pop(subscription.remote_id, None)

    async def _activate(self, subscription: LogSubscription) -> None:
        remote_id = await self._request("eth_subscribe", ["logs", subscription.log_filter])
        if not subscription.active:
            return
        subscription.remote_id = remote_id
        self._by_remote_id[remote_id] = subscription

    async def _request(self, method: str, params: List[Any]) -> Any:
        if self._ws is None:
            raise SubscriptionError(f"{method} failed: not connected")

        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            await self._ws.send(json.dumps(message))
            response = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise SubscriptionError(f"{method} timed out") from e
        except websockets.exceptions.ConnectionClosed as e:
            raise SubscriptionError(f"{method} failed: connection closed") from e
        finally:
            self._pending.pop(request_id, None)

        if "error" in response:
            raise SubscriptionError(
                f"{method} rejected: {response['error']}",
                details={"error": response["error"]},
            )
        return response.get("result")

    def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed stream message: {e}")
            return
        if not isinstance(message, dict):
            return

        if message.get("method") == "eth_subscription":
            params = message.get("params") or {}
            subscription = self._by_remote_id.get(params.get("subscription"))
            if subscription is None:
                return
            try:
                subscription.deliver(params.get("result"))
            except Exception as e:
                logger.error(f"Log handler failed: {e}", exc_info=True)
            return

        future = self._pending.get(message.get("id"))
        if future is not None and not future.done():
            future.set_result(message)

    async def _read_loop(self, ws: Any) -> None:
        try:
            while True:
                self._dispatch(await ws.recv())
        except (websockets.exceptions.ConnectionClosed, OSError) as e:
            if not self._stopping:
                logger.warning(f"Event stream closed: {e}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(SubscriptionError("Event stream connection lost"))

    async def _restore_subscriptions(self) -> None:
        self._by_remote_id.clear()
        for subscription in list(self._subscriptions):
            subscription.remote_id = None
        for subscription in list(self._subscriptions):
            if subscription.active and subscription.remote_id is None:
                await self._activate(subscription)

    async def _wait_before_retry(self, attempt: int) -> bool:
        if attempt > self.max_reconnect_attempts:
            self.failure = SubscriptionError(
                f"Event stream unavailable after {attempt - 1} reconnect attempts",
                attempts=attempt - 1,
            )
            logger.error(str(self.failure))
            return False
        delay = self.backoff.delay(attempt - 1)
        logger.warning(f"Reconnecting to event stream in {delay:.1f}s (attempt {attempt})")
        await asyncio.sleep(delay)
        return True

    async def _run(self) -> None:
        try:
            await self._supervise()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failure = SubscriptionError(f"Event stream supervisor failed: {e}")
            logger.error(str(self.failure), exc_info=True)
        finally:
            self._connected.clear()

    async def _supervise(self) -> None:
        attempt = 0
        while not self._stopping:
            try:
                self._ws = await asyncio.wait_for(
                    self._connect(self.url), timeout=self.request_timeout
                )
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Event stream connection failed: {e}")
                attempt += 1
                if not await self._wait_before_retry(attempt):
                    return
                continue

            ws = self._ws
            reader = asyncio.create_task(self._read_loop(ws))
            try:
                await self._restore_subscriptions()
            except SubscriptionError as e:
                logger.warning(f"Failed to restore subscriptions: {e}")
                await ws.close()
            else:
                attempt = 0
                self._connected.set()
                logger.info(
                    f"Event stream connected with {len(self._subscriptions)} subscriptions"
                )
                if self._has_connected:
                    self.reconnects += 1
                    if self.on_reconnect is not None:
                        self.on_reconnect()
                self._has_connected = True

            await reader
            self._connected.clear()
            if self._stopping:
                return
            attempt += 1
            if not await self._wait_before_retry(attempt):
                return
