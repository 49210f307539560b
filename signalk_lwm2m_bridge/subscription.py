"""
Signal K stream subscription with reconnect.

    DISCONNECTED -> CONNECTING -> UNSUBSCRIBING -> SUBSCRIBING -> STREAMING
                        ^                                            |
                        +----------- RECONNECTING <------------------+
                                          |
                                          +--> EXHAUSTED (max consecutive failures)

Every received delta is handed to ``on_delta`` from the receive loop
itself, so deltas are dispatched one at a time, in arrival order, and never
while a reconnect is in progress.
"""

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets
import websockets.exceptions

from .constants import SIGNALK_SELF_CONTEXT, SUBSCRIBE_SETTLE_DELAY, WS_OPEN_TIMEOUT
from .errors import ConnectionFailure, MalformedMessage

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException)

UNSUBSCRIBE_ALL = {"context": "*", "unsubscribe": [{"path": "*"}]}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    UNSUBSCRIBING = "unsubscribing"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


def decode_message(raw) -> Dict[str, Any]:
    """
    Decode one stream frame into a JSON object.

    Raises:
        MalformedMessage: the frame is not UTF-8 JSON or not an object
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"not UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"not JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage(f"expected a JSON object, got {type(data).__name__}")
    return data


class SubscriptionManager:
    """
    Owns the WebSocket connection to the Signal K server.

    ``connect`` defaults to ``websockets.connect`` and is injectable so the
    state machine can be driven without a server.
    """

    def __init__(
        self,
        url: str,
        subscriptions: List[Dict[str, Any]],
        on_delta: Callable[[Dict[str, Any]], None],
        reconnect_delay: float,
        max_reconnect_attempts: int,
        subscribe_delay: float = SUBSCRIBE_SETTLE_DELAY,
        context: str = SIGNALK_SELF_CONTEXT,
        connect: Optional[Callable[..., Any]] = None,
        debug_messages: bool = False,
    ):
        self.url = url
        self.subscriptions = list(subscriptions)
        self.on_delta = on_delta
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.subscribe_delay = subscribe_delay
        self.context = context
        self.debug_messages = debug_messages
        self._connect = connect or websockets.connect

        self.state = ConnectionState.DISCONNECTED
        self.failures = 0  # consecutive, reset on every successful open
        self.ws: Optional[Any] = None
        self.last_message_time: Optional[float] = None
        self._stop = asyncio.Event()

    @property
    def subscribed_paths(self) -> List[str]:
        return [s["path"] for s in self.subscriptions]

    def is_connected(self) -> bool:
        return self.ws is not None and self.state is ConnectionState.STREAMING

    def subscribe_message(self) -> Dict[str, Any]:
        return {"context": self.context, "subscribe": self.subscriptions}

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.debug(f"Subscription state {self.state.value} -> {state.value}")
            self.state = state

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Timed wait that ends early on stop(); True if stopping."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return self._stop.is_set()

    async def probe(self) -> None:
        """
        One-off handshake used at startup so an unreachable server stops the
        bridge before anything is subscribed.

        Raises:
            ConnectionFailure: the handshake failed
        """
        try:
            async with self._connect(self.url, open_timeout=WS_OPEN_TIMEOUT):
                pass
        except TRANSPORT_ERRORS as e:
            raise ConnectionFailure(f"Cannot reach Signal K server at {self.url}: {e!r}") from e
        logger.info(f"Signal K server reachable at {self.url}")

    async def run(self) -> ConnectionState:
        """
        Connect, subscribe and stream until stopped or exhausted.

        Returns:
            the terminal state, STOPPED or EXHAUSTED
        """
        while not self._stop.is_set():
            self._set_state(ConnectionState.CONNECTING)
            logger.info(f"Connecting to Signal K WebSocket: {self.url}")
            try:
                await self._session()
                if not self._stop.is_set():
                    logger.warning("Signal K WebSocket disconnected")
            except TRANSPORT_ERRORS as e:
                if not self._stop.is_set():
                    logger.error(f"Signal K connection error: {e!r}")
            self.ws = None
            if self._stop.is_set():
                break

            self.failures += 1
            if self.failures >= self.max_reconnect_attempts:
                self._set_state(ConnectionState.EXHAUSTED)
                logger.error(
                    f"Max reconnection attempts reached ({self.failures}/{self.max_reconnect_attempts}), giving up"
                )
                return self.state

            self._set_state(ConnectionState.RECONNECTING)
            logger.info(
                f"Reconnecting to Signal K ({self.failures}/{self.max_reconnect_attempts}) "
                f"in {self.reconnect_delay:g}s..."
            )
            if await self._wait_for_stop(self.reconnect_delay):
                break

        self._set_state(ConnectionState.STOPPED)
        return self.state

    async def _session(self) -> None:
        async with self._connect(self.url, open_timeout=WS_OPEN_TIMEOUT, max_size=None) as ws:
            self.ws = ws
            self.failures = 0
            logger.info("Connected to Signal K WebSocket stream")

            # clear whatever the server subscribed us to, then ask for our paths
            self._set_state(ConnectionState.UNSUBSCRIBING)
            await ws.send(json.dumps(UNSUBSCRIBE_ALL))
            logger.info("Unsubscribed from all Signal K paths")
            if await self._wait_for_stop(self.subscribe_delay):
                return

            self._set_state(ConnectionState.SUBSCRIBING)
            await ws.send(json.dumps(self.subscribe_message()))
            logger.info(
                "Subscribed to Signal K paths: "
                + ", ".join(f"{s['path']} ({s['period']}ms)" for s in self.subscriptions)
            )

            self._set_state(ConnectionState.STREAMING)
            async for msg in ws:
                if self._stop.is_set():
                    break
                self._handle_incoming(msg)

    def _handle_incoming(self, msg) -> None:
        try:
            data = decode_message(msg)
        except MalformedMessage as e:
            logger.warning(f"Failed to parse Signal K message: {e}")
            return

        self.last_message_time = time.time()
        if self.debug_messages:
            logger.debug(f"Signal K received: {data}")
        try:
            self.on_delta(data)
        except Exception as e:
            logger.error(f"Error dispatching Signal K delta: {e!r}")

    async def stop(self) -> None:
        """Close the connection and abandon any pending reconnect wait."""
        self._stop.set()
        ws = self.ws
        if ws is not None:
            try:
                await ws.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"Error closing Signal K WebSocket: {e!r}")
