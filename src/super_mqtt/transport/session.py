"""
MQTT Transport Session built on aiomqtt.

This module is responsible for:
- Opening and closing the broker connection (one `aiomqtt.Client` per handshake,
  each with a fresh client identifier).
- Running the background receive task that turns inbound messages into
  `on_message(topic, payload)` callbacks.
- Detecting transport-initiated connection loss and reporting it exactly once
  through `on_disconnected(fault)`.
- Translating publish/subscribe/unsubscribe calls into aiomqtt requests and
  their outcome into result codes.

Everything async runs on the session's own `EventLoopThread`; the public
methods are blocking. Callbacks are handed to a single-threaded event
dispatcher so they arrive in transport order but never on the loop thread.
"""
import asyncio
import concurrent.futures
import logging
from contextlib import AsyncExitStack
from typing import Any, Callable, List, Optional, Protocol, Sequence

import aiomqtt

from super_mqtt.errors import (
    AUTH_FAILURE_CODES,
    AuthenticationError,
    ConnectionFailedError,
    NotConnectedError,
    SessionClosedError,
    is_timeout,
    reason_code_value,
)
from super_mqtt.models import (
    ConnectResult,
    ConnectionConfig,
    Message,
    PublishResult,
    SubscribeResult,
    TopicFilter,
    UnsubscribeResult,
)
from super_mqtt.transport.bridge import EventLoopThread

logger = logging.getLogger(__name__)

# "Unspecified error", used when aiomqtt refuses without telling us why
UNSPECIFIED_ERROR = 0x80

ASYNC_PROTOCOLS = {
    "3.1": aiomqtt.ProtocolVersion.V31,
    "3.1.1": aiomqtt.ProtocolVersion.V311,
    "5": aiomqtt.ProtocolVersion.V5,
}

MessageCallback = Callable[[str, bytes], None]
DisconnectedCallback = Callable[[Optional[BaseException]], None]


class TransportSession(Protocol):
    """What the client facade needs from a transport session."""
    on_message: Optional[MessageCallback]
    on_disconnected: Optional[DisconnectedCallback]

    @property
    def is_connected(self) -> bool: ...

    def connect(self, config: ConnectionConfig, client_id: str) -> ConnectResult: ...

    def disconnect(self) -> None: ...

    def publish(self, message: Message) -> PublishResult: ...

    def subscribe(self, filters: Sequence[TopicFilter]) -> SubscribeResult: ...

    def unsubscribe(self, topics: Sequence[str]) -> UnsubscribeResult: ...

    def close(self) -> None: ...


def _payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    return str(payload).encode('utf-8')


class MqttSession:
    on_message: Optional[MessageCallback]
    on_disconnected: Optional[DisconnectedCallback]
    client_id: Optional[str]
    _loop_thread: EventLoopThread
    _dispatcher: concurrent.futures.ThreadPoolExecutor
    _client: Optional[aiomqtt.Client]
    _exit_stack: Optional[AsyncExitStack]
    _receive_task: Optional[asyncio.Task]
    _lost: Optional[asyncio.Event]
    _connected: bool
    _closed: bool

    """
    A reusable connection to one broker. Connect, disconnect and connect
    again as often as needed; `close()` retires it for good.
    """
    def __init__(self, loop_thread: Optional[EventLoopThread] = None):
        self.on_message = None
        self.on_disconnected = None
        self.client_id = None

        self._loop_thread = loop_thread or EventLoopThread(name="mqtt-transport")
        self._dispatcher = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="mqtt-events")

        # Per-connection state, only touched from the loop thread
        self._client = None
        self._exit_stack = None
        self._receive_task = None
        self._lost = None

        self._connected = False
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --- Blocking API (called from caller threads) ---

    def connect(self, config: ConnectionConfig, client_id: str) -> ConnectResult:
        if self._closed:
            raise SessionClosedError("Session has been closed")
        return self._loop_thread.run(self._connect(config, client_id))

    def disconnect(self) -> None:
        if self._closed or not self._loop_thread.is_running:
            return
        self._loop_thread.run(self._disconnect())

    def publish(self, message: Message) -> PublishResult:
        return self._loop_thread.run(self._publish(message))

    def subscribe(self, filters: Sequence[TopicFilter]) -> SubscribeResult:
        return self._loop_thread.run(self._subscribe(list(filters)))

    def unsubscribe(self, topics: Sequence[str]) -> UnsubscribeResult:
        return self._loop_thread.run(self._unsubscribe(list(topics)))

    def close(self):
        """Disconnects (if needed) and releases the loop and dispatcher threads."""
        if self._closed:
            return
        try:
            self.disconnect()
        finally:
            self._closed = True
            self._loop_thread.stop()
            self._dispatcher.shutdown(wait=False)
            logger.debug("MQTT session closed.")

    # --- Coroutines (run on the loop thread) ---

    async def _connect(self, config: ConnectionConfig, client_id: str) -> ConnectResult:
        if self._connected:
            return ConnectResult(success=True)

        client = aiomqtt.Client(
            config.host,
            config.port,
            username=config.username or None,
            password=config.password or None,
            identifier=client_id,
            protocol=ASYNC_PROTOCOLS[config.protocol],
            keepalive=config.keepalive,
            timeout=config.timeout,
            logger=logging.getLogger("super_mqtt.transport.aiomqtt"),
        )
        exit_stack = AsyncExitStack()

        logger.info(f"Connecting to {config.host}:{config.port} as {client_id}...")
        try:
            await exit_stack.enter_async_context(client)
        except (aiomqtt.MqttError, OSError) as e:
            fault = self._connect_fault(e, config)
            logger.error(f"Connection to {config.host}:{config.port} failed: {fault}")
            return ConnectResult(success=False, fault=fault)

        self._client = client
        self._exit_stack = exit_stack
        self._lost = asyncio.Event()
        self._connected = True
        self.client_id = client_id
        self._receive_task = asyncio.create_task(self._receive_loop(client), name=f"mqtt-receive-{client_id}")
        logger.info(f"Connected to {config.host}:{config.port} as {client_id}.")
        return ConnectResult(success=True)

    def _connect_fault(self, exc: BaseException, config: ConnectionConfig) -> BaseException:
        if is_timeout(exc):
            return exc
        if isinstance(exc, aiomqtt.MqttCodeError):
            code = reason_code_value(exc.rc)
            if code in AUTH_FAILURE_CODES:
                fault = AuthenticationError(
                    f"Broker at {config.host}:{config.port} rejected the credentials for user '{config.username}'", code)
            else:
                fault = ConnectionFailedError(f"Broker at {config.host}:{config.port} refused the connection: {exc}", code)
        else:
            fault = ConnectionFailedError(f"Could not reach {config.host}:{config.port}: {exc}")
        fault.__cause__ = exc
        return fault

    async def _disconnect(self):
        client, exit_stack, receive_task = self._client, self._exit_stack, self._receive_task

        # Clear the handle first so the receive loop knows this close is ours
        self._client = None
        self._exit_stack = None
        self._receive_task = None
        self._connected = False
        if self._lost is not None:
            self._lost.set()

        if receive_task is not None:
            receive_task.cancel()
            try:
                await receive_task
            except asyncio.CancelledError:
                pass
        if exit_stack is None:
            return

        logger.info(f"Disconnecting {self.client_id}...")
        await exit_stack.aclose() # waits for the broker to acknowledge the DISCONNECT
        logger.info(f"Disconnected {self.client_id}.")

    async def _receive_loop(self, client: aiomqtt.Client):
        """
        The background worker that pulls inbound messages off the connection.
        When it ends on its own, the connection is gone.
        """
        fault: Optional[BaseException] = None
        try:
            async for message in client.messages:
                topic = str(message.topic)
                payload = _payload_bytes(message.payload)
                logger.debug(f"Received {len(payload)} bytes on '{topic}'")
                self._emit(self.on_message, topic, payload)
        except asyncio.CancelledError:
            raise # Let _disconnect() handle this
        except aiomqtt.MqttError as e:
            fault = e

        if client is not self._client:
            return # caller-initiated close already in progress

        logger.warning(f"MQTT Connection lost: {fault}")
        exit_stack = self._exit_stack
        self._client = None
        self._exit_stack = None
        self._receive_task = None
        self._connected = False
        self._lost.set()
        if exit_stack is not None:
            try:
                await exit_stack.aclose()
            except aiomqtt.MqttError as e:
                logger.debug(f"Ignoring error while tearing down a lost connection: {e}")
        self._emit(self.on_disconnected, fault)

    def _require_client(self) -> aiomqtt.Client:
        if self._client is None or not self._connected:
            raise NotConnectedError("Not connected to a broker")
        return self._client

    async def _until_lost(self, awaitable):
        """Awaits a transport call, giving up as soon as the connection drops."""
        lost = self._lost
        operation = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(lost.wait())
        try:
            done, _ = await asyncio.wait({operation, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            operation.cancel()
            raise
        finally:
            watcher.cancel()

        if operation in done:
            return operation.result()
        operation.cancel()
        raise NotConnectedError("Connection lost while waiting for the broker")

    async def _publish(self, message: Message) -> PublishResult:
        client = self._require_client()
        logger.debug(f"Publishing {len(message.payload)} bytes to '{message.topic}' (qos={int(message.qos)}, retain={message.retain})")
        try:
            await self._until_lost(client.publish(
                message.topic, payload=message.payload, qos=int(message.qos), retain=message.retain))
        except aiomqtt.MqttCodeError as e:
            code = reason_code_value(e.rc)
            logger.warning(f"Publish to '{message.topic}' refused: {e}")
            return PublishResult(reason_code=UNSPECIFIED_ERROR if code is None else code)
        return PublishResult()

    async def _subscribe(self, filters: List[TopicFilter]) -> SubscribeResult:
        client = self._require_client()
        request = [(f.topic, int(f.qos)) for f in filters]
        logger.debug(f"Subscribing to {request}")
        try:
            granted = await self._until_lost(client.subscribe(request))
        except aiomqtt.MqttCodeError as e:
            code = reason_code_value(e.rc)
            logger.warning(f"Subscribe to {[f.topic for f in filters]} refused: {e}")
            return SubscribeResult(result_codes=(UNSPECIFIED_ERROR if code is None else code,) * len(filters))

        codes = tuple(reason_code_value(code) for code in (granted or ()))
        if len(codes) != len(filters):
            # Brokers must answer every filter; treat a short SUBACK as a failure for the missing ones
            codes = codes + (UNSPECIFIED_ERROR,) * (len(filters) - len(codes))
        return SubscribeResult(result_codes=tuple(UNSPECIFIED_ERROR if c is None else c for c in codes))

    async def _unsubscribe(self, topics: List[str]) -> UnsubscribeResult:
        client = self._require_client()
        logger.debug(f"Unsubscribing from {topics}")
        try:
            await self._until_lost(client.unsubscribe(topics))
        except aiomqtt.MqttCodeError as e:
            code = reason_code_value(e.rc)
            logger.warning(f"Unsubscribe from {topics} refused: {e}")
            return UnsubscribeResult(result_codes=(UNSPECIFIED_ERROR if code is None else code,) * len(topics))
        return UnsubscribeResult(result_codes=(0,) * len(topics))

    # --- Event hand-off ---

    def _emit(self, callback: Optional[Callable[..., None]], *args: Any):
        if callback is None:
            return
        try:
            self._dispatcher.submit(self._invoke, callback, *args)
        except RuntimeError as e:
            # Dispatcher already shut down by close()
            logger.debug(f"Dropping event after close: {e}")

    @staticmethod
    def _invoke(callback: Callable[..., None], *args: Any):
        try:
            callback(*args)
        except Exception:
            logger.exception("Unhandled error in session callback")
