"""
MQTT Client Facade.

This module provides `MqttClient`, a blocking wrapper around one MQTT
connection:
- Connection Manager: lazily creates the transport session, performs the
  handshake with a fresh client id every time, and no-ops when already
  connected.
- Operation Dispatcher: publish/subscribe/unsubscribe block until the broker
  answers and report the outcome as a bool (or an `OperationResult`).
- Event Relay: re-emits inbound messages and connection loss to registered
  observers, and reports every captured fault on `on_fault`.

No public method raises. Failures become `False` plus a fault notification.
"""
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from super_mqtt.client.events import EventChannel
from super_mqtt.config_loader import load_connection_config
from super_mqtt.errors import NotConnectedError
from super_mqtt.models import (
    ConnectionConfig,
    Message,
    OperationResult,
    QoS,
    TopicFilter,
    new_client_id,
)
from super_mqtt.transport.session import MqttSession, TransportSession

logger = logging.getLogger(__name__)

TopicSpec = Union[str, Tuple[str, int]]


def _as_bytes(payload: Any) -> bytes:
    if isinstance(payload, str):
        return payload.encode('utf-8')
    if isinstance(payload, int):
        # bytes(3) would silently give three zero bytes
        raise TypeError("Payload must be bytes-like, str or a sequence of ints, not int")
    return bytes(payload)


class MqttClient:
    config: ConnectionConfig
    on_fault: EventChannel
    on_message: EventChannel
    on_disconnected: EventChannel
    _session_factory: Callable[[], TransportSession]
    _session: Optional[TransportSession]
    _client_id: Optional[str]
    _lock: threading.RLock

    """
    Synchronous facade over a single broker connection.

    Observers:
        on_fault(exception)              every fault captured inside the client
        on_message(topic, payload)       every inbound message
        on_disconnected(fault_or_none)   connection lost without disconnect() being called
    """
    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        *,
        config: Optional[ConnectionConfig] = None,
        session_factory: Callable[[], TransportSession] = MqttSession,
    ):
        self.config = config or ConnectionConfig(host=host, port=port, username=username, password=password)

        self.on_fault = EventChannel("fault")
        self.on_message = EventChannel("message", on_observer_error=self._raise_fault)
        self.on_disconnected = EventChannel("disconnected", on_observer_error=self._raise_fault)

        self._session_factory = session_factory
        self._session = None
        self._client_id = None
        # Serializes lazy session creation, handshakes and operations
        self._lock = threading.RLock()

    @classmethod
    def from_config_file(cls, config_path: Union[str, Path] = "config.yaml", **kwargs) -> "MqttClient":
        return cls(config=load_connection_config(config_path), **kwargs)

    # --- Configuration (takes effect on the next connect) ---

    @property
    def host(self) -> str:
        return self.config.host

    @host.setter
    def host(self, value: str):
        self.config = replace(self.config, host=value)

    @property
    def port(self) -> int:
        return self.config.port

    @port.setter
    def port(self, value: int):
        self.config = replace(self.config, port=int(value))

    @property
    def username(self) -> Optional[str]:
        return self.config.username

    @username.setter
    def username(self, value: Optional[str]):
        self.config = replace(self.config, username=value)

    @property
    def password(self) -> Optional[str]:
        return self.config.password

    @password.setter
    def password(self, value: Optional[str]):
        self.config = replace(self.config, password=value)

    # --- State ---

    @property
    def is_connected(self) -> bool:
        session = self._session
        return session is not None and session.is_connected

    @property
    def client_id(self) -> Optional[str]:
        """Identifier used by the most recent successful handshake."""
        return self._client_id

    # --- Connection Manager ---

    def connect(self) -> bool:
        return self.connect_result().ok

    def connect_result(self) -> OperationResult:
        with self._lock:
            try:
                session = self._ensure_session()
                if session.is_connected:
                    return OperationResult.success()

                client_id = new_client_id(self.config.client_id_prefix)
                result = session.connect(self.config, client_id)
                if not result.success:
                    fault = result.fault or NotConnectedError(f"Could not connect to {self.config.host}:{self.config.port}")
                    self._raise_fault(fault)
                    return OperationResult.from_fault(fault)

                self._client_id = client_id
                return OperationResult.success()
            except Exception as e:
                logger.error(f"Connect failed: {e}")
                self._raise_fault(e)
                return OperationResult.from_fault(e)

    def disconnect(self) -> None:
        with self._lock:
            if self._session is None:
                logger.debug("disconnect() before any connect(); nothing to do.")
                return
            try:
                self._session.disconnect()
            except Exception as e:
                logger.error(f"Disconnect failed: {e}")
                self._raise_fault(e)

    def close(self) -> None:
        """Disconnects and releases the session's background threads."""
        with self._lock:
            session, self._session = self._session, None
            if session is None:
                return
            try:
                session.close()
            except Exception as e:
                logger.error(f"Closing the session failed: {e}")
                self._raise_fault(e)

    def __enter__(self) -> "MqttClient":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _ensure_session(self) -> TransportSession:
        if self._session is None:
            session = self._session_factory()
            # Bound once; they survive every reconnect of this session
            session.on_message = self._relay_message
            session.on_disconnected = self._relay_disconnected
            self._session = session
            logger.debug("Created transport session.")
        return self._session

    # --- Operation Dispatcher ---

    def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> bool:
        return self.publish_result(topic, payload, qos=qos, retain=retain).ok

    def publish_result(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> OperationResult:
        with self._lock:
            if not self.connect():
                # connect() already reported why
                return OperationResult.not_connected()
            try:
                message = Message(topic=topic, payload=_as_bytes(payload), qos=QoS.from_level(qos), retain=retain)
                result = self._session.publish(message)
            except Exception as e:
                return self._operation_failed("Publish", e)

            if not result.is_success:
                logger.warning(f"Broker rejected publish to '{topic}' with reason code {result.reason_code}")
                return OperationResult.rejected(result.reason_code)
            return OperationResult.success()

    def subscribe(self, *topics: TopicSpec, qos: int = 0) -> bool:
        return self.subscribe_result(*topics, qos=qos).ok

    def subscribe_result(self, *topics: TopicSpec, qos: int = 0) -> OperationResult:
        """
        Subscribes to every topic in one request. A topic is either a plain
        filter string, subscribed at `qos`, or a `(filter, qos)` tuple.
        """
        if not topics:
            return OperationResult.success()
        with self._lock:
            try:
                filters = self._topic_filters(topics, QoS.from_level(qos))
            except Exception as e:
                return self._operation_failed("Subscribe", e)
            if not self.connect():
                return OperationResult.not_connected()
            try:
                result = self._session.subscribe(filters)
            except Exception as e:
                return self._operation_failed("Subscribe", e)

            if not result.is_success:
                code = next(c for c in result.result_codes if not 0 <= c <= QoS.EXACTLY_ONCE)
                logger.warning(f"Broker rejected subscription to {[f.topic for f in filters]}: codes {result.result_codes}")
                return OperationResult.rejected(code)
            return OperationResult.success()

    def unsubscribe(self, *topics: str) -> bool:
        return self.unsubscribe_result(*topics).ok

    def unsubscribe_result(self, *topics: str) -> OperationResult:
        if not topics:
            return OperationResult.success()
        with self._lock:
            try:
                if not self.is_connected:
                    raise NotConnectedError(f"Cannot unsubscribe from {list(topics)}: not connected")
                result = self._session.unsubscribe(list(topics))
            except Exception as e:
                return self._operation_failed("Unsubscribe", e)

            if not result.is_success:
                code = next(c for c in result.result_codes if c != 0)
                logger.warning(f"Broker rejected unsubscribe from {list(topics)}: codes {result.result_codes}")
                return OperationResult.rejected(code)
            return OperationResult.success()

    @staticmethod
    def _topic_filters(topics: Iterable[TopicSpec], default_qos: QoS) -> List[TopicFilter]:
        filters = []
        for topic in topics:
            if isinstance(topic, str):
                filters.append(TopicFilter(topic=topic, qos=default_qos))
            else:
                name, level = topic
                filters.append(TopicFilter(topic=name, qos=QoS.from_level(level)))
        return filters

    def _operation_failed(self, operation: str, error: Exception) -> OperationResult:
        logger.error(f"{operation} failed: {error}")
        self._raise_fault(error)
        return OperationResult.from_fault(error)

    # --- Event Relay ---

    def _raise_fault(self, error: BaseException):
        self.on_fault.emit(error)

    def _relay_message(self, topic: str, payload: bytes):
        self.on_message.emit(topic, payload)

    def _relay_disconnected(self, fault: Optional[BaseException]):
        logger.info(f"Connection to {self.config.host}:{self.config.port} lost ({fault}).")
        self.on_disconnected.emit(fault)
