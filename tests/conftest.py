"""
Pytest Configuration and Fixtures for the super_mqtt project.

This module provides fakes that let the tests run without a broker:
- `FakeSession` stands in for the transport session behind `MqttClient`.
- `FakeAioClient` stands in for `aiomqtt.Client` behind `MqttSession`.
"""

import asyncio
import logging
import sys
import threading
import time
from types import SimpleNamespace
from typing import List, Optional

import aiomqtt
import pytest

from super_mqtt.errors import NotConnectedError
from super_mqtt.models import ConnectResult, PublishResult, SubscribeResult, UnsubscribeResult


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait_until():
    """Polls a predicate until it holds or the timeout expires (events arrive on another thread)."""
    return _wait_until


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    The library never installs handlers itself, so without this the
    log output of a failing test would be lost.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(threadName)s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


# --- Facade-level fake: the transport session ---

class FakeSession:
    """
    In-memory transport session. Records every request and answers with
    whatever the test configured.
    """
    def __init__(self):
        self.on_message = None
        self.on_disconnected = None
        self.connected = False
        self.closed = False

        self.connect_result = ConnectResult(success=True)
        self.connect_delay = 0.0
        self.publish_code = 0
        self.subscribe_codes: Optional[tuple] = None
        self.unsubscribe_codes: Optional[tuple] = None
        self.error: Optional[Exception] = None # raised by the next operation

        self.connect_calls: List[tuple] = []
        self.disconnect_calls = 0
        self.published = []
        self.subscribed = []
        self.unsubscribed = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self, config, client_id):
        if self.connect_delay:
            time.sleep(self.connect_delay)
        self.connect_calls.append((config, client_id))
        if self.connect_result.success:
            self.connected = True
        return self.connect_result

    def disconnect(self):
        self.disconnect_calls += 1
        if self.error:
            raise self.error
        self.connected = False

    def _check(self):
        if self.error:
            raise self.error
        if not self.connected:
            raise NotConnectedError("Not connected to a broker")

    def publish(self, message):
        self._check()
        self.published.append(message)
        return PublishResult(reason_code=self.publish_code)

    def subscribe(self, filters):
        self._check()
        self.subscribed.append(list(filters))
        codes = self.subscribe_codes if self.subscribe_codes is not None else tuple(int(f.qos) for f in filters)
        return SubscribeResult(result_codes=codes)

    def unsubscribe(self, topics):
        self._check()
        self.unsubscribed.append(list(topics))
        codes = self.unsubscribe_codes if self.unsubscribe_codes is not None else (0,) * len(topics)
        return UnsubscribeResult(result_codes=codes)

    def close(self):
        self.connected = False
        self.closed = True

    # Test helpers: simulate the transport's callback thread

    def deliver(self, topic, payload):
        self.on_message(topic, payload)

    def drop(self, fault=None):
        self.connected = False
        self.on_disconnected(fault)


@pytest.fixture
def sessions():
    """Every FakeSession created by the `session_factory` fixture, in creation order."""
    return []


@pytest.fixture
def session_factory(sessions):
    lock = threading.Lock()

    def factory():
        with lock:
            session = FakeSession()
            sessions.append(session)
            return session
    return factory


# --- Session-level fake: aiomqtt.Client ---

class FakeAioClient:
    """Minimal asyncio stand-in for `aiomqtt.Client` driven by a `FakeBroker`."""
    def __init__(self, broker: "FakeBroker", hostname: str, port: int = 1883, **kwargs):
        self.broker = broker
        self.hostname = hostname
        self.port = port
        self.kwargs = kwargs
        self.entered = False
        self.exited = False
        self._incoming: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def __aenter__(self):
        if self.broker.connect_error is not None:
            raise self.broker.connect_error
        self._loop = asyncio.get_running_loop()
        self._incoming = asyncio.Queue()
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.exited = True

    @property
    def messages(self):
        return self._iterate_messages()

    async def _iterate_messages(self):
        while True:
            item = await self._incoming.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    async def publish(self, topic, payload=None, qos=0, retain=False, **kwargs):
        if self.broker.publish_error is not None:
            raise self.broker.publish_error
        if self.broker.block_operations:
            await asyncio.Event().wait()
        self.broker.published.append((topic, payload, qos, retain))

    async def subscribe(self, topic, qos=0, **kwargs):
        if self.broker.subscribe_error is not None:
            raise self.broker.subscribe_error
        self.broker.subscribed.append(topic)
        if self.broker.granted is not None:
            return self.broker.granted
        return tuple(level for _, level in topic)

    async def unsubscribe(self, topic, **kwargs):
        if self.broker.unsubscribe_error is not None:
            raise self.broker.unsubscribe_error
        self.broker.unsubscribed.append(topic)

    # Test helpers, safe to call from the test thread

    def deliver(self, topic: str, payload: bytes):
        message = SimpleNamespace(topic=topic, payload=payload)
        self._loop.call_soon_threadsafe(self._incoming.put_nowait, message)

    def drop(self, error: Optional[BaseException] = None):
        error = error or aiomqtt.MqttError("Disconnected during message iteration")
        self._loop.call_soon_threadsafe(self._incoming.put_nowait, error)


class FakeBroker:
    def __init__(self):
        self.clients: List[FakeAioClient] = []
        self.connect_error: Optional[BaseException] = None
        self.publish_error: Optional[BaseException] = None
        self.subscribe_error: Optional[BaseException] = None
        self.unsubscribe_error: Optional[BaseException] = None
        self.block_operations = False
        self.granted = None
        self.published = []
        self.subscribed = []
        self.unsubscribed = []

    def client_factory(self, hostname, port=1883, **kwargs):
        client = FakeAioClient(self, hostname, port, **kwargs)
        self.clients.append(client)
        return client

    @property
    def last_client(self) -> FakeAioClient:
        return self.clients[-1]


@pytest.fixture
def fake_broker(monkeypatch):
    """Replaces `aiomqtt.Client` with a factory producing `FakeAioClient`s."""
    broker = FakeBroker()
    monkeypatch.setattr(aiomqtt, "Client", broker.client_factory)
    return broker
