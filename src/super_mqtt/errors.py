"""
Exception Hierarchy and Fault Classification.

Facade operations never raise: every exception caught at an operation
boundary is forwarded to the fault channel and folded into an
`OperationResult`. `classify_fault` decides which `FailureKind` a fault
becomes.
"""
import asyncio
import concurrent.futures
from typing import Any, Optional, Tuple

import aiomqtt

from super_mqtt.models import FailureKind

# CONNACK codes meaning "who are you?" (v3.1.1: 4/5, v5: 0x86/0x87)
AUTH_FAILURE_CODES = frozenset({4, 5, 0x86, 0x87})


class MqttClientError(Exception):
    """Base exception for everything raised inside super_mqtt."""


class NotConnectedError(MqttClientError):
    """An operation needed a live session and there was none."""


class SessionClosedError(MqttClientError):
    """The session was closed for good and cannot be reused."""


class ConnectionFailedError(MqttClientError):
    """The broker (or the network) refused the handshake."""

    def __init__(self, message: str, reason_code: Optional[int] = None):
        super().__init__(message)
        self.reason_code = reason_code


class AuthenticationError(ConnectionFailedError):
    """The broker rejected the configured credentials."""


class OperationRejectedError(MqttClientError):
    """The broker answered a publish/subscribe/unsubscribe with a failure code."""

    def __init__(self, message: str, reason_code: int):
        super().__init__(message)
        self.reason_code = reason_code


def reason_code_value(rc: Any) -> Optional[int]:
    """
    Normalizes a reason code to a plain int.
    paho hands out `ReasonCode` objects under MQTT v5 and bare ints otherwise.
    """
    if rc is None:
        return None
    value = getattr(rc, "value", rc)
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, concurrent.futures.TimeoutError)):
        return True
    # aiomqtt reports its own timeouts as a plain MqttError("Operation timed out")
    return isinstance(exc, aiomqtt.MqttError) and "timed out" in str(exc).lower()


def classify_fault(exc: BaseException) -> Tuple[FailureKind, Optional[int]]:
    """Returns the failure kind for a fault, plus a reason code when one is known."""
    if is_timeout(exc):
        return FailureKind.TIMEOUT, None
    if isinstance(exc, NotConnectedError):
        return FailureKind.NOT_CONNECTED, None
    if isinstance(exc, (ConnectionFailedError, OperationRejectedError)):
        return FailureKind.PROTOCOL_REJECTED, exc.reason_code
    if isinstance(exc, aiomqtt.MqttCodeError):
        return FailureKind.PROTOCOL_REJECTED, reason_code_value(exc.rc)
    return FailureKind.UNKNOWN, None
