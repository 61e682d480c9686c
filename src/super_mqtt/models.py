"""
Data Models for the MQTT Client Facade.

Defines the small set of value objects shared by the Connection Manager,
the Operation Dispatcher and the transport session, so that every layer
agrees on what a topic filter, a message or an operation outcome looks like.
"""
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

# MQTT reason code for "Success" / "Granted QoS 0" (v3.1.1 and v5 alike)
SUCCESS = 0

PROTOCOL_VERSIONS = ("3.1", "3.1.1", "5")


class QoS(IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2

    @classmethod
    def from_level(cls, level: Any) -> "QoS":
        """
        Maps an integer level to a QoS.

        0/1/2 map to AT_MOST_ONCE/AT_LEAST_ONCE/EXACTLY_ONCE. Anything else
        (out of range, None, not an int) is treated as AT_MOST_ONCE, without
        raising.
        """
        if isinstance(level, bool) or not isinstance(level, int):
            return cls.AT_MOST_ONCE
        try:
            return cls(level)
        except ValueError:
            return cls.AT_MOST_ONCE


def new_client_id(prefix: str = "super-mqtt-") -> str:
    """Returns a fresh, never reused client identifier."""
    return f"{prefix}{uuid.uuid4().hex}"


# --- Configuration ---

@dataclass(frozen=True, kw_only=True)
class ConnectionConfig:
    """Everything needed to open one connection to the broker."""
    host: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None

    # Transport settings
    keepalive: int = 60
    timeout: float = 10.0 # per-operation timeout, enforced by the transport
    protocol: str = "5"
    client_id_prefix: str = "super-mqtt-"

    def __post_init__(self):
        if self.protocol not in PROTOCOL_VERSIONS:
            raise ValueError(f"Unsupported MQTT protocol version '{self.protocol}', expected one of {PROTOCOL_VERSIONS}")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ConnectionConfig":
        """
        Builds a config from the `mqtt:` section of a loaded config file.
        Missing keys fall back to the defaults above.
        """
        mqtt_conf = (config or {}).get('mqtt', {}) or {}
        defaults = cls()
        return cls(
            host=mqtt_conf.get('host', defaults.host),
            port=int(mqtt_conf.get('port', defaults.port)), # Must be int
            username=mqtt_conf.get('username', None),
            password=mqtt_conf.get('password', None),
            keepalive=int(mqtt_conf.get('keepalive', defaults.keepalive)),
            timeout=float(mqtt_conf.get('timeout', defaults.timeout)),
            protocol=str(mqtt_conf.get('protocol', defaults.protocol)),
            client_id_prefix=mqtt_conf.get('client_id_prefix', defaults.client_id_prefix),
        )


# --- Request Objects ---

@dataclass(frozen=True)
class TopicFilter:
    topic: str
    qos: QoS = QoS.AT_MOST_ONCE


@dataclass(frozen=True)
class Message:
    """A single outbound application message, consumed immediately by the transport."""
    topic: str
    payload: bytes
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False


# --- Transport Results ---

@dataclass(frozen=True)
class ConnectResult:
    success: bool
    fault: Optional[BaseException] = None


@dataclass(frozen=True)
class PublishResult:
    reason_code: int = SUCCESS

    @property
    def is_success(self) -> bool:
        return self.reason_code == SUCCESS


@dataclass(frozen=True)
class SubscribeResult:
    result_codes: Tuple[int, ...] = ()

    @property
    def is_success(self) -> bool:
        # Granted QoS 0, 1 and 2 are all acceptable outcomes
        return all(0 <= code <= QoS.EXACTLY_ONCE for code in self.result_codes)


@dataclass(frozen=True)
class UnsubscribeResult:
    result_codes: Tuple[int, ...] = ()

    @property
    def is_success(self) -> bool:
        return all(code == SUCCESS for code in self.result_codes)


# --- Operation Outcome (what the facade hands back to callers) ---

class FailureKind(str, Enum):
    NOT_CONNECTED = "not_connected"
    TIMEOUT = "timeout"
    PROTOCOL_REJECTED = "protocol_rejected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of a facade operation.

    Truthiness mirrors `ok`, so a result can be used anywhere a plain
    success/failure boolean is expected.
    """
    ok: bool
    failure: Optional[FailureKind] = None
    reason_code: Optional[int] = None
    fault: Optional[BaseException] = field(default=None, compare=False)

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls) -> "OperationResult":
        return cls(ok=True)

    @classmethod
    def not_connected(cls, fault: Optional[BaseException] = None) -> "OperationResult":
        return cls(ok=False, failure=FailureKind.NOT_CONNECTED, fault=fault)

    @classmethod
    def rejected(cls, reason_code: int, fault: Optional[BaseException] = None) -> "OperationResult":
        return cls(ok=False, failure=FailureKind.PROTOCOL_REJECTED, reason_code=reason_code, fault=fault)

    @classmethod
    def from_fault(cls, fault: BaseException) -> "OperationResult":
        # Imported here to keep models free of a module-level dependency cycle
        from super_mqtt.errors import classify_fault

        kind, reason_code = classify_fault(fault)
        return cls(ok=False, failure=kind, reason_code=reason_code, fault=fault)
