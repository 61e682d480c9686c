"""
super_mqtt

This package provides a small, blocking MQTT client facade: connect,
publish, subscribe, unsubscribe and disconnect, with inbound messages,
connection loss and internal faults reported through observer channels.
"""
__version__ = "0.1.0"

from super_mqtt.client.connection import MqttClient
from super_mqtt.client.events import EventChannel, ObserverHandle
from super_mqtt.models import ConnectionConfig, FailureKind, OperationResult, QoS

__all__ = [
    "MqttClient",
    "EventChannel",
    "ObserverHandle",
    "ConnectionConfig",
    "FailureKind",
    "OperationResult",
    "QoS",
]
