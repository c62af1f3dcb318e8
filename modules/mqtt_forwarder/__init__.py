"""MQTT Forwarder

Módulo para reenviar eventos de un broker MQTT local a un broker remoto,
reescribiendo el prefijo de tópico y con reconexión automática
independiente en cada lado.
"""

from modules.mqtt_forwarder.backoff import BackoffStrategy
from modules.mqtt_forwarder.bridge import Bridge
from modules.mqtt_forwarder.config import (
    BrokerEndpoint,
    ForwarderConfig,
    LocalSettings,
    ReconnectSettings,
    RemoteSettings,
)
from modules.mqtt_forwarder.connection import (
    ConnectionManager,
    ConnectionRole,
    ConnectionState,
    InboundMessage,
)
from modules.mqtt_forwarder.errors import (
    BrokerConnectionError,
    ConfigurationError,
    ForwarderError,
    PublishError,
    SubscriptionError,
)
from modules.mqtt_forwarder.pipeline import ForwardingPipeline, ForwardingStats

__version__ = "1.0.0"
__all__ = [
    "BackoffStrategy",
    "Bridge",
    "BrokerEndpoint",
    "ForwarderConfig",
    "LocalSettings",
    "ReconnectSettings",
    "RemoteSettings",
    "ConnectionManager",
    "ConnectionRole",
    "ConnectionState",
    "InboundMessage",
    "BrokerConnectionError",
    "ConfigurationError",
    "ForwarderError",
    "PublishError",
    "SubscriptionError",
    "ForwardingPipeline",
    "ForwardingStats",
]
