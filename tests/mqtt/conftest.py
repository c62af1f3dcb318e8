"""Fixtures comunes: brokers MQTT simulados en memoria."""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import aiomqtt
import pytest

from modules.mqtt_forwarder import ConnectionRole, ForwarderConfig


@dataclass
class FakeMessage:
    topic: str
    payload: bytes


class FakeBroker:
    """Broker simulado para un lado del puente."""

    def __init__(self):
        self.connect_calls = 0
        self.disconnects = 0
        self.fail_connects = 0
        self.subscribe_error: Optional[Exception] = None
        self.publish_error: Optional[Exception] = None
        self.granted: Optional[List[int]] = None
        self.subscriptions: List[str] = []
        self.published: List[Tuple[str, bytes]] = []
        self.clients: List["FakeClient"] = []

    @property
    def client(self) -> "FakeClient":
        return self.clients[-1]


class FakeClient:
    """Sustituto de aiomqtt.Client con la misma interfaz asíncrona."""

    def __init__(self, broker: FakeBroker, endpoint, role: ConnectionRole):
        self.broker = broker
        self.endpoint = endpoint
        self.role = role
        self.connected = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self):
        self.broker.connect_calls += 1
        if self.broker.fail_connects > 0:
            self.broker.fail_connects -= 1
            raise aiomqtt.MqttError("Connection refused")

        self.connected = True
        self.broker.clients.append(self)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.connected = False
        self.broker.disconnects += 1

    async def subscribe(self, topic, qos=0):
        self.broker.subscriptions.append(topic)
        if self.broker.subscribe_error:
            raise self.broker.subscribe_error
        if self.broker.granted is not None:
            return list(self.broker.granted)
        return [qos]

    async def publish(self, topic, payload=None, qos=0):
        if self.broker.publish_error:
            raise self.broker.publish_error
        self.broker.published.append((topic, payload))

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, Exception):
                raise item
            yield item

    def deliver(self, topic: str, payload: bytes) -> None:
        self._queue.put_nowait(FakeMessage(topic, payload))

    def drop(self) -> None:
        """Simula la caída de la conexión desde el broker."""
        self._queue.put_nowait(aiomqtt.MqttError("Disconnected during message iteration"))


class FakeBrokers:
    """Un broker simulado por lado y la fábrica de clientes asociada."""

    def __init__(self):
        self.by_role: Dict[ConnectionRole, FakeBroker] = {
            ConnectionRole.LOCAL: FakeBroker(),
            ConnectionRole.REMOTE: FakeBroker(),
        }

    @property
    def local(self) -> FakeBroker:
        return self.by_role[ConnectionRole.LOCAL]

    @property
    def remote(self) -> FakeBroker:
        return self.by_role[ConnectionRole.REMOTE]

    def factory(self, endpoint, role: ConnectionRole) -> FakeClient:
        return FakeClient(self.by_role[role], endpoint, role)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Espera hasta que predicate() sea verdadero o falla el test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condición no alcanzada a tiempo")
        await asyncio.sleep(interval)


TEST_ENV = {
    "LOCAL_MQTT_URL": "mqtt://localhost:1883",
    "LOCAL_MQTT_CLIENT_ID": "forwarder-local",
    "REMOTE_MQTT_URL": "mqtts://remote.example.com",
    "REMOTE_MQTT_CLIENT_ID": "forwarder-remote",
    "REMOTE_MQTT_USERNAME": "site-a",
    "REMOTE_MQTT_PASSWORD": "s3cret",
    "REMOTE_TOPIC_PREFIX": "bridge/siteA",
    "RECONNECT_INITIAL_DELAY_MS": "10",
    "RECONNECT_MAX_DELAY_MS": "80",
}


@pytest.fixture
def env() -> Dict[str, str]:
    return dict(TEST_ENV)


@pytest.fixture
def config(env) -> ForwarderConfig:
    return ForwarderConfig.from_env(env)


@pytest.fixture
def brokers() -> FakeBrokers:
    return FakeBrokers()
