"""Gestor de conexión MQTT

Ciclo de vida completo de la conexión con un broker (lado local o remoto):
conexión, suscripción, recepción, publicación y reconexión con back-off
exponencial. Cada lado corre en su propia tarea asyncio y no sabe nada
del otro.
"""

import asyncio
import logging
import ssl
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

import aiomqtt

from modules.mqtt_forwarder.backoff import BackoffStrategy
from modules.mqtt_forwarder.config import BrokerEndpoint
from modules.mqtt_forwarder.errors import (
    BrokerConnectionError,
    ForwarderError,
    PublishError,
    SubscriptionError,
)

logger = logging.getLogger(__name__)


class ConnectionRole(Enum):
    """Lado del puente."""
    LOCAL = "local"
    REMOTE = "remote"


class ConnectionState(Enum):
    """Estados de conexión de un lado."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"


@dataclass(frozen=True)
class InboundMessage:
    """Mensaje recibido del broker local."""
    topic: str
    payload: bytes


ClientFactory = Callable[[BrokerEndpoint, ConnectionRole], AsyncContextManager[Any]]


def create_mqtt_client(endpoint: BrokerEndpoint, role: ConnectionRole) -> aiomqtt.Client:
    """Crea el cliente aiomqtt para un endpoint.

    Sesión limpia en cada conexión; aiomqtt no reconecta por su cuenta,
    la reconexión es responsabilidad de ConnectionManager.

    Args:
        endpoint: Endpoint del broker
        role: Lado del puente (solo para logging)

    Returns:
        Cliente aiomqtt sin conectar
    """
    username, password = endpoint.credentials()
    tls_context = ssl.create_default_context() if endpoint.use_tls else None

    logger.debug(f"Cliente MQTT {role.value} creado para {endpoint.hostname}:{endpoint.port}")

    return aiomqtt.Client(
        hostname=endpoint.hostname,
        port=endpoint.port,
        identifier=endpoint.client_id,
        username=username,
        password=password,
        clean_session=True,
        tls_context=tls_context,
    )


def _rejected_codes(granted: Any) -> List[int]:
    """Códigos de suscripción rechazados (>= 0x80)."""
    rejected = []
    for code in granted or ():
        value = getattr(code, "value", code)
        if isinstance(value, int) and value >= 0x80:
            rejected.append(value)
    return rejected


class ConnectionManager:
    """Gestor del ciclo de vida de una conexión MQTT.

    Máquina de estados:
    - DISCONNECTED -> CONNECTING (start)
    - CONNECTING -> CONNECTED (conexión exitosa, reinicia back-off)
    - CONNECTING/CONNECTED -> DISCONNECTED -> RECONNECT_SCHEDULED (error o cierre)
    - RECONNECT_SCHEDULED -> CONNECTING (vence el delay)
    - cualquiera -> DISCONNECTED terminal (stop o señal de apagado)

    El lado local se suscribe al filtro configurado en cada conexión y
    deposita los mensajes en su cola de entrada.
    """

    def __init__(
        self,
        role: ConnectionRole,
        endpoint: BrokerEndpoint,
        backoff: BackoffStrategy,
        shutdown_event: asyncio.Event,
        *,
        topic_filter: Optional[str] = None,
        inbox: Optional["asyncio.Queue[InboundMessage]"] = None,
        qos: int = 0,
        client_factory: Optional[ClientFactory] = None
    ):
        """Inicializa el gestor.

        Args:
            role: Lado del puente
            endpoint: Endpoint del broker
            backoff: Estrategia de back-off propia de este lado
            shutdown_event: Señal de apagado compartida por todo el proceso
            topic_filter: Filtro de suscripción (obligatorio en el lado local)
            inbox: Cola donde se depositan los mensajes recibidos (lado local)
            qos: QoS para suscripción y publicación
            client_factory: Fábrica de clientes MQTT (aiomqtt por defecto)
        """
        if role is ConnectionRole.LOCAL and (topic_filter is None or inbox is None):
            raise ValueError("El lado local requiere topic_filter e inbox")

        self.role = role
        self.endpoint = endpoint
        self.backoff = backoff
        self.topic_filter = topic_filter
        self.qos = qos
        self.log = logger.getChild(role.value)

        self._shutdown = shutdown_event
        self._inbox = inbox
        self._client_factory = client_factory or create_mqtt_client

        # Estado de conexión
        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._subscribed = False
        self._connected_since: Optional[float] = None
        self.last_error: Optional[ForwarderError] = None

        # Estadísticas
        self.connect_count = 0
        self.messages_received = 0

    @property
    def side(self) -> str:
        return self.role.value

    @property
    def state(self) -> ConnectionState:
        """Estado de conexión actual."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """True si está conectado."""
        return self._state == ConnectionState.CONNECTED and self._client is not None

    @property
    def is_subscribed(self) -> bool:
        return self._subscribed

    @property
    def attempt(self) -> int:
        """Intento de reconexión actual del back-off."""
        return self.backoff.attempt

    async def start(self) -> bool:
        """Inicia el ciclo de vida de la conexión.

        Idempotente: si ya está en marcha no hace nada.

        Returns:
            False si el gestor ya fue detenido
        """
        if self._stopped:
            self.log.warning(f"Gestor {self.side} detenido, no se puede reiniciar")
            return False

        if self._task is not None and not self._task.done():
            self.log.debug(f"Gestor {self.side} ya iniciado")
            return True

        self._task = asyncio.create_task(self._run(), name=f"mqtt-{self.side}")
        return True

    async def stop(self) -> None:
        """Detiene la conexión de forma definitiva.

        Cancela cualquier reconexión pendiente y fuerza la desconexión.
        Nunca dispara una reconexión.
        """
        if self._stopped and (self._task is None or self._task.done()):
            return

        # El flag se marca antes de cancelar: el bucle ya no puede reconectar
        self._stopped = True
        self.log.info(f"Deteniendo conexión {self.side}...")

        task = self._task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._client = None
        self._subscribed = False
        self._set_state(ConnectionState.DISCONNECTED)
        self.log.info(f"Conexión {self.side} detenida")

    async def publish(self, topic: str, payload: bytes) -> bool:
        """Publica un mensaje en el broker de este lado.

        Nunca lanza excepciones: el fallo se registra en el log y en
        last_error, y el mensaje se descarta.

        Args:
            topic: Tópico MQTT
            payload: Payload sin modificar

        Returns:
            True si la publicación fue exitosa
        """
        try:
            await self._publish(topic, payload)
        except PublishError as e:
            self.last_error = e
            self.log.warning(f"Publicación {self.side} fallida: {e}")
            return False

        return True

    async def _publish(self, topic: str, payload: bytes) -> None:
        client = self._client
        if self._state != ConnectionState.CONNECTED or client is None:
            raise PublishError(topic, f"lado {self.side} en estado {self._state.value}")

        try:
            await client.publish(topic, payload, qos=self.qos)
        except (aiomqtt.MqttError, ValueError) as e:
            # paho valida el tópico con ValueError (p.ej. comodines)
            raise PublishError(topic, str(e), e)

    async def _run(self) -> None:
        """Bucle de conexión y reconexión de este lado."""
        try:
            while not self._should_stop():
                await self._connect_and_serve()

                if self._should_stop():
                    break

                if not await self._wait_before_reconnect():
                    break
        finally:
            self._client = None
            self._set_state(ConnectionState.DISCONNECTED)

    def _should_stop(self) -> bool:
        return self._stopped or self._shutdown.is_set()

    async def _connect_and_serve(self) -> None:
        """Una sesión completa: conectar, suscribir y recibir hasta el cierre."""
        self._set_state(ConnectionState.CONNECTING)
        self.log.info(f"Conectando a broker MQTT {self.side}: {self.endpoint.url}")

        try:
            async with self._client_factory(self.endpoint, self.role) as client:
                self._client = client
                self._on_connected()

                if self.role is ConnectionRole.LOCAL:
                    await self._subscribe(client)

                await self._serve(client)

        except aiomqtt.MqttError as e:
            self.last_error = BrokerConnectionError(self.side, self.endpoint.url, e)
            self.log.error(f"Error MQTT {self.side}: {self.last_error}")
        except Exception as e:
            self.last_error = BrokerConnectionError(self.side, self.endpoint.url, e)
            self.log.exception(f"Error inesperado en conexión {self.side}: {e}")
        finally:
            self._client = None
            self._subscribed = False
            self._connected_since = None
            self._set_state(ConnectionState.DISCONNECTED)
            self.log.info(f"Conexión MQTT {self.side} cerrada")

    def _on_connected(self) -> None:
        self._set_state(ConnectionState.CONNECTED)
        self._connected_since = time.time()
        self.connect_count += 1
        self.backoff.reset()
        self.log.info(f"Conectado a broker MQTT {self.side}")

    async def _subscribe(self, client: Any) -> bool:
        """Suscribe al filtro configurado.

        Un fallo no cierra la conexión: queda CONNECTED sin mensajes
        entrantes hasta la próxima reconexión.

        Returns:
            True si la suscripción fue aceptada
        """
        self.log.info(f"Suscribiendo a tópico: {self.topic_filter}")

        try:
            granted = await client.subscribe(self.topic_filter, qos=self.qos)
        except (aiomqtt.MqttError, ValueError) as e:
            self._subscription_failed(SubscriptionError(self.topic_filter, str(e), e))
            return False

        rejected = _rejected_codes(granted)
        if rejected:
            self._subscription_failed(
                SubscriptionError(self.topic_filter, f"rechazada por el broker (códigos {rejected})")
            )
            return False

        self._subscribed = True
        self.log.info(f"Suscrito a {self.topic_filter}")
        return True

    def _subscription_failed(self, error: SubscriptionError) -> None:
        self.last_error = error
        self.log.error(f"Error de suscripción {self.side}: {error}")

    async def _serve(self, client: Any) -> None:
        """Recibe mensajes hasta que la conexión se cierre o llegue el apagado."""
        receive = asyncio.ensure_future(self._receive(client))
        shutdown = asyncio.ensure_future(self._shutdown.wait())

        try:
            done, _ = await asyncio.wait(
                {receive, shutdown},
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (receive, shutdown):
                task.cancel()
            await asyncio.gather(receive, shutdown, return_exceptions=True)

        if receive in done:
            # Propaga MqttError si la conexión se cayó
            receive.result()

    async def _receive(self, client: Any) -> None:
        async for message in client.messages:
            self.messages_received += 1

            if self._inbox is None:
                continue

            self._inbox.put_nowait(
                InboundMessage(topic=str(message.topic), payload=bytes(message.payload))
            )

    async def _wait_before_reconnect(self) -> bool:
        """Espera el delay de back-off.

        Returns:
            True si debe reconectar, False si llegó la señal de apagado
        """
        delay_ms = self.backoff.next_delay()
        self._set_state(ConnectionState.RECONNECT_SCHEDULED)
        self.log.info(
            f"Reconexión a broker MQTT {self.side} en {delay_ms}ms (intento {self.backoff.attempt})"
        )

        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            return not self._should_stop()

        return False

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            self.log.debug(f"Estado {self.side}: {self._state.value} -> {state.value}")
        self._state = state

    def status(self) -> Dict[str, Any]:
        """Obtiene el estado actual de este lado."""
        return {
            "role": self.side,
            "url": self.endpoint.url,
            "client_id": self.endpoint.client_id,
            "state": self._state.value,
            "connected": self.is_connected,
            "subscribed": self._subscribed,
            "topic_filter": self.topic_filter,
            "reconnect_attempt": self.backoff.attempt,
            "connect_count": self.connect_count,
            "messages_received": self.messages_received,
            "connected_since": self._connected_since,
            "last_error": str(self.last_error) if self.last_error else None,
        }

    def __repr__(self) -> str:
        return f"ConnectionManager(role={self.side}, state={self._state.value})"
