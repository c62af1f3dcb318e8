"""Pipeline de reenvío local -> remoto.

Único punto de acoplamiento entre los dos gestores de conexión.
Entrega best-effort (at-most-once): si el lado remoto no está conectado
el mensaje se descarta, sin buffer ni reintento.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from modules.mqtt_forwarder.connection import ConnectionManager, InboundMessage

logger = logging.getLogger(__name__)


@dataclass
class ForwardingStats:
    """Estadísticas del pipeline."""
    received: int = 0
    forwarded: int = 0
    dropped: int = 0
    failed: int = 0
    last_forwarded_at: Optional[float] = None


class ForwardingPipeline:
    """Reenvía mensajes del broker local al remoto reescribiendo el tópico.

    remote_topic = topic_prefix + "/" + topic (concatenación literal)
    """

    def __init__(self, remote: ConnectionManager, topic_prefix: str):
        """Inicializa el pipeline.

        Args:
            remote: Gestor de conexión del lado remoto
            topic_prefix: Prefijo de los tópicos republicados
        """
        self.remote = remote
        self.topic_prefix = topic_prefix
        self.stats = ForwardingStats()

        # Callbacks
        self.on_forwarded: Optional[Callable[[str, str], None]] = None
        self.on_dropped: Optional[Callable[[str, str], None]] = None
        self.on_failed: Optional[Callable[[str, str], None]] = None

    def remote_topic(self, topic: str) -> str:
        return f"{self.topic_prefix}/{topic}"

    async def forward(self, topic: str, payload: bytes) -> bool:
        """Reenvía un mensaje al broker remoto.

        Args:
            topic: Tópico original en el broker local
            payload: Payload, se publica byte a byte sin cambios

        Returns:
            True si el mensaje fue publicado en el broker remoto
        """
        self.stats.received += 1

        if not self.remote.is_connected:
            self.stats.dropped += 1
            logger.warning(f"Broker MQTT remoto no conectado, mensaje descartado: {topic}")
            if self.on_dropped:
                self.on_dropped(topic, self.remote.state.value)
            return False

        remote_topic = self.remote_topic(topic)

        if not await self.remote.publish(remote_topic, payload):
            self.stats.failed += 1
            reason = str(self.remote.last_error) if self.remote.last_error else "desconocido"
            logger.error(f"Error publicando mensaje {topic} -> {remote_topic}: {reason}")
            if self.on_failed:
                self.on_failed(topic, reason)
            return False

        self.stats.forwarded += 1
        self.stats.last_forwarded_at = time.time()
        logger.info(f"Mensaje reenviado: {topic} -> {remote_topic}")
        if self.on_forwarded:
            self.on_forwarded(topic, remote_topic)

        return True

    async def run(self, inbox: "asyncio.Queue[InboundMessage]") -> None:
        """Consume la cola de entrada del lado local hasta ser cancelado.

        Args:
            inbox: Cola alimentada por el gestor local
        """
        while True:
            message = await inbox.get()
            try:
                await self.forward(message.topic, message.payload)
            except Exception as e:
                logger.error(f"Error inesperado reenviando {message.topic}: {e}")
            finally:
                inbox.task_done()
