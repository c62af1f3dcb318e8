"""Bridge MQTT local -> remoto.

Raíz de composición: construye los dos gestores de conexión, conecta el
pipeline entre ellos y coordina el apagado.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from modules.mqtt_forwarder.backoff import BackoffStrategy
from modules.mqtt_forwarder.config import ForwarderConfig
from modules.mqtt_forwarder.connection import (
    ClientFactory,
    ConnectionManager,
    ConnectionRole,
    InboundMessage,
)
from modules.mqtt_forwarder.pipeline import ForwardingPipeline

logger = logging.getLogger(__name__)


class Bridge:
    """Puente entre el broker local y el remoto.

    Los dos lados son independientes: cada uno tiene su propio back-off y
    su propia tarea. Lo único compartido es la señal de apagado.
    """

    def __init__(
        self,
        config: ForwarderConfig,
        *,
        client_factory: Optional[ClientFactory] = None,
        shutdown_event: Optional[asyncio.Event] = None
    ):
        """Inicializa el bridge.

        Args:
            config: Configuración validada
            client_factory: Fábrica de clientes MQTT (aiomqtt por defecto)
            shutdown_event: Señal de apagado; se crea una si no se pasa
        """
        self.config = config
        self._client_factory = client_factory
        self._shutdown = shutdown_event or asyncio.Event()

        self.local: Optional[ConnectionManager] = None
        self.remote: Optional[ConnectionManager] = None
        self.pipeline: Optional[ForwardingPipeline] = None

        self._inbox: Optional["asyncio.Queue[InboundMessage]"] = None
        self._pipeline_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._started and not self._closed

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    async def start(self) -> None:
        """Construye ambos lados y arranca sus ciclos de vida."""
        if self._started:
            logger.warning("Bridge ya iniciado")
            return

        self._started = True
        logger.info("MQTT Forwarder iniciando...")

        reconnect = self.config.reconnect
        self._inbox = asyncio.Queue()

        self.local = ConnectionManager(
            ConnectionRole.LOCAL,
            self.config.local.endpoint,
            BackoffStrategy(reconnect.initial_delay_ms, reconnect.max_delay_ms),
            self._shutdown,
            topic_filter=self.config.local.topic_filter,
            inbox=self._inbox,
            qos=self.config.qos,
            client_factory=self._client_factory
        )
        self.remote = ConnectionManager(
            ConnectionRole.REMOTE,
            self.config.remote.endpoint,
            BackoffStrategy(reconnect.initial_delay_ms, reconnect.max_delay_ms),
            self._shutdown,
            qos=self.config.qos,
            client_factory=self._client_factory
        )
        self.pipeline = ForwardingPipeline(self.remote, self.config.remote.topic_prefix)

        self._pipeline_task = asyncio.create_task(
            self.pipeline.run(self._inbox), name="mqtt-forwarding"
        )

        # El orden es indiferente: lo que llegue antes de conectar el remoto se descarta
        await self.local.start()
        await self.remote.start()

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        """Activa la señal de apagado (seguro desde un signal handler)."""
        if signum is not None:
            logger.info(f"Señal {signum} recibida")
        self._shutdown.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown.wait()

    async def shutdown(self) -> None:
        """Detiene ambos lados sea cual sea su estado.

        Retorna después de forzar la desconexión de las conexiones activas.
        """
        if self._closed:
            return

        self._closed = True
        logger.info("Aplicación cerrándose...")
        self._shutdown.set()

        managers = [m for m in (self.local, self.remote) if m is not None]
        await asyncio.gather(*(m.stop() for m in managers))

        if self._pipeline_task and not self._pipeline_task.done():
            self._pipeline_task.cancel()
            try:
                await self._pipeline_task
            except asyncio.CancelledError:
                pass

        if self.pipeline:
            stats = self.pipeline.stats
            logger.info(
                f"Aplicación cerrada: {stats.forwarded} reenviados, "
                f"{stats.dropped} descartados, {stats.failed} fallidos"
            )
        else:
            logger.info("Aplicación cerrada")

    def status(self) -> Dict[str, Any]:
        """Obtiene el estado de ambos lados y del pipeline."""
        stats = self.pipeline.stats if self.pipeline else None
        return {
            "running": self.is_running,
            "shutdown_requested": self.shutdown_requested,
            "local": self.local.status() if self.local else None,
            "remote": self.remote.status() if self.remote else None,
            "pipeline": {
                "topic_prefix": self.config.remote.topic_prefix,
                "received": stats.received if stats else 0,
                "forwarded": stats.forwarded if stats else 0,
                "dropped": stats.dropped if stats else 0,
                "failed": stats.failed if stats else 0,
                "last_forwarded_at": stats.last_forwarded_at if stats else None,
            },
        }
