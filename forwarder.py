#!/usr/bin/env python3
"""MQTT Forwarder

Reenvía los eventos del broker MQTT local (p.ej. ChirpStack) al broker
remoto bajo un prefijo de tópico. La configuración se lee de variables
de entorno; ver modules/mqtt_forwarder/config.py.

Uso:
    python forwarder.py [--log-level DEBUG|INFO|WARNING|ERROR]
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional, Sequence

from modules.mqtt_forwarder import Bridge, ConfigurationError, ForwarderConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

logger = logging.getLogger("mqtt_forwarder")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Reenvía mensajes de un broker MQTT local a uno remoto'
    )
    parser.add_argument(
        '--log-level',
        choices=LOG_LEVELS,
        default=os.getenv("LOG_LEVEL", "INFO").upper(),
        help='Nivel de logging (por defecto LOG_LEVEL o INFO)'
    )
    return parser.parse_args(argv)


def install_signal_handlers(bridge: Bridge) -> None:
    """Registra SIGINT/SIGTERM para activar el apagado del bridge."""
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bridge.request_shutdown, sig)
        except NotImplementedError:
            # Windows no soporta add_signal_handler
            signal.signal(
                sig,
                lambda signum, frame: loop.call_soon_threadsafe(bridge.request_shutdown, signum)
            )


async def run(config: ForwarderConfig) -> None:
    """Ejecuta el bridge hasta recibir una señal de terminación."""
    bridge = Bridge(config)
    install_signal_handlers(bridge)

    await bridge.start()
    try:
        await bridge.wait_for_shutdown()
    finally:
        await bridge.shutdown()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format=LOG_FORMAT
    )

    try:
        config = ForwarderConfig.from_env()
    except ConfigurationError as e:
        logger.error(f"Error: {e}. Revisa las variables de entorno.")
        return 1

    logger.info(
        f"Reenviando {config.local.endpoint.url} [{config.local.topic_filter}] -> "
        f"{config.remote.endpoint.url} [{config.remote.topic_prefix}/...]"
    )

    asyncio.run(run(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
