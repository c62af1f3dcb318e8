"""Excepciones específicas del MQTT Forwarder.

Define la taxonomía de errores del puente: configuración (fatal),
conexión, suscripción y publicación (todos recuperables localmente).
"""

from typing import Optional, Sequence


class ForwarderError(Exception):
    """Excepción base del forwarder.

    Todas las excepciones específicas del puente heredan de esta clase.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """Inicializa la excepción base.

        Args:
            message: Mensaje de error legible
            original_error: Excepción original que causó este error
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Retorna representación string del error."""
        if self.original_error:
            return f"{self.message} (Causa: {self.original_error})"
        return self.message


class ConfigurationError(ForwarderError):
    """Configuración ausente o inválida.

    Es el único error fatal: aborta el arranque antes de cualquier conexión.
    """

    def __init__(
        self,
        message: str,
        variables: Optional[Sequence[str]] = None,
        original_error: Optional[Exception] = None
    ):
        """Inicializa error de configuración.

        Args:
            message: Descripción del problema
            variables: Variables de entorno implicadas
            original_error: Excepción original (p.ej. ValidationError)
        """
        super().__init__(message, original_error)
        self.variables = list(variables or [])


class BrokerConnectionError(ForwarderError):
    """Fallo de transporte al establecer o mantener una conexión.

    Se recupera programando una reconexión; nunca es fatal.
    """

    def __init__(self, side: str, url: str, original_error: Optional[Exception] = None):
        message = f"Conexión {side} con {url} perdida o rechazada"
        super().__init__(message, original_error)
        self.side = side
        self.url = url


class SubscriptionError(ForwarderError):
    """El broker rechazó la suscripción.

    La conexión sigue en estado CONNECTED pero sin mensajes entrantes.
    """

    def __init__(self, topic_filter: str, reason: str, original_error: Optional[Exception] = None):
        message = f"Suscripción a '{topic_filter}' fallida: {reason}"
        super().__init__(message, original_error)
        self.topic_filter = topic_filter
        self.reason = reason


class PublishError(ForwarderError):
    """Falló un intento de publicación; el mensaje se descarta."""

    def __init__(self, topic: str, reason: str, original_error: Optional[Exception] = None):
        message = f"Publicación en '{topic}' fallida: {reason}"
        super().__init__(message, original_error)
        self.topic = topic
        self.reason = reason
