"""Configuración del MQTT Forwarder.

Modelos Pydantic inmutables para ambos lados del puente y el cargador
desde variables de entorno. La configuración se carga una sola vez al
arrancar; cualquier variable ausente o inválida aborta el arranque.
"""

import os
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from modules.mqtt_forwarder.errors import ConfigurationError


DEFAULT_TOPIC_FILTER = "eu868/gateway/+/event/up"

# Esquema -> (puerto por defecto, TLS)
URL_SCHEMES: Dict[str, Tuple[int, bool]] = {
    "mqtt": (1883, False),
    "tcp": (1883, False),
    "mqtts": (8883, True),
    "ssl": (8883, True),
}

REQUIRED_ENV_VARS = [
    "LOCAL_MQTT_URL",
    "LOCAL_MQTT_CLIENT_ID",
    "REMOTE_MQTT_URL",
    "REMOTE_MQTT_CLIENT_ID",
    "REMOTE_TOPIC_PREFIX",
    "RECONNECT_INITIAL_DELAY_MS",
    "RECONNECT_MAX_DELAY_MS",
]

# Ruta del campo en ForwarderConfig -> variable de entorno
ENV_FIELDS: Dict[Tuple[str, ...], str] = {
    ("local", "endpoint", "url"): "LOCAL_MQTT_URL",
    ("local", "endpoint", "client_id"): "LOCAL_MQTT_CLIENT_ID",
    ("local", "endpoint", "username"): "LOCAL_MQTT_USERNAME",
    ("local", "endpoint", "password"): "LOCAL_MQTT_PASSWORD",
    ("local", "topic_filter"): "LOCAL_MQTT_TOPIC",
    ("remote", "endpoint", "url"): "REMOTE_MQTT_URL",
    ("remote", "endpoint", "client_id"): "REMOTE_MQTT_CLIENT_ID",
    ("remote", "endpoint", "username"): "REMOTE_MQTT_USERNAME",
    ("remote", "endpoint", "password"): "REMOTE_MQTT_PASSWORD",
    ("remote", "topic_prefix"): "REMOTE_TOPIC_PREFIX",
    ("reconnect", "initial_delay_ms"): "RECONNECT_INITIAL_DELAY_MS",
    ("reconnect", "max_delay_ms"): "RECONNECT_MAX_DELAY_MS",
    ("qos",): "MQTT_QOS",
}


class BrokerEndpoint(BaseModel):
    """Punto de conexión a un broker MQTT.

    Las credenciales se pasan tal cual al broker; la contraseña no
    aparece en repr() ni en los logs.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1, description="URL del broker (mqtt:// o mqtts://)")
    client_id: str = Field(..., min_length=1, description="Identificador de cliente MQTT")
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validar URL del broker.

        Args:
            v: URL a validar

        Returns:
            str: URL validada

        Raises:
            ValueError: Si el esquema, host o puerto no son válidos
        """
        parsed = urlparse(v.strip())

        if parsed.scheme not in URL_SCHEMES:
            raise ValueError(
                f"Esquema '{parsed.scheme}' no soportado, usar uno de: {', '.join(URL_SCHEMES)}"
            )
        if not parsed.hostname:
            raise ValueError("La URL no contiene host")

        try:
            parsed.port
        except ValueError as e:
            raise ValueError(f"Puerto inválido en URL: {e}")

        return v.strip()

    @field_validator('client_id')
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("client_id no puede estar vacío")
        return v.strip()

    @property
    def hostname(self) -> str:
        return urlparse(self.url).hostname

    @property
    def port(self) -> int:
        parsed = urlparse(self.url)
        return parsed.port or URL_SCHEMES[parsed.scheme][0]

    @property
    def use_tls(self) -> bool:
        return URL_SCHEMES[urlparse(self.url).scheme][1]

    def credentials(self) -> Tuple[Optional[str], Optional[str]]:
        """Credenciales efectivas.

        Los campos explícitos tienen prioridad sobre los embebidos en la URL.

        Returns:
            Tupla (username, password)
        """
        parsed = urlparse(self.url)
        return (self.username or parsed.username, self.password or parsed.password)


class LocalSettings(BaseModel):
    """Lado local: broker del que se reciben los eventos."""

    model_config = ConfigDict(frozen=True)

    endpoint: BrokerEndpoint
    topic_filter: str = Field(default=DEFAULT_TOPIC_FILTER, min_length=1)

    @field_validator('topic_filter')
    @classmethod
    def validate_topic_filter(cls, v: str) -> str:
        """Validar sintaxis de comodines del filtro de suscripción.

        '+' debe ocupar un nivel completo; '#' debe ocupar el último nivel.

        Raises:
            ValueError: Si el filtro no es un filtro MQTT válido
        """
        levels = v.split("/")
        for index, level in enumerate(levels):
            if "#" in level and (level != "#" or index != len(levels) - 1):
                raise ValueError(f"Filtro '{v}' inválido: '#' debe ser el último nivel completo")
            if "+" in level and level != "+":
                raise ValueError(f"Filtro '{v}' inválido: '+' debe ocupar un nivel completo")
        return v


class RemoteSettings(BaseModel):
    """Lado remoto: broker al que se republican los eventos."""

    model_config = ConfigDict(frozen=True)

    endpoint: BrokerEndpoint
    topic_prefix: str = Field(..., min_length=1, description="Prefijo de tópico remoto")

    @field_validator('topic_prefix')
    @classmethod
    def validate_topic_prefix(cls, v: str) -> str:
        # Los tópicos de publicación no admiten comodines
        if "+" in v or "#" in v:
            raise ValueError(f"Prefijo '{v}' inválido: no puede contener '+' ni '#'")
        return v


class ReconnectSettings(BaseModel):
    """Límites de reconexión compartidos por ambos lados."""

    model_config = ConfigDict(frozen=True)

    initial_delay_ms: int = Field(..., gt=0)
    max_delay_ms: int = Field(..., gt=0)

    @field_validator('max_delay_ms')
    @classmethod
    def validate_max_delay(cls, v: int, info: ValidationInfo) -> int:
        """Asegura max_delay_ms >= initial_delay_ms."""
        initial = info.data.get("initial_delay_ms")
        if initial is not None and v < initial:
            raise ValueError(
                f"max_delay_ms ({v}) debe ser >= initial_delay_ms ({initial})"
            )
        return v


class ForwarderConfig(BaseModel):
    """Configuración completa del forwarder."""

    model_config = ConfigDict(frozen=True)

    local: LocalSettings
    remote: RemoteSettings
    reconnect: ReconnectSettings
    qos: int = Field(default=0, ge=0, le=2)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ForwarderConfig':
        """Crea la configuración desde variables de entorno.

        Variables requeridas: ver REQUIRED_ENV_VARS.
        Variables opcionales: LOCAL_MQTT_TOPIC, LOCAL_MQTT_USERNAME,
        LOCAL_MQTT_PASSWORD, REMOTE_MQTT_USERNAME, REMOTE_MQTT_PASSWORD,
        MQTT_QOS. Una cadena vacía equivale a una variable ausente.

        Args:
            environ: Mapeo de variables (os.environ por defecto)

        Returns:
            Configuración validada

        Raises:
            ConfigurationError: Si faltan variables o algún valor es inválido
        """
        env = os.environ if environ is None else environ

        missing_vars = [var for var in REQUIRED_ENV_VARS if not env.get(var)]
        if missing_vars:
            raise ConfigurationError(
                f"Variables de entorno faltantes: {missing_vars}",
                variables=missing_vars
            )

        data = {
            "local": {
                "endpoint": {
                    "url": env["LOCAL_MQTT_URL"],
                    "client_id": env["LOCAL_MQTT_CLIENT_ID"],
                    "username": env.get("LOCAL_MQTT_USERNAME") or None,
                    "password": env.get("LOCAL_MQTT_PASSWORD") or None,
                },
                "topic_filter": env.get("LOCAL_MQTT_TOPIC") or DEFAULT_TOPIC_FILTER,
            },
            "remote": {
                "endpoint": {
                    "url": env["REMOTE_MQTT_URL"],
                    "client_id": env["REMOTE_MQTT_CLIENT_ID"],
                    "username": env.get("REMOTE_MQTT_USERNAME") or None,
                    "password": env.get("REMOTE_MQTT_PASSWORD") or None,
                },
                "topic_prefix": env["REMOTE_TOPIC_PREFIX"],
            },
            "reconnect": {
                "initial_delay_ms": env["RECONNECT_INITIAL_DELAY_MS"],
                "max_delay_ms": env["RECONNECT_MAX_DELAY_MS"],
            },
            "qos": env.get("MQTT_QOS") or 0,
        }

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            invalid_vars = _variables_for(e)
            raise ConfigurationError(
                f"Variables de entorno inválidas: {invalid_vars}",
                variables=invalid_vars,
                original_error=e
            )


def _variables_for(error: ValidationError) -> List[str]:
    """Traduce las rutas de un ValidationError a nombres de variables."""
    names: List[str] = []
    for detail in error.errors():
        loc = tuple(str(part) for part in detail["loc"])
        name = ENV_FIELDS.get(loc, ".".join(loc))
        if name not in names:
            names.append(name)
    return names
