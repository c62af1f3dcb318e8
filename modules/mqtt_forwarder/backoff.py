"""Estrategia de back-off para reconexión.

Generador de delays exponenciales acotados, uno por cada lado del puente.
Los delays se expresan en milisegundos, igual que la configuración.
"""


class BackoffStrategy:
    """Back-off exponencial sin jitter y sin límite de intentos.

    delay = min(initial_delay_ms * 2^attempt, max_delay_ms)

    Una vez alcanzado el máximo se deja de calcular la potencia y se
    devuelve siempre max_delay_ms.
    """

    def __init__(self, initial_delay_ms: int, max_delay_ms: int):
        """Inicializa la estrategia.

        Args:
            initial_delay_ms: Delay del primer intento en milisegundos
            max_delay_ms: Delay máximo en milisegundos

        Raises:
            ValueError: Si los límites no son positivos o son inconsistentes
        """
        if initial_delay_ms <= 0:
            raise ValueError(f"initial_delay_ms debe ser > 0, recibido {initial_delay_ms}")
        if max_delay_ms < initial_delay_ms:
            raise ValueError(
                f"max_delay_ms ({max_delay_ms}) debe ser >= initial_delay_ms ({initial_delay_ms})"
            )

        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms

        # Estado
        self.attempt = 0
        self._capped = False

    def next_delay(self) -> int:
        """Calcula el siguiente delay e incrementa el contador de intentos.

        Returns:
            Delay en milisegundos
        """
        if self._capped:
            delay = self.max_delay_ms
        else:
            delay = self.initial_delay_ms * (2 ** self.attempt)
            if delay >= self.max_delay_ms:
                self._capped = True
                delay = self.max_delay_ms

        self.attempt += 1
        return delay

    def reset(self) -> None:
        """Reinicia el contador de intentos."""
        self.attempt = 0
        self._capped = False

    def __repr__(self) -> str:
        return (
            f"BackoffStrategy("
            f"initial={self.initial_delay_ms}ms, "
            f"max={self.max_delay_ms}ms, "
            f"attempt={self.attempt}"
            f")"
        )
