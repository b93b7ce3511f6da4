# carbot/utils/circuit_breaker.py

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class CircuitBreakerConfig:
    name: str = "default"
    fail_threshold: int = 3
    cooldown_sec: int = 90


class CircuitBreaker:
    """
    Breaker en memoria (por proceso) para dependencias externas
    (sitio de inventario, WhatsApp del vendedor).

    - N fallos seguidos => abierto durante cooldown_sec.
    - Abierto => el caller no llama y usa su fallback (DB, reintento luego).
    - Pasado el cooldown se deja pasar la siguiente llamada; si vuelve a fallar
      se reabre de inmediato.
    """

    def __init__(self, cfg: CircuitBreakerConfig | None = None, clock: Callable[[], float] | None = None):
        self.cfg = cfg or CircuitBreakerConfig()
        self._clock = clock or time.time
        self._fails = 0
        self._open_until = 0.0
        self._opened_count = 0

    def is_open(self) -> bool:
        return self._clock() < self._open_until

    def allow(self) -> bool:
        return not self.is_open()

    def record_success(self) -> None:
        self._fails = 0
        self._open_until = 0.0

    def record_failure(self) -> None:
        self._fails += 1
        if self._fails >= max(1, int(self.cfg.fail_threshold)):
            self._open_until = self._clock() + max(1, int(self.cfg.cooldown_sec))
            self._opened_count += 1

    def reset(self) -> None:
        self._fails = 0
        self._open_until = 0.0

    def info(self) -> dict:
        return {
            "name": self.cfg.name,
            "fails": int(self._fails),
            "open_until": int(self._open_until),
            "is_open": bool(self.is_open()),
            "opened_count": int(self._opened_count),
            "fail_threshold": int(self.cfg.fail_threshold),
            "cooldown_sec": int(self.cfg.cooldown_sec),
        }
