# orchestrators/cycle_scheduler.py
from __future__ import annotations

import random
import threading
import time
from typing import Callable, Optional

from volume_bot.utils.logger import logger_manager

logger = logger_manager.setup_logger(__name__)


class CycleScheduler:
    """
    Hilo dedicado que ejecuta ``tick()`` cada ``interval`` segundos.

    Los ticks corren dentro del propio hilo, uno detrás de otro: el siguiente
    no empieza hasta que termina el anterior. ``in_flight`` indica si hay uno
    en curso y ``cancel()`` espera a que termine antes de volver.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], None],
        interval: float,
        jitter_percent: float = 0.0,
        rng: random.Random | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self.name = name
        self._tick = tick
        self.interval = max(0.01, float(interval))
        self.jitter_percent = max(0.0, jitter_percent)
        self._rng = rng or random.Random()
        self._on_error = on_error

        self._stop_evt = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0
        self.skipped = 0

    # ---------- API pública ----------
    def start(self, run_immediately: bool = True) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(run_immediately,),
            name=f"Cycle-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Scheduler {self.name} arrancado (cada {self.interval:.2f}s)")

    def cancel(self, timeout: float | None = 30.0) -> bool:
        """Detiene el bucle y espera al tick en curso. Devuelve True si el hilo terminó."""
        self._stop_evt.set()
        th = self._thread
        if th is None or th is threading.current_thread():
            return True
        th.join(timeout)
        if th.is_alive():
            logger.warning(f"Scheduler {self.name}: el tick en curso no terminó en {timeout}s")
            return False
        logger.info(f"Scheduler {self.name} detenido tras {self.ticks} ticks")
        return True

    @property
    def in_flight(self) -> bool:
        return self._tick_lock.locked()

    @property
    def cancelled(self) -> bool:
        return self._stop_evt.is_set()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive()) and not self._stop_evt.is_set()

    def run_once(self) -> bool:
        """Ejecuta un tick si no hay otro en curso. Devuelve si se ejecutó."""
        if not self._tick_lock.acquire(blocking=False):
            self.skipped += 1
            logger.debug(f"Scheduler {self.name}: tick anterior aún en curso, se omite")
            return False
        try:
            if self._stop_evt.is_set():
                return False
            self.ticks += 1
            self._tick()
        except Exception as e:
            logger.exception(f"Error en tick de {self.name}: {e}")
            if self._on_error:
                try:
                    self._on_error(e)
                except Exception as cb_err:
                    logger.exception(f"on_error de {self.name} falló: {cb_err}")
        finally:
            self._tick_lock.release()
        return True

    # ---------- Loop ----------
    def _next_delay(self) -> float:
        if not self.jitter_percent:
            return self.interval
        spread = self.interval * self.jitter_percent / 100
        return max(0.01, self.interval + self._rng.uniform(-spread, spread))

    def _run_loop(self, run_immediately: bool) -> None:
        if not run_immediately and self._stop_evt.wait(self._next_delay()):
            return
        while not self._stop_evt.is_set():
            started = time.monotonic()
            self.run_once()
            # el intervalo cuenta desde el inicio del tick; si se pasó, sigue sin esperar
            remaining = self._next_delay() - (time.monotonic() - started)
            if self._stop_evt.wait(max(0.0, remaining)):
                break
