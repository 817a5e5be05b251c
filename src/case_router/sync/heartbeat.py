"""Background lease renewal for running sync jobs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from types import TracebackType

LOGGER = logging.getLogger(__name__)


class LeaseHeartbeat:
    """Call ``renew`` every ``interval_seconds`` until stopped or the lease is lost."""

    def __init__(
        self,
        renew: Callable[[], bool],
        interval_seconds: float,
        *,
        name: str = "lease-heartbeat",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._renew = renew
        self._interval = interval_seconds
        self._stopped = threading.Event()
        self._lost = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval)

    def __enter__(self) -> LeaseHeartbeat:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                renewed = self._renew()
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.warning("Lease renewal failed: %s", exc)
                continue
            if not renewed:
                LOGGER.error("Lease lost; stopping heartbeat")
                self._lost.set()
                return


__all__ = ["LeaseHeartbeat"]
