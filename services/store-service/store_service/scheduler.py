from __future__ import annotations

import logging
import threading
from typing import Callable

from .synchronizer import SyncReport

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Runs the payment sync once on start and then at a fixed interval.

    ``start`` arms at most one worker thread per scheduler, no matter how
    often it is called. The application holds a single instance for the
    life of the process.
    """

    def __init__(self, job: Callable[[], SyncReport], interval_seconds: float = 60.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        self._job = job
        self._interval = interval_seconds
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        with self._lock:
            if self._thread is not None:
                logger.debug("Reconciliation scheduler already started")
                return False
            self._thread = threading.Thread(
                target=self._run, name="payment-sync", daemon=True
            )
            self._thread.start()
        logger.info("Reconciliation scheduler started, interval=%ss", self._interval)
        return True

    def stop(self, timeout: float | None = None) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        self._tick()
        while not self._stopped.wait(self._interval):
            self._tick()

    def _tick(self) -> None:
        self.ticks += 1
        try:
            report = self._job()
        except Exception:
            logger.exception("Payment sync run failed")
            return
        if report.error:
            logger.error("Payment sync aborted: %s", report.error)
            return
        logger.info(
            "Payment sync checked=%d updated=%d failed=%d gateway_errors=%d",
            report.checked,
            report.updated,
            report.failed,
            report.gateway_errors,
        )
