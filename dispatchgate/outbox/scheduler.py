from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from dispatchgate.outbox.worker import OutboxWorker


logger = logging.getLogger(__name__)

_LOCAL_TICK_LOCK = threading.Lock()
_SCHEDULER_THREAD: Optional[threading.Thread] = None
_SCHEDULER_INTERVAL: Optional[float] = None
_STOP_EVENT = threading.Event()


def tick(worker: OutboxWorker) -> Dict[str, Any]:
    # Cross-process exclusion comes from the row claim; this only stops
    # overlapping ticks inside one process.
    if not _LOCAL_TICK_LOCK.acquire(blocking=False):
        return {"ok": True, "skipped": True, "reason": "LOCAL_LOCK_HELD"}
    try:
        return worker.run_iteration()
    finally:
        _LOCAL_TICK_LOCK.release()


def _scheduler_loop(worker: OutboxWorker, interval_seconds: float) -> None:
    while not _STOP_EVENT.wait(max(0.05, interval_seconds)):
        try:
            tick(worker)
        except Exception:
            logger.exception("outbox scheduler tick failed")


def start_outbox_scheduler(worker: OutboxWorker, *, interval_seconds: float, enabled: bool = True) -> Dict[str, Any]:
    global _SCHEDULER_THREAD, _SCHEDULER_INTERVAL
    if not enabled:
        return {"started": False, "reason": "DISABLED"}
    if _SCHEDULER_THREAD is not None and _SCHEDULER_THREAD.is_alive():
        return {"started": True, "reason": "ALREADY_RUNNING"}
    _STOP_EVENT.clear()
    thread = threading.Thread(
        target=_scheduler_loop,
        args=(worker, interval_seconds),
        name="dispatchgate-outbox-worker",
        daemon=True,
    )
    thread.start()
    _SCHEDULER_THREAD = thread
    _SCHEDULER_INTERVAL = interval_seconds
    return {"started": True, "reason": "STARTED"}


def stop_outbox_scheduler() -> Dict[str, Any]:
    global _SCHEDULER_THREAD
    if _SCHEDULER_THREAD is None:
        return {"stopped": True, "reason": "NOT_RUNNING"}
    _STOP_EVENT.set()
    _SCHEDULER_THREAD.join(timeout=2.0)
    _SCHEDULER_THREAD = None
    return {"stopped": True, "reason": "STOPPED"}


def scheduler_status() -> Dict[str, Any]:
    running = _SCHEDULER_THREAD is not None and _SCHEDULER_THREAD.is_alive()
    return {"running": running, "interval_seconds": _SCHEDULER_INTERVAL}
