from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[threading.Event], Any]


@dataclass
class _Slot:
    future: Future
    cancel: threading.Event = field(default_factory=threading.Event)
    started: bool = False


class RecomputeQueue:
    """Background recomputation keyed by project id.

    At most one job per key waits to run. A request while one is waiting
    coalesces into it; a request while one is running marks the running job
    as superseded (its cancel event is set) and queues a fresh one.
    """

    def __init__(self, workers: int = 2) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="wbs-recompute")
        self._lock = threading.Lock()
        self._slots: dict[str, _Slot] = {}
        self._running: dict[str, _Slot] = {}

    def request(self, key: str, job: Job) -> Future:
        with self._lock:
            pending = self._slots.get(key)
            if pending is not None and not pending.started:
                logger.debug("recompute for %s coalesced into pending job", key)
                return pending.future

            running = self._running.get(key)
            if running is not None:
                running.cancel.set()
                logger.debug("recompute for %s supersedes the running job", key)

            slot = _Slot(future=Future())
            self._slots[key] = slot
            self._pool.submit(self._run, key, slot, job)
            return slot.future

    def cancel(self, key: str) -> bool:
        """Cancel pending and running work for `key`. True if anything was cancelled."""
        with self._lock:
            hit = False
            for slot in (self._slots.pop(key, None), self._running.get(key)):
                if slot is not None:
                    slot.cancel.set()
                    hit = True
            return hit

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for slot in list(self._slots.values()) + list(self._running.values()):
                slot.cancel.set()
        self._pool.shutdown(wait=wait)

    def _run(self, key: str, slot: _Slot, job: Job) -> None:
        with self._lock:
            slot.started = True
            if self._slots.get(key) is slot:
                del self._slots[key]
            self._running[key] = slot
        try:
            if slot.cancel.is_set():
                slot.future.cancel()
                return
            if not slot.future.set_running_or_notify_cancel():
                return
            try:
                result = job(slot.cancel)
            except Exception as e:
                slot.future.set_exception(e)
            else:
                slot.future.set_result(result)
        finally:
            with self._lock:
                if self._running.get(key) is slot:
                    del self._running[key]
