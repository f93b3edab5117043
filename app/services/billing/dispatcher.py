"""Partitioned in-process dispatcher for webhook events.

Events are hashed by routing key onto a fixed number of bounded queues, each
drained by one worker thread, so events for the same invoice or payment are
handled in arrival order while unrelated events run in parallel.
"""
from __future__ import annotations

import logging
import queue
import threading
import zlib
from collections.abc import Callable

from app.config import settings
from app.services.billing.webhooks import run_webhook_event

logger = logging.getLogger(__name__)

_STOP = object()


class EventDispatcher:
    def __init__(
        self,
        handler: Callable[[str], None],
        partitions: int | None = None,
        queue_size: int | None = None,
        name: str = "webhook-dispatcher",
    ) -> None:
        self._handler = handler
        self._name = name
        count = partitions or settings.dispatcher_partitions
        size = queue_size or settings.dispatcher_queue_size
        self._queues: list[queue.Queue] = [queue.Queue(maxsize=size) for _ in range(count)]
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def partitions(self) -> int:
        return len(self._queues)

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def partition_for(self, routing_key: str) -> int:
        return zlib.crc32(routing_key.encode("utf-8")) % len(self._queues)

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            for index, partition in enumerate(self._queues):
                thread = threading.Thread(
                    target=self._worker,
                    args=(partition,),
                    name=f"{self._name}-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Started %s with %d partitions", self._name, len(self._queues))

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            threads, self._threads = self._threads, []
        if not threads:
            return
        for partition in self._queues:
            partition.put(_STOP)
        for thread in threads:
            thread.join(timeout)
        logger.info("Stopped %s", self._name)

    def submit(self, routing_key: str, item: str) -> bool:
        """Queue ``item``. Returns False when not running or the partition is full."""
        if not self.running:
            return False
        index = self.partition_for(routing_key)
        try:
            self._queues[index].put_nowait(item)
        except queue.Full:
            logger.warning(
                "Dispatcher partition %d full; %s left for redrive",
                index,
                item,
                extra={"event_id": item},
            )
            return False
        return True

    def join(self) -> None:
        """Block until every queued item has been handled."""
        for partition in self._queues:
            partition.join()

    def _worker(self, partition: queue.Queue) -> None:
        while True:
            item = partition.get()
            try:
                if item is _STOP:
                    return
                self._handler(item)
            except Exception:
                logger.exception("Dispatcher handler failed for %s", item)
            finally:
                partition.task_done()


_dispatcher: EventDispatcher | None = None
_dispatcher_lock = threading.Lock()


def get_dispatcher() -> EventDispatcher:
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = EventDispatcher(run_webhook_event)
        return _dispatcher
