"""Queue poller that hands each popped token to exactly one pooled worker."""

from __future__ import annotations

import logging
import queue
import signal
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from taxonomy_worker.jobs.models import QueueError
from taxonomy_worker.jobs.processor import JobProcessor
from taxonomy_worker.jobs.queue import JobQueue

logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    """What a single poll tick did."""

    DISPATCHED = "dispatched"
    IDLE = "idle"
    BUSY = "busy"
    POP_ERROR = "pop_error"
    STOPPED = "stopped"


@dataclass(slots=True)
class DispatcherSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    dispatched: int = 0
    idle_polls: int = 0
    pop_errors: int = 0


class JobDispatcher:
    """Single poller feeding a bounded pool of job processors.

    A token is popped only while a worker slot is free, so a popped token is
    always handed to exactly one processor. With ``concurrency=1`` jobs run
    strictly one after another.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue_client: JobQueue,
        processor_factory: Callable[[int], JobProcessor],
        work_list: str = "generate",
        concurrency: int = 1,
        poll_interval_seconds: float = 1.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be a positive integer")
        self.queue_client = queue_client
        self.work_list = work_list
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.stop_event = stop_event or threading.Event()
        self._processors = [processor_factory(slot) for slot in range(concurrency)]
        self._free_slots: queue.Queue[int] = queue.Queue()
        for slot in range(concurrency):
            self._free_slots.put(slot)
        self._executor: ThreadPoolExecutor | None = None

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self.stop_event.is_set():
            logger.info("Shutdown requested (%s); finishing in-flight jobs", signal_name)
        self.stop_event.set()

    def tick(self) -> TickOutcome:
        """Pop at most one token and hand it to a free worker slot."""

        if self.stop_requested:
            return TickOutcome.STOPPED
        try:
            slot = self._free_slots.get_nowait()
        except queue.Empty:
            return TickOutcome.BUSY

        try:
            token = self.queue_client.pop(self.work_list)
        except QueueError as error:
            logger.error("Could not pop from %s: %s", self.work_list, error)
            self._free_slots.put(slot)
            return TickOutcome.POP_ERROR
        if token is None:
            self._free_slots.put(slot)
            return TickOutcome.IDLE

        logger.info("job=%s dispatched to slot %d", token, slot)
        if self._executor is None:
            self._work(slot, token)
        else:
            self._executor.submit(self._work, slot, token)
        return TickOutcome.DISPATCHED

    def run_loop(self, *, max_idle_polls: int | None = None) -> DispatcherSummary:
        """Poll until shutdown is requested.

        Args:
            max_idle_polls: Exit after this many consecutive empty polls
                (None = run until a stop signal).
        """

        summary = DispatcherSummary()
        consecutive_idle = 0
        with self._signal_handlers(), ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="taxonomy-job",
        ) as executor:
            self._executor = executor
            try:
                while not self.stop_requested:
                    outcome = self.tick()
                    if outcome is TickOutcome.DISPATCHED:
                        summary.dispatched += 1
                        consecutive_idle = 0
                    elif outcome is TickOutcome.IDLE:
                        summary.idle_polls += 1
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                    elif outcome is TickOutcome.POP_ERROR:
                        summary.pop_errors += 1
                    self.stop_event.wait(self.poll_interval_seconds)
            finally:
                self._executor = None
        logger.info(
            "Dispatcher stopped: dispatched=%d idle_polls=%d pop_errors=%d",
            summary.dispatched,
            summary.idle_polls,
            summary.pop_errors,
        )
        return summary

    def _work(self, slot: int, token: str) -> None:
        try:
            self._processors[slot].process(token)
        except Exception:  # noqa: BLE001
            logger.exception("job=%s processor crashed", token)
        finally:
            self._free_slots.put(slot)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
