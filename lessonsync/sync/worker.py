from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncTask:
    session_id: str
    action: str
    run: Callable[[], Any]
    batch: str | None = None


@dataclass(frozen=True)
class SyncOutcome:
    task: SyncTask
    ok: bool
    result: Any = None
    error: Exception | None = None


class SyncWorker:
    """Runs remote calls on worker threads and hands results to one dispatcher.

    Outcomes go through a single mailbox, so the handler never runs twice at
    the same time no matter how many workers are making network calls.
    """

    def __init__(self, handle_outcome: Callable[[SyncOutcome], None], *, workers: int = 2) -> None:
        self._handle_outcome = handle_outcome
        self._workers = max(1, int(workers))
        self._tasks: queue.Queue[SyncTask | None] = queue.Queue()
        self._outcomes: queue.Queue[SyncOutcome | None] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._idle = threading.Condition()
        self._pending = 0
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for index in range(self._workers):
            thread = threading.Thread(
                target=self._run_tasks, name=f"lessonsync-sync-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        dispatcher = threading.Thread(
            target=self._run_dispatch, name="lessonsync-sync-dispatch", daemon=True
        )
        dispatcher.start()
        self._threads.append(dispatcher)

    def submit(self, task: SyncTask) -> None:
        if not self._started:
            self.start()
        with self._idle:
            self._pending += 1
        self._tasks.put(task)

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def stop(self, timeout: float | None = 5.0) -> None:
        if not self._started:
            return
        self.wait_idle(timeout)
        for _ in range(self._workers):
            self._tasks.put(None)
        self._outcomes.put(None)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self._started = False

    def _run_tasks(self) -> None:
        while True:
            task = self._tasks.get()
            if task is None:
                return
            try:
                result = task.run()
            except Exception as exc:
                self._outcomes.put(SyncOutcome(task=task, ok=False, error=exc))
            else:
                self._outcomes.put(SyncOutcome(task=task, ok=True, result=result))

    def _run_dispatch(self) -> None:
        while True:
            outcome = self._outcomes.get()
            if outcome is None:
                return
            try:
                self._handle_outcome(outcome)
            except Exception as exc:
                logger.exception(
                    "sync outcome handling failed",
                    extra={"session_id": outcome.task.session_id},
                    exc_info=exc,
                )
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()
