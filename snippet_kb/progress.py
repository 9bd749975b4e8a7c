"""
Observable, cancellable background tasks.

A :class:`ProgressTask` runs a unit of work on its own thread and records
every progress report as a :class:`ProgressEvent`.  ``events()`` can be
called any number of times; each call replays the stream from the first
event and then follows it live until the terminal event (completed,
failed or cancelled).

Usage::

    task = service.start_store_batch(items)
    for event in task.events():
        print(f"{event.fraction:.0%} {event.message}")
    ids = task.wait()
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventKind(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    kind: EventKind
    fraction: float
    message: str = ""
    error: Optional[BaseException] = None

    @property
    def terminal(self) -> bool:
        return self.kind is not EventKind.PROGRESS


class TaskCancelled(Exception):
    """Raised inside the work function when the task has been cancelled."""


class ProgressReporter:
    """Handed to the work function so it can report progress and see cancellation."""

    def __init__(self, task: "ProgressTask[Any]") -> None:
        self._task = task

    def report(self, fraction: float, message: str = "") -> None:
        self.check_cancelled()
        self._task._emit(ProgressEvent(EventKind.PROGRESS,
                                       max(0.0, min(1.0, fraction)), message))

    @property
    def cancelled(self) -> bool:
        return self._task._cancel.is_set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise TaskCancelled()


class ProgressTask(Generic[T]):
    """A background unit of work with a replayable progress stream."""

    def __init__(self, work: Callable[[ProgressReporter], T],
                 name: str = "snippet-kb-task") -> None:
        self._work = work
        self._name = name
        self._events: list[ProgressEvent] = []
        self._cond = threading.Condition()
        self._cancel = threading.Event()
        self._result: Optional[T] = None
        self._error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ProgressTask[T]":
        if self._thread is not None:
            raise RuntimeError("task already started")
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        reporter = ProgressReporter(self)
        try:
            self._emit(ProgressEvent(EventKind.PROGRESS, 0.0, "started"))
            result = self._work(reporter)
        except TaskCancelled:
            self._error = TaskCancelled()
            self._emit(ProgressEvent(EventKind.CANCELLED, self._last_fraction(),
                                     "cancelled"))
        except Exception as exc:
            logger.warning("[ProgressTask] %s failed: %s", self._name, exc)
            self._error = exc
            self._emit(ProgressEvent(EventKind.FAILED, self._last_fraction(),
                                     str(exc), error=exc))
        else:
            self._result = result
            self._emit(ProgressEvent(EventKind.COMPLETED, 1.0, "completed"))

    def _last_fraction(self) -> float:
        with self._cond:
            return self._events[-1].fraction if self._events else 0.0

    def _emit(self, event: ProgressEvent) -> None:
        with self._cond:
            self._events.append(event)
            self._cond.notify_all()

    # ── Observation ──

    def events(self) -> Iterator[ProgressEvent]:
        """Yield every event from the first one until the terminal event."""
        index = 0
        while True:
            with self._cond:
                while index >= len(self._events):
                    self._cond.wait()
                event = self._events[index]
            index += 1
            yield event
            if event.terminal:
                return

    @property
    def done(self) -> bool:
        with self._cond:
            return bool(self._events) and self._events[-1].terminal

    def wait(self, timeout: Optional[float] = None) -> T:
        """Block until the task ends; return its result or raise its error."""
        if self._thread is None:
            raise RuntimeError("task not started")
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError(f"{self._name} still running after {timeout}s")
        if self._error is not None:
            raise self._error
        return self._result  # type: ignore[return-value]

    def cancel(self) -> None:
        """Ask the work function to stop at its next progress report."""
        self._cancel.set()
