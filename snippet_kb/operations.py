"""
Registry of in-flight and recently finished knowledge base operations.

Owned by a :class:`~snippet_kb.context.KBContext`; every mutation goes
through the registry's lock.  Finished operations are pruned after
``retention`` seconds.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 60 * 60


class OperationStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Operation:
    id: str
    kind: str
    status: OperationStatus
    started_at: float
    updated_at: float
    error: Optional[str] = None


class OperationRegistry:

    def __init__(self, retention: float = DEFAULT_RETENTION,
                 clock: Callable[[], float] = time.time) -> None:
        self._retention = retention
        self._clock = clock
        self._lock = threading.Lock()
        self._ops: dict[str, Operation] = {}
        self._last_error: Optional[str] = None

    def begin(self, kind: str) -> str:
        now = self._clock()
        op_id = f"op_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"
        with self._lock:
            self._ops[op_id] = Operation(op_id, kind, OperationStatus.PROCESSING, now, now)
        return op_id

    def finish(self, op_id: str, error: Optional[BaseException] = None) -> None:
        now = self._clock()
        with self._lock:
            op = self._ops.get(op_id)
            if op is None:
                return
            if error is None:
                self._ops[op_id] = replace(op, status=OperationStatus.COMPLETED,
                                           updated_at=now)
            else:
                message = str(error) or type(error).__name__
                self._ops[op_id] = replace(op, status=OperationStatus.FAILED,
                                           updated_at=now, error=message)
                self._last_error = message
        self.prune()

    @contextmanager
    def track(self, kind: str) -> Iterator[str]:
        """Register an operation for the duration of the ``with`` block."""
        op_id = self.begin(kind)
        try:
            yield op_id
        except BaseException as exc:
            self.finish(op_id, error=exc)
            raise
        else:
            self.finish(op_id)

    def prune(self) -> int:
        """Forget finished operations older than the retention window."""
        cutoff = self._clock() - self._retention
        with self._lock:
            stale = [op_id for op_id, op in self._ops.items()
                     if op.status is not OperationStatus.PROCESSING
                     and op.updated_at < cutoff]
            for op_id in stale:
                del self._ops[op_id]
        if stale:
            logger.debug("[OperationRegistry] Pruned %d operations", len(stale))
        return len(stale)

    def get(self, op_id: str) -> Optional[Operation]:
        with self._lock:
            return self._ops.get(op_id)

    def snapshot(self) -> list[Operation]:
        with self._lock:
            return sorted(self._ops.values(), key=lambda op: op.started_at)

    def in_flight(self) -> list[Operation]:
        return [op for op in self.snapshot() if op.status is OperationStatus.PROCESSING]

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    def clear_error(self) -> None:
        with self._lock:
            self._last_error = None
