"""Bounded-concurrency FIFO queue for long-running downloads and uploads."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from console_runtime.config import RuntimeSettings
from console_runtime.errors import DuplicateTaskError, ExecutorError
from console_runtime.events import CallbackRegistry, Disposer

LOGGER = logging.getLogger(__name__)

Executor = Callable[[], Awaitable[Any]]
_LISTENERS = "queue"


class TransferKind(enum.Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


class TransferStatus(enum.Enum):
    QUEUED = "QUEUED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.FAILED)


@dataclass
class TransferTask:
    id: str
    kind: TransferKind
    executor: Executor = field(repr=False)
    descriptor: Dict[str, Any] = field(default_factory=dict)
    status: TransferStatus = TransferStatus.QUEUED
    result: Any = None
    error: Optional[ExecutorError] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _done: Optional[asyncio.Future[Any]] = field(default=None, repr=False)


class TransferQueue:
    """Admits transfers oldest-first while fewer than ``concurrency`` are active.

    Finished tasks stay visible until they are dismissed; failed tasks keep
    their :class:`ExecutorError` and are never retried automatically.
    """

    def __init__(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._concurrency = concurrency
        self._tasks: "OrderedDict[str, TransferTask]" = OrderedDict()
        self._queued: Deque[str] = deque()
        self._running: Dict[str, asyncio.Task[None]] = {}
        self._listeners = CallbackRegistry("transfer listener")
        self._idle = asyncio.Event()
        self._idle.set()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> TransferQueue:
        return cls(settings.transfer_concurrency)

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._queued)

    def get(self, task_id: str) -> Optional[TransferTask]:
        return self._tasks.get(task_id)

    def tasks(self) -> tuple[TransferTask, ...]:
        return tuple(self._tasks.values())

    def subscribe(self, listener: Callable[[tuple[TransferTask, ...]], Any]) -> Disposer:
        """Receive a snapshot of every task whenever the queue changes."""

        return self._listeners.add(_LISTENERS, listener)

    def enqueue(
        self,
        task_id: str,
        executor: Executor,
        *,
        kind: TransferKind = TransferKind.DOWNLOAD,
        descriptor: Optional[Dict[str, Any]] = None,
    ) -> TransferTask:
        if not task_id:
            raise ValueError("task_id must be non-empty")
        existing = self._tasks.get(task_id)
        if existing is not None:
            if not existing.status.terminal:
                raise DuplicateTaskError(task_id)
            LOGGER.debug("Replacing finished transfer %s", task_id)
            del self._tasks[task_id]
        task = TransferTask(
            id=task_id,
            kind=kind,
            executor=executor,
            descriptor=dict(descriptor or {}),
            _done=asyncio.get_running_loop().create_future(),
        )
        self._tasks[task_id] = task
        self._queued.append(task_id)
        self._idle.clear()
        LOGGER.info("Queued %s transfer %s", kind.value, task_id)
        self._pump()
        self._notify()
        return task

    async def wait(self, task_id: str) -> Any:
        """Wait for ``task_id`` to finish; return its result or raise its error."""

        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        assert task._done is not None
        return await asyncio.shield(task._done)

    async def join(self) -> None:
        """Wait until nothing is queued or active."""

        await self._idle.wait()

    def dismiss(self, task_id: str) -> TransferTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        if not task.status.terminal:
            raise ValueError(f"Transfer {task_id!r} is still {task.status.value.lower()}")
        del self._tasks[task_id]
        self._notify()
        return task

    def clear_finished(self) -> int:
        finished = [task_id for task_id, task in self._tasks.items() if task.status is TransferStatus.COMPLETED]
        for task_id in finished:
            del self._tasks[task_id]
        if finished:
            self._notify()
        return len(finished)

    def cancel(self, task_id: str) -> bool:
        """Drop a queued task or cancel an active one; False if already finished."""

        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        if task.status is TransferStatus.QUEUED:
            self._queued.remove(task_id)
            del self._tasks[task_id]
            task.status = TransferStatus.FAILED
            task.error = ExecutorError(task_id, "cancelled")
            task.finished_at = datetime.now(tz=timezone.utc)
            done = task._done
            if done is not None and not done.done():
                done.set_exception(task.error)
                done.exception()
            LOGGER.info("Cancelled queued transfer %s", task_id)
            self._update_idle()
            self._notify()
            return True
        runner = self._running.get(task_id)
        if runner is not None:
            runner.cancel()
            return True
        return False

    async def aclose(self) -> None:
        for task_id in list(self._queued):
            self.cancel(task_id)
        runners = list(self._running.values())
        for runner in runners:
            runner.cancel()
        for runner in runners:
            with contextlib.suppress(asyncio.CancelledError):
                await runner

    def _pump(self) -> None:
        while self._queued and len(self._running) < self._concurrency:
            task_id = self._queued.popleft()
            task = self._tasks[task_id]
            task.status = TransferStatus.ACTIVE
            task.started_at = datetime.now(tz=timezone.utc)
            LOGGER.info("Starting %s transfer %s", task.kind.value, task_id)
            runner = asyncio.create_task(self._run(task), name=f"transfer-{task_id}")
            self._running[task_id] = runner
            runner.add_done_callback(lambda _, task=task: self._reap(task))

    def _reap(self, task: TransferTask) -> None:
        # a runner cancelled before its first step never reaches _run's handlers
        if task.status is TransferStatus.ACTIVE:
            self._finish(task, error=ExecutorError(task.id, "cancelled"))

    async def _run(self, task: TransferTask) -> None:
        try:
            result = await task.executor()
        except asyncio.CancelledError:
            self._finish(task, error=ExecutorError(task.id, "cancelled"))
            raise
        except Exception as exc:  # noqa: BLE001
            error = ExecutorError(task.id, str(exc) or type(exc).__name__)
            error.__cause__ = exc
            LOGGER.warning("Transfer %s failed: %s", task.id, exc)
            self._finish(task, error=error)
        else:
            LOGGER.info("Transfer %s completed", task.id)
            self._finish(task, result=result)

    def _finish(self, task: TransferTask, *, result: Any = None, error: Optional[ExecutorError] = None) -> None:
        self._running.pop(task.id, None)
        task.finished_at = datetime.now(tz=timezone.utc)
        done = task._done
        if error is not None:
            task.status = TransferStatus.FAILED
            task.error = error
            if done is not None and not done.done():
                done.set_exception(error)
                # failures are retained on the task; waiting is optional
                done.exception()
        else:
            task.status = TransferStatus.COMPLETED
            task.result = result
            if done is not None and not done.done():
                done.set_result(result)
        self._pump()
        self._update_idle()
        self._notify()

    def _update_idle(self) -> None:
        if not self._queued and not self._running:
            self._idle.set()

    def _notify(self) -> None:
        self._listeners.emit(_LISTENERS, self.tasks())


__all__ = [
    "Executor",
    "TransferKind",
    "TransferQueue",
    "TransferStatus",
    "TransferTask",
]
