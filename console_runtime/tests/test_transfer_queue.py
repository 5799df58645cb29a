import asyncio

import pytest

from console_runtime.errors import DuplicateTaskError, ExecutorError
from console_runtime.network import RequestGateway
from console_runtime.transfers import (
    TransferKind,
    TransferQueue,
    TransferStatus,
    download_executor,
    upload_executor,
)


class _Gate:
    """Executor that blocks until released, recording when it started."""

    def __init__(self, name, log, result=None, error=None) -> None:
        self.name = name
        self._log = log
        self._result = result
        self._error = error
        self.release = asyncio.Event()

    async def __call__(self):
        self._log.append(("start", self.name))
        await self.release.wait()
        self._log.append(("end", self.name))
        if self._error is not None:
            raise self._error
        return self._result


async def _wait_for(predicate, *, timeout: float = 1.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.mark.asyncio
async def test_concurrency_cap_and_fifo_admission():
    queue = TransferQueue(concurrency=2)
    log = []
    t1, t2, t3 = (_Gate(name, log, result=name) for name in ("T1", "T2", "T3"))

    queue.enqueue("T1", t1)
    queue.enqueue("T2", t2)
    queue.enqueue("T3", t3)
    await asyncio.sleep(0.02)

    assert queue.active_count == 2
    assert queue.queued_count == 1
    assert queue.get("T3").status is TransferStatus.QUEUED
    assert [entry for entry in log if entry[0] == "start"] == [("start", "T1"), ("start", "T2")]

    t1.release.set()
    assert await _wait_for(lambda: queue.get("T3").status is TransferStatus.ACTIVE)
    assert queue.get("T1").status is TransferStatus.COMPLETED
    assert queue.active_count == 2

    t2.release.set()
    t3.release.set()
    await asyncio.wait_for(queue.join(), timeout=1.0)

    assert [task.status for task in queue.tasks()] == [TransferStatus.COMPLETED] * 3
    assert await queue.wait("T3") == "T3"


@pytest.mark.asyncio
async def test_single_slot_runs_tasks_one_at_a_time():
    queue = TransferQueue(concurrency=1)
    log = []
    gates = [_Gate(f"T{i}", log) for i in range(3)]
    for gate in gates:
        queue.enqueue(gate.name, gate)
        gate.release.set()

    await asyncio.wait_for(queue.join(), timeout=1.0)

    assert log == [
        ("start", "T0"),
        ("end", "T0"),
        ("start", "T1"),
        ("end", "T1"),
        ("start", "T2"),
        ("end", "T2"),
    ]


@pytest.mark.asyncio
async def test_duplicate_id_is_rejected_while_queued_or_active():
    queue = TransferQueue(concurrency=1)
    log = []
    active, queued = _Gate("A", log), _Gate("B", log)
    queue.enqueue("A", active)
    queue.enqueue("B", queued)

    with pytest.raises(DuplicateTaskError):
        queue.enqueue("A", _Gate("A2", log))
    with pytest.raises(DuplicateTaskError):
        queue.enqueue("B", _Gate("B2", log))

    await queue.aclose()


@pytest.mark.asyncio
async def test_failed_task_is_retained_with_error_and_not_retried():
    queue = TransferQueue(concurrency=2)
    calls = []

    async def _boom():
        calls.append(1)
        raise OSError("disk full")

    queue.enqueue("fw-1", _boom, kind=TransferKind.DOWNLOAD, descriptor={"file": "fw.bin"})
    await asyncio.wait_for(queue.join(), timeout=1.0)

    task = queue.get("fw-1")
    assert task.status is TransferStatus.FAILED
    assert isinstance(task.error, ExecutorError)
    assert isinstance(task.error.__cause__, OSError)
    assert task.descriptor == {"file": "fw.bin"}
    assert calls == [1]

    with pytest.raises(ExecutorError):
        await queue.wait("fw-1")

    assert queue.clear_finished() == 0
    assert queue.get("fw-1") is not None


@pytest.mark.asyncio
async def test_failure_frees_slot_for_next_task():
    queue = TransferQueue(concurrency=1)

    async def _boom():
        raise RuntimeError("network gone")

    async def _ok():
        return "done"

    queue.enqueue("bad", _boom)
    queue.enqueue("good", _ok)
    await asyncio.wait_for(queue.join(), timeout=1.0)

    assert queue.get("bad").status is TransferStatus.FAILED
    assert queue.get("good").status is TransferStatus.COMPLETED
    assert queue.get("good").result == "done"


@pytest.mark.asyncio
async def test_dismiss_and_reenqueue_finished_task():
    queue = TransferQueue(concurrency=1)

    async def _ok():
        return 1

    queue.enqueue("job", _ok)
    await asyncio.wait_for(queue.join(), timeout=1.0)

    replacement = queue.enqueue("job", _ok)
    assert replacement.status in (TransferStatus.QUEUED, TransferStatus.ACTIVE)
    await asyncio.wait_for(queue.join(), timeout=1.0)

    dismissed = queue.dismiss("job")
    assert dismissed is replacement
    assert queue.get("job") is None
    with pytest.raises(KeyError):
        queue.dismiss("job")


@pytest.mark.asyncio
async def test_dismiss_rejects_unfinished_task():
    queue = TransferQueue(concurrency=1)
    gate = _Gate("slow", [])
    queue.enqueue("slow", gate)

    with pytest.raises(ValueError):
        queue.dismiss("slow")

    gate.release.set()
    await asyncio.wait_for(queue.join(), timeout=1.0)


@pytest.mark.asyncio
async def test_cancel_queued_and_active_tasks():
    queue = TransferQueue(concurrency=1)
    log = []
    running, waiting = _Gate("run", log), _Gate("wait", log)
    queue.enqueue("run", running)
    queue.enqueue("wait", waiting)
    await asyncio.sleep(0.01)

    assert queue.cancel("wait") is True
    assert queue.get("wait") is None

    assert queue.cancel("run") is True
    await asyncio.wait_for(queue.join(), timeout=1.0)

    task = queue.get("run")
    assert task.status is TransferStatus.FAILED
    assert task.error.reason == "cancelled"
    assert ("start", "wait") not in log
    assert queue.cancel("run") is False


@pytest.mark.asyncio
async def test_waiter_on_cancelled_queued_task_gets_executor_error():
    queue = TransferQueue(concurrency=1)
    log = []
    running = _Gate("run", log)
    queue.enqueue("run", running)
    queued = queue.enqueue("wait", _Gate("wait", log))
    waiter = asyncio.create_task(queue.wait("wait"))
    await asyncio.sleep(0.01)

    assert queue.cancel("wait") is True

    with pytest.raises(ExecutorError) as excinfo:
        await asyncio.wait_for(waiter, timeout=1.0)
    assert excinfo.value.reason == "cancelled"
    assert queued.status is TransferStatus.FAILED
    assert queued.error is excinfo.value

    running.release.set()
    await asyncio.wait_for(queue.join(), timeout=1.0)


@pytest.mark.asyncio
async def test_listeners_receive_snapshots_on_every_change():
    queue = TransferQueue(concurrency=1)
    snapshots = []
    queue.subscribe(lambda tasks: snapshots.append([(task.id, task.status) for task in tasks]))

    async def _ok():
        return None

    queue.enqueue("a", _ok)
    await asyncio.wait_for(queue.join(), timeout=1.0)

    assert snapshots[0] == [("a", TransferStatus.ACTIVE)]
    assert snapshots[-1] == [("a", TransferStatus.COMPLETED)]


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        TransferQueue(concurrency=0)


@pytest.mark.asyncio
async def test_gateway_executors_run_through_queue(settings, fake_http, respond, tmp_path):
    fake_http.route("GET", "/api/recordings/5/download", respond(200, raw=b"audio-bytes"))
    fake_http.route("POST", "/api/devices/5/files", respond(200, {"success": False, "error": "quota exceeded"}))
    gateway = RequestGateway(settings, token_provider=lambda: "tok", http=fake_http)
    source = tmp_path / "notes.txt"
    source.write_text("hello", encoding="utf-8")
    queue = TransferQueue.from_settings(settings)

    queue.enqueue("rec-5", download_executor(gateway, "/recordings/5/download", tmp_path / "rec-5.mp3"))
    queue.enqueue(
        "up-5",
        upload_executor(gateway, "/devices/5/files", source),
        kind=TransferKind.UPLOAD,
    )
    await asyncio.wait_for(queue.join(), timeout=2.0)

    download = queue.get("rec-5")
    assert download.status is TransferStatus.COMPLETED
    assert download.result.size_bytes == len(b"audio-bytes")
    assert (tmp_path / "rec-5.mp3").read_bytes() == b"audio-bytes"

    upload = queue.get("up-5")
    assert upload.status is TransferStatus.FAILED
    assert upload.error.reason == "quota exceeded"
