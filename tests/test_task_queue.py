from __future__ import annotations

import dataclasses
import itertools
import threading
import time

import allure
import pytest
from queue_helpers import queue_settings, wait_for_status, wait_until

from content_tasks.taskqueue import HandlerMeta, TaskQueueError, TaskStatus

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Dispatch & Retry"),
]


def _echo(payload, meta):
    return {"value": payload["value"]}


def _blocking(release: threading.Event):
    def _handler(payload, meta):
        release.wait(timeout=5)
        return {"released": True}

    return _handler


def test_enqueued_task_runs_handler_and_stores_result(make_queue) -> None:
    queue = make_queue(handlers={"echo": _echo})

    task = queue.enqueue_task("echo", {"value": 42})
    assert task.status in {TaskStatus.QUEUED, TaskStatus.RUNNING}
    assert task.attempts == 0
    assert task.task_id.startswith("t_")

    done = wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
    assert done.result == {"value": 42}
    assert done.attempts == 1
    assert done.last_error == ""
    assert done.started_at
    assert done.finished_at


def test_flaky_task_is_retried_without_caller_intervention(make_queue) -> None:
    queue = make_queue()
    seen: list[tuple[int, TaskStatus | None]] = []

    def _flaky(payload, meta: HandlerMeta):
        current = queue.get_task(meta.task_id)
        seen.append((meta.attempt, current.status if current else None))
        if meta.attempt == 1:
            raise RuntimeError("boom")
        return {"ok": True}

    queue.register_handler("flaky", _flaky)
    task = queue.enqueue_task("flaky", {}, max_attempts=2)

    done = wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
    assert done.attempts == 2
    assert done.result == {"ok": True}
    assert done.last_error == ""
    assert seen == [(1, TaskStatus.RUNNING), (2, TaskStatus.RUNNING)]


def test_always_failing_task_stops_after_max_attempts(make_queue) -> None:
    calls: list[int] = []

    def _always_fails(payload, meta):
        calls.append(meta.attempt)
        raise ValueError("boom")

    queue = make_queue(handlers={"broken": _always_fails})
    task = queue.enqueue_task("broken", {}, max_attempts=3)

    failed = wait_for_status(queue, task.task_id, TaskStatus.FAILED)
    time.sleep(0.1)
    assert calls == [1, 2, 3]
    assert failed.attempts == 3
    assert failed.last_error == "boom"
    assert failed.finished_at
    assert queue.get_task(task.task_id).attempts == 3


def test_empty_handler_error_is_recorded_as_task_failed(make_queue) -> None:
    def _silent_failure(payload, meta):
        raise RuntimeError

    queue = make_queue(handlers={"silent": _silent_failure})
    task = queue.enqueue_task("silent")

    failed = wait_for_status(queue, task.task_id, TaskStatus.FAILED)
    assert failed.last_error == "task_failed"


def test_long_handler_error_is_truncated(make_queue) -> None:
    def _verbose_failure(payload, meta):
        raise RuntimeError("x" * 2_000)

    queue = make_queue(handlers={"verbose": _verbose_failure})
    task = queue.enqueue_task("verbose")

    failed = wait_for_status(queue, task.task_id, TaskStatus.FAILED)
    assert len(failed.last_error) == 500


def test_handler_that_never_settles_is_abandoned_after_timeout(make_queue) -> None:
    release = threading.Event()
    queue = make_queue(queue_settings(timeout_ms=100), handlers={"hang": _blocking(release)})
    try:
        task = queue.enqueue_task("hang")

        failed = wait_for_status(queue, task.task_id, TaskStatus.FAILED)
        assert failed.last_error == "task_timeout"
        assert failed.attempts == 1
        assert queue.get_stats().active == 0
    finally:
        release.set()

    time.sleep(0.1)
    late = queue.get_task(task.task_id)
    assert late.status == TaskStatus.FAILED
    assert late.result is None


def test_timed_out_attempt_is_retried_and_frees_its_slot(make_queue) -> None:
    release = threading.Event()

    def _slow_then_fast(payload, meta):
        if meta.attempt == 1:
            release.wait(timeout=5)
            return {"attempt": 1}
        return {"attempt": meta.attempt}

    queue = make_queue(queue_settings(timeout_ms=100), handlers={"slow": _slow_then_fast})
    try:
        task = queue.enqueue_task("slow", max_attempts=2)
        done = wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
    finally:
        release.set()

    assert done.attempts == 2
    assert done.result == {"attempt": 2}


def test_task_without_handler_fails_immediately(make_queue) -> None:
    queue = make_queue(handlers={"echo": _echo})

    orphan = queue.enqueue_task("unknown")
    task = queue.enqueue_task("echo", {"value": 1})

    failed = wait_for_status(queue, orphan.task_id, TaskStatus.FAILED)
    assert failed.last_error == "task_handler_missing"
    assert failed.attempts == 1
    wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)


@pytest.mark.parametrize("task_type", ["", "   ", None])
def test_enqueue_rejects_empty_task_type(make_queue, task_type) -> None:
    queue = make_queue()

    with pytest.raises(TaskQueueError, match="invalid_task_type") as raised:
        queue.enqueue_task(task_type)
    assert raised.value.code == "invalid_task_type"
    assert raised.value.http_status == 400


def test_enqueue_beyond_max_queue_is_rejected(make_queue) -> None:
    release = threading.Event()
    queue = make_queue(queue_settings(max_queue=2), handlers={"block": _blocking(release)})
    try:
        running = queue.enqueue_task("block")
        wait_for_status(queue, running.task_id, TaskStatus.RUNNING)
        queue.enqueue_task("block")
        queue.enqueue_task("block")

        with pytest.raises(TaskQueueError) as raised:
            queue.enqueue_task("block")
        assert raised.value.code == "task_queue_full"
        assert raised.value.http_status == 429

        stats = queue.get_stats()
        assert stats.total == 3
        assert stats.queued == 2
        assert stats.running == 1
    finally:
        release.set()


def test_retry_rejects_succeeded_and_queued_tasks(make_queue) -> None:
    release = threading.Event()
    queue = make_queue(handlers={"echo": _echo, "block": _blocking(release)})
    try:
        done = queue.enqueue_task("echo", {"value": 1})
        wait_for_status(queue, done.task_id, TaskStatus.SUCCEEDED)
        running = queue.enqueue_task("block")
        wait_for_status(queue, running.task_id, TaskStatus.RUNNING)
        waiting = queue.enqueue_task("block")

        for task_id in (done.task_id, running.task_id, waiting.task_id):
            with pytest.raises(TaskQueueError, match="task_not_retryable"):
                queue.retry_task(task_id)
    finally:
        release.set()


def test_retry_requeues_failed_task_until_it_succeeds(make_queue) -> None:
    calls = itertools.count(1)

    def _fails_once(payload, meta):
        if next(calls) == 1:
            raise RuntimeError("boom")
        return {"ok": True}

    queue = make_queue(handlers={"flaky": _fails_once})
    task = queue.enqueue_task("flaky", {}, max_attempts=1)
    failed = wait_for_status(queue, task.task_id, TaskStatus.FAILED)
    assert failed.last_error == "boom"

    retried = queue.retry_task(task.task_id)
    assert retried.status in {TaskStatus.QUEUED, TaskStatus.RUNNING}
    assert retried.last_error == ""
    assert retried.finished_at == ""

    done = wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
    assert done.result == {"ok": True}
    assert done.attempts == 2


def test_retry_of_unknown_task_returns_none(make_queue) -> None:
    queue = make_queue()

    assert queue.retry_task("t_missing") is None
    assert queue.get_task("t_missing") is None


def test_running_tasks_never_exceed_concurrency(make_queue) -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    queue = make_queue(queue_settings(concurrency=2))

    def _tracked(payload, meta):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        assert queue.get_stats().running <= 2
        time.sleep(0.05)
        with lock:
            running -= 1
        return {"index": payload["index"]}

    queue.register_handler("tracked", _tracked)
    tasks = [queue.enqueue_task("tracked", {"index": index}) for index in range(6)]

    for task in tasks:
        wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
    assert peak == 2


def test_pending_tasks_run_fifo_and_retries_go_to_the_back(make_queue) -> None:
    release = threading.Event()
    order: list[str] = []

    def _recorded(payload, meta):
        order.append(f"{payload['name']}#{meta.attempt}")
        if payload["name"] == "flaky" and meta.attempt == 1:
            raise RuntimeError("boom")
        return None

    queue = make_queue(handlers={"block": _blocking(release), "recorded": _recorded})
    gate = queue.enqueue_task("block")
    wait_for_status(queue, gate.task_id, TaskStatus.RUNNING)
    flaky = queue.enqueue_task("recorded", {"name": "flaky"}, max_attempts=2)
    second = queue.enqueue_task("recorded", {"name": "second"})
    third = queue.enqueue_task("recorded", {"name": "third"})
    release.set()

    for task in (flaky, second, third):
        wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
    assert order == ["flaky#1", "second#1", "third#1", "flaky#2"]


def test_retention_evicts_oldest_finished_tasks_only(make_queue) -> None:
    queue = make_queue(queue_settings(max_tasks=3), handlers={"echo": _echo})

    finished = []
    for index in range(5):
        task = queue.enqueue_task("echo", {"value": index})
        wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
        finished.append(task.task_id)

    assert queue.get_stats().total == 3
    assert queue.get_task(finished[0]) is None
    assert queue.get_task(finished[1]) is None
    assert queue.get_task(finished[4]) is not None


def test_retention_never_evicts_live_tasks(make_queue) -> None:
    release = threading.Event()
    queue = make_queue(queue_settings(max_tasks=1), handlers={"block": _blocking(release)})
    try:
        tasks = [queue.enqueue_task("block") for _ in range(3)]
        wait_for_status(queue, tasks[0].task_id, TaskStatus.RUNNING)
        assert all(queue.get_task(task.task_id) is not None for task in tasks)
    finally:
        release.set()

    wait_until(lambda: queue.get_stats().active == 0 and queue.get_stats().queued == 0)
    assert queue.get_stats().total == 1


def test_coroutine_handlers_are_awaited(make_queue) -> None:
    async def _async_echo(payload, meta):
        return {"value": payload["value"], "attempt": meta.attempt}

    queue = make_queue(handlers={"async-echo": _async_echo})
    task = queue.enqueue_task("async-echo", {"value": "x"})

    done = wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)
    assert done.result == {"value": "x", "attempt": 1}


def test_list_tasks_orders_newest_first_and_filters_by_status(make_queue) -> None:
    ticks = itertools.count()

    def _clock() -> str:
        return f"2026-01-01T00:00:00.{next(ticks):06d}+00:00"

    queue = make_queue(handlers={"echo": _echo}, clock=_clock)
    first = queue.enqueue_task("echo", {"value": 1})
    orphan = queue.enqueue_task("missing")
    wait_for_status(queue, first.task_id, TaskStatus.SUCCEEDED)
    wait_for_status(queue, orphan.task_id, TaskStatus.FAILED)

    assert [view.task_id for view in queue.list_tasks()] == [orphan.task_id, first.task_id]
    assert [view.task_id for view in queue.list_tasks(status=TaskStatus.FAILED)] == [
        orphan.task_id,
    ]
    assert len(queue.list_tasks(limit=1)) == 1


def test_stats_report_counts_and_limits(make_queue) -> None:
    queue = make_queue(
        queue_settings(concurrency=3, max_queue=7, max_tasks=11, timeout_ms=1_234),
        handlers={"echo": _echo},
    )
    done = queue.enqueue_task("echo", {"value": 1})
    orphan = queue.enqueue_task("missing")
    wait_for_status(queue, done.task_id, TaskStatus.SUCCEEDED)
    wait_for_status(queue, orphan.task_id, TaskStatus.FAILED)

    stats = queue.get_stats()
    assert (stats.concurrency, stats.max_queue, stats.max_tasks, stats.timeout_ms) == (
        3,
        7,
        11,
        1_234,
    )
    assert (stats.total, stats.succeeded, stats.failed, stats.queued, stats.running) == (
        2,
        1,
        1,
        0,
        0,
    )
    assert stats.persistence.enabled is False
    assert stats.to_dict()["maxQueue"] == 7


def test_closed_queue_rejects_new_work(make_queue) -> None:
    queue = make_queue(handlers={"echo": _echo})
    queue.close()

    with pytest.raises(TaskQueueError) as raised:
        queue.enqueue_task("echo", {"value": 1})
    assert raised.value.code == "task_queue_closed"
    assert raised.value.http_status == 503


def test_handler_raising_base_exception_fails_with_its_message(make_queue) -> None:
    def _exits(payload, meta):
        raise SystemExit("browser_gone")

    queue = make_queue(queue_settings(timeout_ms=10_000), handlers={"exits": _exits})
    task = queue.enqueue_task("exits")

    failed = wait_for_status(queue, task.task_id, TaskStatus.FAILED, timeout_seconds=2.0)
    assert failed.last_error == "browser_gone"
    assert failed.attempts == 1
    assert queue.get_stats().active == 0


def test_task_view_is_a_frozen_snapshot(make_queue) -> None:
    queue = make_queue(handlers={"echo": _echo})
    task = queue.enqueue_task("echo", {"value": 7})
    wait_for_status(queue, task.task_id, TaskStatus.SUCCEEDED)

    assert task.status in {TaskStatus.QUEUED, TaskStatus.RUNNING}
    assert task.result is None
    with pytest.raises(dataclasses.FrozenInstanceError):
        task.status = TaskStatus.FAILED  # type: ignore[misc]
    assert queue.get_task(task.task_id).status == TaskStatus.SUCCEEDED
