from __future__ import annotations

from Enliterator_KG.orchestration.queue import MONITOR_TASK, RUN_TASK, DelayedTaskQueue

from tests.fakes import ManualTime


def test_tasks_become_due_in_availability_order():
    time = ManualTime()
    queue = DelayedTaskQueue(clock=time)
    queue.publish(MONITOR_TASK, {"job_ref_id": "ejob-2"}, delay=120)
    queue.publish(MONITOR_TASK, {"job_ref_id": "ejob-1"}, delay=60)
    queue.publish(RUN_TASK, {"batch_id": "batch-1"})

    assert [task.task for task in queue.due()] == [RUN_TASK]

    time.advance(120)
    assert [task.payload["job_ref_id"] for task in queue.due()] == ["ejob-1", "ejob-2"]
    assert queue.pending() == 0


def test_equal_times_keep_publication_order():
    queue = DelayedTaskQueue(clock=ManualTime())
    for index in range(3):
        queue.publish(RUN_TASK, {"batch_id": f"batch-{index}"})

    assert [task.payload["batch_id"] for task in queue.due()] == ["batch-0", "batch-1", "batch-2"]


def test_due_respects_max_tasks():
    queue = DelayedTaskQueue(clock=ManualTime())
    for index in range(3):
        queue.publish(RUN_TASK, {"batch_id": f"batch-{index}"})

    assert len(list(queue.due(max_tasks=2))) == 2
    assert queue.pending() == 1


def test_payload_is_copied_on_publish():
    queue = DelayedTaskQueue(clock=ManualTime())
    payload = {"batch_id": "batch-1"}
    queue.publish(RUN_TASK, payload)
    payload["batch_id"] = "changed"

    assert queue.peek().payload == {"batch_id": "batch-1"}


def test_discard_by_key():
    time = ManualTime()
    queue = DelayedTaskQueue(clock=time)
    queue.publish(MONITOR_TASK, {"job_ref_id": "ejob-1"}, delay=60, key="batch-1")
    queue.publish(MONITOR_TASK, {"job_ref_id": "ejob-2"}, delay=30, key="batch-2")

    assert queue.discard(key="batch-1") == 1
    assert [task.key for task in queue.scheduled(MONITOR_TASK)] == ["batch-2"]
    assert queue.scheduled(RUN_TASK) == []
