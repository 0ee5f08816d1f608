import threading

import pytest

from pgstatsinfo.queue import QueueItem, QueueType, WriterQueue


def make_item(item_type=QueueType.SNAPSHOT, result=True):
    calls = []

    def action(session, conn, instid):
        calls.append((session, conn, instid))
        return result

    return QueueItem(item_type, action), calls


def test_execute_passes_arguments_to_action():
    item, calls = make_item(result=True)
    assert item.execute("session", "conn", "42") is True
    assert calls == [("session", "conn", "42")]


def test_execute_reports_failure():
    item, _ = make_item(result=False)
    assert item.execute(None, None, "1") is False


def test_execute_without_action_raises():
    item = QueueItem(QueueType.LOGSTORE)
    with pytest.raises(TypeError):
        item.execute(None, None, "1")


def test_send_resets_retry_count():
    queue = WriterQueue()
    item, _ = make_item()
    item.retry = 5
    queue.send(item)
    assert item.retry == 0
    assert len(queue) == 1


def test_has_queue_by_type():
    queue = WriterQueue()
    assert queue.has_queue(QueueType.SNAPSHOT) is False
    queue.send(make_item(QueueType.LOGSTORE)[0])
    assert queue.has_queue(QueueType.LOGSTORE) is True
    assert queue.has_queue(QueueType.SNAPSHOT) is False


def test_take_all_empties_queue_in_order():
    queue = WriterQueue()
    items = [make_item()[0] for _ in range(3)]
    for item in items:
        queue.send(item)
    assert queue.take_all() == items
    assert len(queue) == 0
    assert queue.take_all() == []


def test_requeue_puts_items_in_front():
    queue = WriterQueue()
    old = [make_item()[0], make_item()[0]]
    for item in old:
        queue.send(item)
    taken = queue.take_all()
    newer = make_item()[0]
    queue.send(newer)
    assert queue.requeue(taken) == 3
    assert queue.take_all() == [*old, newer]


def test_concurrent_sends_are_all_kept():
    queue = WriterQueue()

    def worker():
        for _ in range(100):
            queue.send(make_item()[0])

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(queue.take_all()) == 400