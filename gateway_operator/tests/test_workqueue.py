from __future__ import annotations

import threading
import time

from gateway_operator.src.workqueue import WorkQueue

KEY = ("default", "gw")


def test_pending_keys_are_deduplicated() -> None:
    queue = WorkQueue()
    queue.add(KEY)
    queue.add(KEY)
    queue.add(("default", "other"))

    assert len(queue) == 2
    assert queue.get(timeout=0.1) == KEY
    assert queue.get(timeout=0.1) == ("default", "other")
    assert queue.get(timeout=0.05) is None


def test_key_re_added_while_processing_is_parked_until_done() -> None:
    queue = WorkQueue()
    queue.add(KEY)
    assert queue.get(timeout=0.1) == KEY

    queue.add(KEY)
    assert len(queue) == 0
    assert queue.get(timeout=0.05) is None

    queue.done(KEY)
    assert queue.get(timeout=0.1) == KEY


def test_done_without_re_add_does_not_requeue() -> None:
    queue = WorkQueue()
    queue.add(KEY)
    queue.get(timeout=0.1)
    queue.done(KEY)
    assert len(queue) == 0


def test_add_after_delays_delivery() -> None:
    queue = WorkQueue()
    started = time.monotonic()
    queue.add_after(KEY, 0.1)

    assert queue.get(timeout=0.02) is None
    assert queue.get(timeout=1.0) == KEY
    assert time.monotonic() - started >= 0.1


def test_non_positive_delay_adds_immediately() -> None:
    queue = WorkQueue()
    queue.add_after(KEY, 0)
    assert len(queue) == 1


def test_rate_limited_backoff_doubles_and_caps() -> None:
    queue = WorkQueue(base_delay=1.0, max_delay=30.0)
    delays = []
    for _ in range(7):
        delays.append(queue.backoff_delay(KEY))
        queue.add_rate_limited(KEY)

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert queue.num_requeues(KEY) == 7

    queue.forget(KEY)
    assert queue.num_requeues(KEY) == 0
    assert queue.backoff_delay(KEY) == 1.0


def test_rate_limited_key_is_delivered_after_backoff() -> None:
    queue = WorkQueue(base_delay=0.05)
    queue.add_rate_limited(KEY)
    assert len(queue) == 0
    assert queue.get(timeout=1.0) == KEY


def test_shut_down_wakes_blocked_getters_and_ignores_adds() -> None:
    queue = WorkQueue()
    results: list[object] = []
    getter = threading.Thread(target=lambda: results.append(queue.get()))
    getter.start()

    time.sleep(0.05)
    queue.shut_down()
    getter.join(timeout=1.0)

    assert not getter.is_alive()
    assert results == [None]
    queue.add(KEY)
    queue.add_after(KEY, 0.01)
    assert len(queue) == 0
    assert queue.shutting_down


def test_queued_keys_are_drained_before_shutdown_is_reported() -> None:
    queue = WorkQueue()
    queue.add(KEY)
    queue.shut_down()
    assert queue.get(timeout=0.1) == KEY
    assert queue.get(timeout=0.1) is None


def test_a_key_is_never_held_by_two_workers() -> None:
    queue = WorkQueue()
    active: set[object] = set()
    overlaps: list[object] = []
    lock = threading.Lock()

    def worker() -> None:
        while True:
            key = queue.get(timeout=0.3)
            if key is None:
                return
            with lock:
                if key in active:
                    overlaps.append(key)
                active.add(key)
            time.sleep(0.01)
            with lock:
                active.discard(key)
            queue.done(key)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for _ in range(50):
        queue.add(KEY)
        queue.add(("default", "other"))
        time.sleep(0.002)
    for thread in threads:
        thread.join(timeout=5.0)

    assert overlaps == []
