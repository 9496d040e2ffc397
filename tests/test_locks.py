from __future__ import annotations

import threading
import time

from policyquorum.locks import KeyedLock


def test_same_key_serializes() -> None:
    locks = KeyedLock()
    active = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal active, peak
        with locks.hold("pol-1"):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with guard:
                active -= 1

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1


def test_different_keys_do_not_block() -> None:
    locks = KeyedLock()
    entered = threading.Event()

    def other() -> None:
        with locks.hold("pol-2"):
            entered.set()

    with locks.hold("pol-1"):
        thread = threading.Thread(target=other)
        thread.start()
        assert entered.wait(timeout=2)
        thread.join()


def test_entries_are_released() -> None:
    locks = KeyedLock()
    with locks.hold("pol-1"):
        assert len(locks) == 1
    assert len(locks) == 0
