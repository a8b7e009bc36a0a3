from __future__ import annotations

import threading

import pytest

from cdr_fetcher.engine.thread_pool import KEY_POOL, SUBRESOURCE_POOL, ThreadPoolManager


def test_roles_get_separate_sized_pools() -> None:
    manager = ThreadPoolManager(key_workers=3, fanout=3)
    try:
        assert manager.keys() is manager.get(KEY_POOL)
        assert manager.subresources() is manager.get(SUBRESOURCE_POOL)
        assert manager.keys() is not manager.subresources()
        assert manager.keys()._max_workers == 3
        assert manager.subresources()._max_workers == 9
    finally:
        manager.shutdown()


def test_key_workers_can_wait_on_sub_fetches() -> None:
    manager = ThreadPoolManager(key_workers=2, fanout=2)

    def key_job(n: int) -> list[str]:
        futures = [manager.subresources().submit(threading.current_thread) for _ in range(2)]
        return [f.result(timeout=5).name for f in futures]

    try:
        results = [manager.keys().submit(key_job, n) for n in range(4)]
        names = [name for future in results for name in future.result(timeout=5)]
    finally:
        manager.shutdown()

    assert len(names) == 8
    assert all(name.startswith("cdr-subresources") for name in names)


def test_shutdown_forgets_pools() -> None:
    manager = ThreadPoolManager(key_workers=1)
    first = manager.keys()
    manager.shutdown()
    second = manager.keys()
    try:
        assert second is not first
    finally:
        manager.shutdown()


def test_rejects_zero_workers() -> None:
    with pytest.raises(ValueError):
        ThreadPoolManager(key_workers=0)
