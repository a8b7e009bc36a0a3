"""Named thread pools so key workers never wait on their own pool."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Dict

KEY_POOL = "keys"
SUBRESOURCE_POOL = "subresources"


class ThreadPoolManager:
    """Lazily create one executor per role and shut them all down together.

    Key pipelines run on ``KEY_POOL``; the fetches a pipeline fans out run on
    ``SUBRESOURCE_POOL``. Sharing one pool would let every key worker block
    on sub-fetches that have no free thread to run on.
    """

    def __init__(self, key_workers: int = 4, fanout: int = 3) -> None:
        if key_workers < 1:
            raise ValueError("key_workers must be >= 1")
        self.key_workers = key_workers
        self.fanout = max(1, fanout)
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._lock = Lock()

    def get(self, role: str) -> ThreadPoolExecutor:
        with self._lock:
            executor = self._executors.get(role)
            if executor is None:
                executor = ThreadPoolExecutor(
                    max_workers=self._workers_for(role),
                    thread_name_prefix=f"cdr-{role}",
                )
                self._executors[role] = executor
            return executor

    def keys(self) -> ThreadPoolExecutor:
        return self.get(KEY_POOL)

    def subresources(self) -> ThreadPoolExecutor:
        return self.get(SUBRESOURCE_POOL)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=wait, cancel_futures=not wait)

    def _workers_for(self, role: str) -> int:
        if role == SUBRESOURCE_POOL:
            return self.key_workers * self.fanout
        return self.key_workers


__all__ = ["KEY_POOL", "SUBRESOURCE_POOL", "ThreadPoolManager"]
