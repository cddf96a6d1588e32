"""Best-effort mirroring of cache writes to the external store."""

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from loguru import logger


class ExternalMirror:
    """Runs each mirror job exactly once and never lets a failure escape.

    Without an executor jobs run inline and failures come back as warning strings.
    With an executor jobs are fire-and-forget; failures are only logged.
    """

    def __init__(self, executor: ThreadPoolExecutor | None = None) -> None:
        self._executor = executor
        self._pending: set[Future[Any]] = set()
        self._lock = threading.Lock()

    @classmethod
    def background(cls, workers: int) -> "ExternalMirror":
        return cls(ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mirror"))

    @property
    def inline(self) -> bool:
        return self._executor is None

    def _run(self, description: str, job: Callable[[], Any]) -> str | None:
        try:
            job()
        except Exception as e:
            logger.warning("External mirror failed ({}): {}", description, e)
            return f"External store not updated ({description}): {e}"
        logger.debug("Mirrored {}", description)
        return None

    def submit(self, description: str, job: Callable[[], Any]) -> list[str]:
        """Run or schedule a mirror job. Returns warnings for inline failures."""
        if self._executor is None:
            warning = self._run(description, job)
            return [warning] if warning else []

        future = self._executor.submit(self._run, description, job)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return []

    def _forget(self, future: Future[Any]) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: float | None = None) -> None:
        """Wait for scheduled jobs to finish."""
        with self._lock:
            pending = set(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
