"""Transports carrying envelopes between the coordinator and the storage worker."""

import logging
import multiprocessing as mp
import queue
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

from jiradb.config import Settings
from jiradb.storage.worker import run_worker

logger = logging.getLogger(__name__)

JOIN_TIMEOUT_SECONDS = 5.0


class WorkerChannel(ABC):
    """
    A started worker plus the two queues used to talk to it.

    All methods are blocking; the proxy calls them through
    ``asyncio.to_thread``.
    """

    @abstractmethod
    def start(self) -> None:
        """Start the worker. Raises if it cannot be started."""

    @abstractmethod
    def send(self, message: dict[str, Any] | None) -> None:
        """Enqueue a request envelope (``None`` asks the worker to stop)."""

    @abstractmethod
    def receive(self, timeout: float) -> dict[str, Any] | None:
        """Next response envelope, or None if nothing arrived within ``timeout``."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the worker is still running."""

    @abstractmethod
    def close(self) -> None:
        """Stop the worker and release its resources."""


class ProcessWorkerChannel(WorkerChannel):
    """Worker in a separate process (spawn start method)."""

    def __init__(self, database_url: str, snapshot_path: Path | None = None):
        self.database_url = database_url
        self.snapshot_path = snapshot_path
        self._ctx = mp.get_context("spawn")
        self._requests = self._ctx.Queue()
        self._responses = self._ctx.Queue()
        self._process: mp.process.BaseProcess | None = None

    def start(self) -> None:
        self._process = self._ctx.Process(
            target=run_worker,
            args=(self._requests, self._responses, self.database_url, self.snapshot_path),
            name="jiradb-storage-worker",
            daemon=True,
        )
        self._process.start()
        logger.info(f"Storage worker process started (pid={self._process.pid})")

    def send(self, message: dict[str, Any] | None) -> None:
        self._requests.put(message)

    def receive(self, timeout: float) -> dict[str, Any] | None:
        try:
            return self._responses.get(timeout=timeout)
        except queue.Empty:
            return None

    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def close(self) -> None:
        if self._process is not None:
            if self._process.is_alive():
                self._requests.put(None)
                self._process.join(JOIN_TIMEOUT_SECONDS)
            if self._process.is_alive():
                logger.warning("Storage worker did not stop; terminating")
                self._process.terminate()
                self._process.join(JOIN_TIMEOUT_SECONDS)
            self._process = None

        for q in (self._requests, self._responses):
            q.cancel_join_thread()
            q.close()


class ThreadWorkerChannel(WorkerChannel):
    """Worker on a daemon thread with its own event loop."""

    def __init__(self, database_url: str, snapshot_path: Path | None = None):
        self.database_url = database_url
        self.snapshot_path = snapshot_path
        self._requests: queue.Queue = queue.Queue()
        self._responses: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=run_worker,
            args=(self._requests, self._responses, self.database_url, self.snapshot_path),
            name="jiradb-storage-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info("Storage worker thread started")

    def send(self, message: dict[str, Any] | None) -> None:
        self._requests.put(message)

    def receive(self, timeout: float) -> dict[str, Any] | None:
        try:
            return self._responses.get(timeout=timeout)
        except queue.Empty:
            return None

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def close(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self._requests.put(None)
            self._thread.join(JOIN_TIMEOUT_SECONDS)
        self._thread = None


def channel_factory_from_settings(settings: Settings) -> Callable[[], WorkerChannel]:
    """Build the channel factory matching ``storage_worker_mode``."""
    channel_cls = (
        ProcessWorkerChannel if settings.storage_worker_mode == "process" else ThreadWorkerChannel
    )

    def factory() -> WorkerChannel:
        return channel_cls(settings.storage_database_url, settings.storage_snapshot_path)

    return factory
