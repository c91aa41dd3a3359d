"""Coordinator-side RPC proxy to the isolated storage worker."""

import asyncio
import logging
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any

from jiradb.storage import protocol
from jiradb.storage.channels import WorkerChannel
from jiradb.storage.protocol import (
    NoResponseError,
    ProxyOperationError,
    ProxyRequest,
    ProxyResponse,
    WorkerCreationFailedError,
    WorkerNotReadyError,
)

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    NOT_CREATED = "not_created"
    CREATING = "creating"
    READY_CHECK = "ready_check"
    READY = "ready"


class StorageProxy:
    """
    Request/response bridge to a single storage worker.

    The worker is created lazily on the first call. Concurrent callers that
    arrive while creation is in progress share that creation's outcome, so
    at most one worker exists per proxy. Every request gets a fresh id and
    waits for exactly one matching response. If the worker goes away, all
    in-flight calls fail with ``NoResponseError`` and the next call starts
    a new worker. Nothing is retried here.
    """

    def __init__(
        self,
        channel_factory: Callable[[], WorkerChannel],
        handshake_attempts: int = 50,
        handshake_interval: float = 0.1,
        poll_interval: float = 0.1,
        call_timeout: float | None = None,
    ):
        self.channel_factory = channel_factory
        self.handshake_attempts = handshake_attempts
        self.handshake_interval = handshake_interval
        self.poll_interval = poll_interval
        self.call_timeout = call_timeout

        self._state = WorkerState.NOT_CREATED
        self._channel: WorkerChannel | None = None
        self._creation: asyncio.Future | None = None
        self._pump_task: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self.workers_created = 0

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is WorkerState.READY

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def call(self, action: str, payload: Any = None) -> Any:
        """
        Run one storage action in the worker and return its ``data``.

        Raises:
            ProxyTransportError: The worker could not be started or did not answer
            ProxyOperationError: The worker answered with ``success=False``
        """
        await self._ensure_ready()

        channel = self._channel
        if channel is None:
            raise NoResponseError("Storage worker went away before the request was sent")

        response = await self._request(channel, action, payload, self.call_timeout)
        if not response.success:
            raise ProxyOperationError(response.error or f"Storage action {action} failed")
        return response.data

    async def close(self) -> None:
        """Stop the worker and fail anything still waiting on it."""
        channel = self._channel
        await self._teardown(NoResponseError("Storage proxy closed"))
        if channel is not None:
            logger.info("Storage worker shut down")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _ensure_ready(self) -> None:
        if self._state is WorkerState.READY:
            return

        if self._creation is not None:
            # Shielded so a cancelled waiter does not cancel the shared creation
            await asyncio.shield(self._creation)
            return

        creation = asyncio.get_running_loop().create_future()
        self._creation = creation
        self._state = WorkerState.CREATING
        try:
            await self._create_worker()
        except Exception as e:
            self._state = WorkerState.NOT_CREATED
            creation.set_exception(e)
            creation.exception()  # Mark retrieved when nobody else is waiting
            raise
        except asyncio.CancelledError:
            self._state = WorkerState.NOT_CREATED
            creation.set_exception(WorkerCreationFailedError("Worker creation was cancelled"))
            creation.exception()
            raise
        else:
            self._state = WorkerState.READY
            creation.set_result(None)
        finally:
            self._creation = None

    async def _create_worker(self) -> None:
        logger.info("Creating storage worker")
        channel = None
        try:
            channel = self.channel_factory()
            await asyncio.to_thread(channel.start)
        except Exception as e:
            logger.error(f"Failed to start storage worker: {e}")
            if channel is not None:
                await asyncio.to_thread(channel.close)
            raise WorkerCreationFailedError(f"Failed to start storage worker: {e}") from e

        self.workers_created += 1
        self._channel = channel
        self._state = WorkerState.READY_CHECK
        self._pump_task = asyncio.create_task(self._pump(channel))

        try:
            await self._handshake(channel)
        except WorkerNotReadyError as e:
            logger.error(f"Storage worker not ready: {e}")
            await self._teardown(NoResponseError("Storage worker failed its readiness check"))
            raise
        except asyncio.CancelledError:
            await self._teardown(NoResponseError("Storage worker creation was cancelled"))
            raise

        logger.info("Storage worker ready")

    async def _handshake(self, channel: WorkerChannel) -> None:
        for attempt in range(1, self.handshake_attempts + 1):
            try:
                response = await self._request(
                    channel, protocol.PING, None, self.handshake_interval
                )
            except NoResponseError as e:
                if self._channel is not channel:
                    raise WorkerNotReadyError(f"Storage worker exited during handshake: {e}") from e
                continue

            if response.success and response.data == protocol.PONG:
                logger.debug(f"Storage worker answered PING on attempt {attempt}")
                return

            logger.debug(f"Unexpected PING response on attempt {attempt}: {response.error}")
            await asyncio.sleep(self.handshake_interval)

        raise WorkerNotReadyError(
            f"Storage worker did not answer PING after {self.handshake_attempts} attempts"
        )

    async def _teardown(self, error: Exception) -> None:
        channel = self._channel
        pump = self._pump_task
        self._channel = None
        self._pump_task = None
        self._state = WorkerState.NOT_CREATED

        self._fail_pending(error)

        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        if channel is not None:
            await asyncio.to_thread(channel.close)

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def _request(
        self,
        channel: WorkerChannel,
        action: str,
        payload: Any,
        timeout: float | None,
    ) -> ProxyResponse:
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        envelope = ProxyRequest(action=action, payload=payload, request_id=request_id)
        try:
            try:
                await asyncio.to_thread(channel.send, envelope.model_dump(mode="json", by_alias=True))
            except Exception as e:
                raise NoResponseError(f"Could not send {action} to storage worker: {e}") from e

            try:
                message = await asyncio.wait_for(future, timeout)
            except TimeoutError as e:
                raise NoResponseError(f"No response to {action} within {timeout}s") from e
        finally:
            self._pending.pop(request_id, None)

        return ProxyResponse.model_validate(message)

    async def _pump(self, channel: WorkerChannel) -> None:
        """Route responses to their waiting callers; detect worker loss."""
        while True:
            try:
                message = await asyncio.to_thread(channel.receive, self.poll_interval)
            except Exception as e:
                logger.warning(f"Storage worker channel failed: {e}")
                message = None
                alive = False
            else:
                alive = message is not None or channel.is_alive()

            if message is not None:
                future = self._pending.get(message.get("requestId"))
                if future is None or future.done():
                    logger.debug(f"Dropping stale response {message.get('requestId')}")
                else:
                    future.set_result(message)
                continue

            if not alive:
                if channel is self._channel:
                    logger.error("Storage worker exited unexpectedly")
                    await self._teardown(NoResponseError("Storage worker exited before responding"))
                return

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
