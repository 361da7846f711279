"""Per-conversation FIFO queue that serializes message sends."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from uuid import UUID

import structlog

from ..domain.errors import IllegalStateError

logger = structlog.get_logger()


@dataclass
class QueuedSend:
    """A send waiting for its turn in a conversation."""

    conversation_id: UUID
    task: Callable[..., Awaitable[Any]]
    args: tuple
    kwargs: dict
    future: asyncio.Future
    sequence_number: int


class SendQueue:
    """Runs sends one at a time per conversation, in submission order.

    Conversations are independent; ``max_concurrent`` caps how many sends run
    at once across all of them. There is no timeout here: any deadline
    belongs to the completion client's transport.
    """

    def __init__(self, max_concurrent: int = 10) -> None:
        self.max_concurrent = max_concurrent
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self.queues: Dict[UUID, asyncio.Queue] = {}
        self._workers: Dict[UUID, asyncio.Task] = {}
        self._sequence_counters: Dict[UUID, int] = {}
        self._pending: Dict[UUID, int] = {}
        logger.info("send_queue_initialized", max_concurrent=max_concurrent)

    def pending_count(self, conversation_id: UUID) -> int:
        """Sends queued or running for a conversation."""
        return self._pending.get(conversation_id, 0)

    @property
    def conversations(self) -> Set[UUID]:
        return set(self.queues)

    def _ensure_worker(self, conversation_id: UUID) -> asyncio.Queue:
        """Queue and worker for a conversation; call with the lock held."""
        if conversation_id not in self.queues:
            queue: asyncio.Queue = asyncio.Queue()
            self.queues[conversation_id] = queue
            self._sequence_counters[conversation_id] = 0
            self._workers[conversation_id] = asyncio.create_task(
                self._process_queue(conversation_id, queue)
            )
        return self.queues[conversation_id]

    async def _process_queue(self, conversation_id: UUID, queue: asyncio.Queue) -> None:
        request: Optional[QueuedSend] = None
        try:
            while True:
                request = await queue.get()
                try:
                    if not request.future.done():
                        async with self.semaphore:
                            await self._run(request)
                finally:
                    self._pending[conversation_id] -= 1
                    queue.task_done()
                request = None

                async with self._lock:
                    if queue.empty() and self._pending[conversation_id] == 0:
                        self._forget(conversation_id)
                        logger.debug("send_queue_released", conversation_id=str(conversation_id))
                        return
        except asyncio.CancelledError:
            if request is not None and not request.future.done():
                request.future.set_exception(IllegalStateError("Send cancelled: queue shut down"))
            logger.info("send_queue_worker_cancelled", conversation_id=str(conversation_id))
            raise

    async def _run(self, request: QueuedSend) -> None:
        try:
            result = await request.task(*request.args, **request.kwargs)
        except Exception as e:
            if not request.future.done():
                request.future.set_exception(e)
            logger.debug(
                "queued_send_failed",
                conversation_id=str(request.conversation_id),
                sequence=request.sequence_number,
                error=str(e),
            )
        else:
            if not request.future.done():
                request.future.set_result(result)

    def _forget(self, conversation_id: UUID) -> None:
        self.queues.pop(conversation_id, None)
        self._workers.pop(conversation_id, None)
        self._sequence_counters.pop(conversation_id, None)
        self._pending.pop(conversation_id, None)

    async def submit(
        self,
        conversation_id: UUID,
        task: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Enqueue a send and wait for its result."""
        future = asyncio.get_running_loop().create_future()
        async with self._lock:
            queue = self._ensure_worker(conversation_id)
            sequence_number = self._sequence_counters[conversation_id]
            self._sequence_counters[conversation_id] += 1
            self._pending[conversation_id] = self._pending.get(conversation_id, 0) + 1
            queue.put_nowait(
                QueuedSend(
                    conversation_id=conversation_id,
                    task=task,
                    args=args,
                    kwargs=kwargs,
                    future=future,
                    sequence_number=sequence_number,
                )
            )
        logger.debug(
            "send_enqueued",
            conversation_id=str(conversation_id),
            sequence=sequence_number,
        )
        # The send keeps running if the caller goes away.
        return await asyncio.shield(future)

    async def cleanup(self) -> None:
        """Cancel every worker, fail every queued send and forget all queues."""
        async with self._lock:
            workers = list(self._workers.values())
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            if workers:
                await asyncio.gather(*workers, return_exceptions=True)
            dropped = 0
            for queue in self.queues.values():
                while not queue.empty():
                    request: QueuedSend = queue.get_nowait()
                    if not request.future.done():
                        request.future.set_exception(IllegalStateError("Send queue shut down"))
                        dropped += 1
            self.queues.clear()
            self._workers.clear()
            self._sequence_counters.clear()
            self._pending.clear()
            logger.info("send_queue_cleaned_up", dropped=dropped)
