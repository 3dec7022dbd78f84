"""Bounded in-process dispatcher for generation processing.

Request handlers submit generation IDs without waiting; a fixed pool of
worker coroutines drains the queue and runs the orchestrator. The queue is
bounded so load cannot spawn unbounded concurrent provider calls.
"""

import asyncio
from uuid import UUID

import structlog

from pixcraft.workers.generation_orchestrator import GenerationOrchestrator

logger = structlog.get_logger(__name__)

QUEUE_FULL_REASON = "Generation queue is full, please retry later"


class GenerationDispatcher:
    """Fire-and-forget submission onto a bounded worker pool."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        worker_count: int = 4,
        queue_size: int = 100,
    ):
        self.orchestrator = orchestrator
        self.worker_count = worker_count
        self._queue: asyncio.Queue[UUID] = asyncio.Queue(maxsize=queue_size)

    @property
    def pending_count(self) -> int:
        """Number of submitted generations not yet picked up by a worker."""
        return self._queue.qsize()

    async def submit(self, generation_id: UUID) -> bool:
        """Queue a generation for processing without waiting for it.

        A full queue fails the generation so the client can retry it later
        instead of polling a record that will never move.

        Returns:
            True if queued
        """
        try:
            self._queue.put_nowait(generation_id)
        except asyncio.QueueFull:
            logger.warning(
                "dispatcher.queue_full",
                generation_id=str(generation_id),
                queue_size=self._queue.maxsize,
            )
            await self.orchestrator.fail(generation_id, QUEUE_FULL_REASON)
            return False

        logger.debug(
            "dispatcher.submitted", generation_id=str(generation_id), queued=self.pending_count
        )
        return True

    async def run_worker(self, worker_name: str = "generation-worker") -> None:
        """Worker loop: process queued generations until cancelled.

        Args:
            worker_name: Name used in log events
        """
        logger.info("worker.started", worker=worker_name)
        try:
            while True:
                generation_id = await self._queue.get()
                try:
                    await self.orchestrator.process(generation_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Orchestrator handles its own failures; this is a last resort
                    logger.error(
                        "worker.error",
                        worker=worker_name,
                        generation_id=str(generation_id),
                        error_type=type(e).__name__,
                        error_message=str(e),
                        exc_info=True,
                    )
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("worker.stopped", worker=worker_name)
            raise

    async def join(self) -> None:
        """Wait until every queued generation has been processed."""
        await self._queue.join()


INTERRUPTED_REASON = "Generation interrupted by server restart"


async def recover_interrupted_generations(
    uow_factory, dispatcher: GenerationDispatcher | None = None
) -> tuple[int, int]:
    """Clean up after a restart.

    Generations left in 'processing' by a previous process cannot be resumed
    (the provider call died with it) and are failed, so no credits are ever
    charged for them. Generations still 'pending' were accepted but never
    picked up; they are re-submitted when a dispatcher is given.

    Args:
        uow_factory: Factory producing UnitOfWork instances
        dispatcher: Dispatcher to re-submit pending generations to

    Returns:
        Tuple of (failed orphaned count, re-submitted pending count)
    """
    async with await uow_factory() as uow:
        failed = await uow.generations.fail_orphaned_processing(INTERRUPTED_REASON)
        pending_ids = await uow.generations.list_pending_ids() if dispatcher else []

    resubmitted = 0
    for generation_id in pending_ids:
        if await dispatcher.submit(generation_id):  # type: ignore[union-attr]
            resubmitted += 1

    if failed or resubmitted:
        logger.info(
            "worker.recovery",
            orphaned_generations_failed=failed,
            pending_generations_resubmitted=resubmitted,
        )
    return failed, resubmitted
