"""Generation orchestrator: drives one generation from pending to a terminal state.

Processing steps for ``process(generation_id)``:

1. Claim: a single conditional UPDATE moves the record pending → processing.
   Losing the claim (record missing, already claimed, cancelled, terminal)
   makes the call a silent no-op, so duplicate dispatches are harmless.
2. Provider call (rate-limit retry lives inside ProviderClient).
3. Materialize every returned image into the artifact store. Images that
   cannot be materialized are dropped; the generation completes with the
   rest. If none survive, the generation fails.
4. Conditional UPDATE processing → completed. If the record was cancelled
   while the provider was running, this matches nothing and the late result
   is discarded.
5. Only after the completion write lands, charge the owner (unless premium).
   A failed charge is logged and never reverts the completed generation.

Any error in steps 2-3 fails the record with a readable reason. Nothing is
raised to the caller: the HTTP handler that triggered processing has already
responded.

## Why each step uses its own Unit of Work

The provider call can take tens of seconds. Holding a transaction open
across it would pin a connection and keep row locks, so every database step
opens and commits its own short UoW, and correctness rests on the
conditional updates rather than on one long transaction.
"""

import asyncio
from typing import Callable, Optional
from uuid import UUID

import structlog

from pixcraft.core.timezone import elapsed_ms, utcnow
from pixcraft.models.generation import GenerationRecord
from pixcraft.services.credit_ledger import CreditLedger
from pixcraft.services.exceptions import (
    InsufficientFunds,
    NoOutputProduced,
    ServiceError,
    StorageDegraded,
)
from pixcraft.services.image_generation.provider_client import ProviderClient
from pixcraft.services.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)

CANCELLED_REASON = "cancelled by user"
NO_IMAGES_REASON = "No images produced by the generation provider"
NO_STORED_IMAGES_REASON = "No generated images could be retrieved from the generation provider"


def failure_reason_for(error: BaseException) -> str:
    """Human-readable failure reason for a processing error."""
    if isinstance(error, ServiceError) and str(error):
        return str(error)
    message = str(error) or type(error).__name__
    return f"Generation failed: {message}"


class GenerationOrchestrator:
    """Runs the generation state machine for one record per ``process`` call."""

    def __init__(
        self,
        uow_factory: Callable,
        provider: ProviderClient,
        artifact_store: ArtifactStore,
        ledger: CreditLedger,
        store_timeout_seconds: float = 60.0,
    ):
        """Initialize orchestrator.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            provider: Generation provider adapter
            artifact_store: Artifact store adapter
            ledger: Credit ledger charged on completion
            store_timeout_seconds: Deadline for materializing a single image
        """
        self._uow_factory = uow_factory
        self._provider = provider
        self._artifact_store = artifact_store
        self._ledger = ledger
        self._store_timeout_seconds = store_timeout_seconds

    async def process(self, generation_id: UUID) -> bool:
        """Process a pending generation to completion or failure.

        Args:
            generation_id: Record to process

        Returns:
            True if the generation completed, False otherwise (including no-ops)
        """
        started_at = utcnow()

        async with await self._uow_factory() as uow:
            claimed = await uow.generations.claim_for_processing(generation_id, started_at)
            record = await uow.generations.get_by_id(generation_id) if claimed else None

        if record is None:
            logger.debug("generation.skipped", generation_id=str(generation_id))
            return False

        logger.info(
            "generation.started",
            generation_id=str(generation_id),
            owner_id=str(record.owner_id),
            credits_reserved=record.credits_reserved,
        )

        try:
            remote_urls = await self._provider.generate(
                prompt=record.prompt,
                input_image_url=record.input_image_url,
                parameters=record.generation_parameters,
            )
            if not remote_urls:
                raise NoOutputProduced(NO_IMAGES_REASON)

            stored_urls = await self._materialize_outputs(generation_id, remote_urls)
            if not stored_urls:
                raise NoOutputProduced(NO_STORED_IMAGES_REASON)

        except Exception as e:
            await self._record_failure(generation_id, started_at, e)
            return False

        completed_at = utcnow()
        duration_ms = elapsed_ms(started_at, completed_at)

        try:
            async with await self._uow_factory() as uow:
                completed = await uow.generations.mark_completed(
                    generation_id, stored_urls, completed_at, duration_ms
                )
        except Exception as e:
            await self._record_failure(generation_id, started_at, e)
            return False

        if not completed:
            logger.info(
                "generation.result_discarded",
                generation_id=str(generation_id),
                image_count=len(stored_urls),
            )
            return False

        logger.info(
            "generation.completed",
            generation_id=str(generation_id),
            image_count=len(stored_urls),
            duration_ms=duration_ms,
        )

        await self._charge_owner(record)
        return True

    async def fail(self, generation_id: UUID, reason: str) -> bool:
        """Move a pending or processing generation to failed.

        Used for cancellation and for generations that could not be queued.
        Does not interrupt an in-flight provider call; its result is
        discarded when it tries to complete the record.

        Returns:
            True if the record was failed by this call
        """
        failed_at = utcnow()
        async with await self._uow_factory() as uow:
            record = await uow.generations.get_by_id(generation_id)
            if record is None:
                return False
            failed = await uow.generations.mark_failed(
                generation_id,
                reason,
                failed_at,
                elapsed_ms(record.processing_started_at, failed_at),
            )

        if failed:
            logger.info("generation.failed", generation_id=str(generation_id), reason=reason)
        return failed

    async def _materialize_one(self, generation_id: UUID, index: int, remote_url: str):
        filename = f"generated-{generation_id}-{index + 1}.jpg"
        try:
            return await asyncio.wait_for(
                self._artifact_store.materialize(remote_url, filename),
                timeout=self._store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "artifact.timeout",
                generation_id=str(generation_id),
                url=remote_url,
                timeout_seconds=self._store_timeout_seconds,
            )
            return None
        except Exception as e:
            # One bad artifact drops that image only
            logger.error(
                "artifact.unexpected_error",
                generation_id=str(generation_id),
                url=remote_url,
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            return None

    async def _materialize_outputs(self, generation_id: UUID, remote_urls: list[str]) -> list[str]:
        """Materialize outputs in provider order, dropping the ones that fail."""
        results = await asyncio.gather(
            *(
                self._materialize_one(generation_id, index, url)
                for index, url in enumerate(remote_urls)
            )
        )
        stored = [url for url in results if url]

        dropped = len(remote_urls) - len(stored)
        if dropped and stored:
            degraded = StorageDegraded(
                f"{dropped} of {len(remote_urls)} generated images could not be stored"
            )
            logger.warning(
                "generation.storage_degraded",
                generation_id=str(generation_id),
                error_message=str(degraded),
                stored=len(stored),
                dropped=dropped,
            )
        return stored

    async def _record_failure(
        self, generation_id: UUID, started_at, error: BaseException
    ) -> None:
        reason = failure_reason_for(error)
        failed_at = utcnow()
        logger.error(
            "generation.failed",
            generation_id=str(generation_id),
            error_type=type(error).__name__,
            error_message=reason,
        )
        try:
            async with await self._uow_factory() as uow:
                failed = await uow.generations.mark_failed(
                    generation_id, reason, failed_at, elapsed_ms(started_at, failed_at)
                )
        except Exception as e:
            logger.error(
                "generation.failure_not_recorded",
                generation_id=str(generation_id),
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            return

        if not failed:
            logger.info("generation.failure_discarded", generation_id=str(generation_id))

    async def _charge_owner(self, record: GenerationRecord) -> Optional[int]:
        """Deduct reserved credits from a non-premium owner after completion."""
        async with await self._uow_factory() as uow:
            owner = await uow.accounts.get_by_id(record.owner_id)

        if owner is None:
            logger.warning(
                "credits.owner_missing",
                generation_id=str(record.id),
                owner_id=str(record.owner_id),
            )
            return None

        if owner.is_premium_active:
            logger.info(
                "credits.skipped_premium", generation_id=str(record.id), owner_id=str(owner.id)
            )
            return None

        try:
            return await self._ledger.deduct(
                owner.id,
                record.credits_reserved,
                generation_id=record.id,
                description=f"Image generation ({record.credits_reserved} images)",
            )
        except InsufficientFunds as e:
            logger.warning(
                "credits.deduction_failed",
                generation_id=str(record.id),
                owner_id=str(owner.id),
                required=e.required,
                available=e.available,
            )
        except Exception as e:
            logger.error(
                "credits.deduction_failed",
                generation_id=str(record.id),
                owner_id=str(owner.id),
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
        return None
