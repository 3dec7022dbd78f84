"""Generation request handling: create, retry, cancel, query and delete.

Handlers validate and persist, hand processing to the dispatcher, and return
immediately. Credits are never charged here; the orchestrator charges them
once a generation completes.
"""

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional
from uuid import UUID

import structlog

from pixcraft.core.timezone import utcnow
from pixcraft.models.account import Account
from pixcraft.models.generation import (
    DEFAULT_MODEL,
    GenerationRecord,
    GenerationStatus,
    InvalidStateTransition,
    credits_for_image_count,
)
from pixcraft.services.exceptions import (
    GenerationNotFound,
    ImageProcessingError,
    InsufficientFunds,
    InvalidGenerationRequest,
    InvalidGenerationState,
)
from pixcraft.services.image_generation.prompt_validator import (
    normalize_parameters,
    validate_prompt,
)
from pixcraft.services.storage.artifact_store import ArtifactStore
from pixcraft.workers.dispatcher import GenerationDispatcher
from pixcraft.workers.generation_orchestrator import CANCELLED_REASON, GenerationOrchestrator

logger = structlog.get_logger(__name__)

ALLOWED_UPLOAD_TYPES = ("image/jpeg", "image/png", "image/webp")


@dataclass(frozen=True)
class RequestMeta:
    """Client details recorded on a generation."""

    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None


class GenerationService:
    """Collaborator-facing handlers around the generation lifecycle."""

    def __init__(
        self,
        uow_factory: Callable,
        orchestrator: GenerationOrchestrator,
        dispatcher: GenerationDispatcher,
        artifact_store: ArtifactStore,
        model_used: str = DEFAULT_MODEL,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ):
        self._uow_factory = uow_factory
        self._orchestrator = orchestrator
        self.dispatcher = dispatcher
        self._artifact_store = artifact_store
        self.model_used = model_used
        self.max_upload_bytes = max_upload_bytes

    @staticmethod
    def _ensure_affordable(account: Account, credits_required: int) -> None:
        if not account.is_premium_active and account.credits < credits_required:
            raise InsufficientFunds(account.id, required=credits_required, available=account.credits)

    async def create_generation(
        self,
        account: Account,
        prompt: Any,
        raw_parameters: Optional[Mapping[str, Any]] = None,
        input_image_url: Optional[str] = None,
        meta: Optional[RequestMeta] = None,
    ) -> GenerationRecord:
        """Validate a request, create a pending generation and queue it.

        Args:
            account: Requesting account
            prompt: Prompt text from the request
            raw_parameters: Parameter mapping, legacy names accepted
            input_image_url: Optional source image URL
            meta: Client details to record

        Returns:
            The pending generation

        Raises:
            InvalidGenerationRequest: Prompt or parameters invalid (nothing created)
            InsufficientFunds: Non-premium balance below the reserved credits
        """
        clean_prompt = validate_prompt(prompt)
        if input_image_url is not None and not isinstance(input_image_url, str):
            raise InvalidGenerationRequest("Input image URL must be a valid string")
        parameters = normalize_parameters(raw_parameters)
        credits_reserved = credits_for_image_count(parameters.image_count)

        self._ensure_affordable(account, credits_reserved)

        stored_input_url = None
        if input_image_url:
            stored_input_url = await self._artifact_store.materialize(
                input_image_url, f"input-{account.id}.jpg"
            )

        meta = meta or RequestMeta()
        record = GenerationRecord(
            owner_id=account.id,
            input_image_url=stored_input_url,
            prompt=clean_prompt,
            model_used=self.model_used,
            parameters=parameters.model_dump(),
            credits_reserved=credits_reserved,
            status=GenerationStatus.PENDING,
            client_ip=meta.client_ip,
            user_agent=meta.user_agent,
            device_info=meta.device_info,
        )

        async with await self._uow_factory() as uow:
            await uow.generations.add(record)

        logger.info(
            "generation.created",
            generation_id=str(record.id),
            owner_id=str(account.id),
            credits_reserved=credits_reserved,
            has_input_image=stored_input_url is not None,
        )

        await self.dispatcher.submit(record.id)
        return record

    async def get_generation(self, account: Account, generation_id: UUID) -> GenerationRecord:
        """Fetch a generation owned by ``account``.

        Raises:
            GenerationNotFound: Missing or owned by another account
        """
        async with await self._uow_factory() as uow:
            record = await uow.generations.get_for_owner(generation_id, account.id)
        if record is None:
            raise GenerationNotFound("Generation not found")
        return record

    async def list_generations(
        self,
        account: Account,
        status: Optional[GenerationStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[GenerationRecord], int]:
        """Page through an account's generations, newest first."""
        async with await self._uow_factory() as uow:
            return await uow.generations.list_by_owner(
                account.id, status=status, offset=(page - 1) * limit, limit=limit
            )

    async def generation_stats(self, account: Account) -> dict[str, list[dict]]:
        """Usage aggregates for an account.

        Returns:
            ``by_status``: counts, credits and average processing time per status
            ``by_model``: completed generations per model
            ``monthly``: counts and credits per month of the current UTC year
        """
        year_start = utcnow().replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        async with await self._uow_factory() as uow:
            return {
                "by_status": await uow.generations.stats_by_owner(account.id),
                "by_model": await uow.generations.stats_by_model(account.id),
                "monthly": await uow.generations.monthly_stats(account.id, since=year_start),
            }

    async def retry_generation(self, account: Account, generation_id: UUID) -> GenerationRecord:
        """Reset a failed generation to pending and queue it again.

        Raises:
            GenerationNotFound: Missing or owned by another account
            InvalidGenerationState: Generation is not failed
            InsufficientFunds: Non-premium balance below the reserved credits
        """
        record = await self.get_generation(account, generation_id)
        try:
            record.check_transition(GenerationStatus.PENDING)
        except InvalidStateTransition as e:
            raise InvalidGenerationState("Only failed generations can be retried") from e

        self._ensure_affordable(account, record.credits_reserved)

        async with await self._uow_factory() as uow:
            reset = await uow.generations.reset_for_retry(generation_id)
            record = await uow.generations.get_by_id(generation_id)
        if not reset or record is None:
            raise InvalidGenerationState("Only failed generations can be retried")

        logger.info("generation.retried", generation_id=str(generation_id))
        await self.dispatcher.submit(generation_id)
        return record

    async def cancel_generation(self, account: Account, generation_id: UUID) -> GenerationRecord:
        """Fail a pending or processing generation on the owner's request.

        Raises:
            GenerationNotFound: Missing or owned by another account
            InvalidGenerationState: Generation is already completed or failed
        """
        record = await self.get_generation(account, generation_id)
        try:
            record.check_transition(GenerationStatus.FAILED)
        except InvalidStateTransition as e:
            raise InvalidGenerationState(
                "Only pending or processing generations can be cancelled"
            ) from e

        if not await self._orchestrator.fail(generation_id, CANCELLED_REASON):
            raise InvalidGenerationState("Only pending or processing generations can be cancelled")

        logger.info("generation.cancelled", generation_id=str(generation_id), owner_id=str(account.id))
        return await self.get_generation(account, generation_id)

    async def delete_generation(self, account: Account, generation_id: UUID) -> None:
        """Delete a generation and, best-effort, the images it stored.

        Raises:
            GenerationNotFound: Missing or owned by another account
        """
        record = await self.get_generation(account, generation_id)

        urls = list(record.output_image_urls or [])
        if record.input_image_url:
            urls.append(record.input_image_url)
        for url in urls:
            await self._artifact_store.delete(url)

        async with await self._uow_factory() as uow:
            await uow.generations.delete(generation_id)

        logger.info("generation.deleted", generation_id=str(generation_id), owner_id=str(account.id))

    async def upload_reference_image(
        self, account: Account, data: bytes, content_type: Optional[str]
    ) -> str:
        """Store a client-uploaded reference image for later image-to-image requests.

        Returns:
            Public URL of the stored image

        Raises:
            InvalidGenerationRequest: Empty, oversized, wrong type or undecodable upload
            StorageError: Store write failed
        """
        if not data:
            raise InvalidGenerationRequest("Reference image is required")
        if len(data) > self.max_upload_bytes:
            raise InvalidGenerationRequest(
                f"File size exceeds limit of {self.max_upload_bytes} bytes"
            )
        if content_type not in ALLOWED_UPLOAD_TYPES:
            raise InvalidGenerationRequest(
                f"File type {content_type} not allowed. "
                f"Allowed types: {', '.join(ALLOWED_UPLOAD_TYPES)}"
            )

        try:
            url = await self._artifact_store.store_bytes(data, f"reference-{account.id}.jpg")
        except ImageProcessingError as e:
            raise InvalidGenerationRequest(str(e)) from e

        logger.info("reference_image.uploaded", owner_id=str(account.id), size=len(data), url=url)
        return url
