"""Image generation API endpoints.

This module implements REST endpoints for the generation lifecycle:
- POST /api/generations - Accept a generation request (processed in the background)
- GET /api/generations - Paginated list of the caller's generations
- GET /api/generations/stats - Per-status counts, credits and processing time
- POST /api/generations/reference-image - Upload a reference image for image-to-image
- GET /api/generations/{generation_id} - Poll a single generation
- POST /api/generations/{generation_id}/retry - Re-queue a failed generation
- POST /api/generations/{generation_id}/cancel - Cancel a pending or processing generation
- DELETE /api/generations/{generation_id} - Delete a generation and its images

Every endpoint acts on behalf of the account resolved from the X-Account-Id header.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from pixcraft.api.dependencies import get_current_account, get_generation_service
from pixcraft.models.account import Account
from pixcraft.models.generation import GenerationRecord, GenerationStatus
from pixcraft.services.exceptions import (
    GenerationNotFound,
    InsufficientFunds,
    InvalidGenerationRequest,
    InvalidGenerationState,
    StorageError,
)
from pixcraft.services.generation_service import GenerationService, RequestMeta

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generations", tags=["generations"])


# Request/Response Models


class CreateGenerationRequest(BaseModel):
    """Request model for a new generation.

    ``parameters`` accepts both canonical and legacy field names
    (e.g. ``guidanceScale``, ``steps``, ``num_images``).
    """

    prompt: Any = Field(
        default=None,
        description="Text prompt (1-1000 characters after trimming)",
    )
    parameters: dict[str, Any] | None = Field(
        default=None,
        description="Generation settings; unknown keys are ignored",
    )
    input_image_url: str | None = Field(
        default=None,
        description="Optional source image URL for image-to-image generation",
    )
    device_info: str | None = Field(
        default=None,
        description="Client device description",
        max_length=255,
    )


class GenerationDTO(BaseModel):
    """Data Transfer Object for generation information in API responses."""

    id: UUID
    status: GenerationStatus = Field(
        ...,
        description="Lifecycle status (pending, processing, completed, failed)",
    )
    prompt: str
    model_used: str
    parameters: dict[str, Any]
    credits_reserved: int
    input_image_url: str | None = None
    output_image_urls: list[str] = Field(
        default_factory=list,
        description="Stored image URLs in provider order (empty unless completed)",
    )
    image_url: str | None = Field(
        default=None,
        description="First output image (null unless completed)",
    )
    failure_reason: str | None = None
    processing_duration_ms: int | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_record(cls, record: GenerationRecord) -> "GenerationDTO":
        return cls(
            id=record.id,
            status=record.status,
            prompt=record.prompt,
            model_used=record.model_used,
            parameters=record.parameters,
            credits_reserved=record.credits_reserved,
            input_image_url=record.input_image_url,
            output_image_urls=list(record.output_image_urls or []),
            image_url=record.image_url,
            failure_reason=record.failure_reason,
            processing_duration_ms=record.processing_duration_ms,
            created_at=record.created_at,
            completed_at=record.completed_at,
        )


class GenerationsResponse(BaseModel):
    """Response model for paginated generations list."""

    generations: list[GenerationDTO]
    total: int = Field(..., description="Total generations matching the filter")
    page: int
    limit: int
    pages: int


class GenerationStatsEntry(BaseModel):
    """Aggregates for one status."""

    status: GenerationStatus
    count: int
    total_credits: int
    avg_processing_ms: float | None = None


class ModelStatsEntry(BaseModel):
    """Completed generations for one model."""

    model: str
    count: int
    avg_processing_ms: float | None = None


class MonthlyStatsEntry(BaseModel):
    year: int
    month: int
    count: int
    total_credits: int


class GenerationStatsResponse(BaseModel):
    stats: list[GenerationStatsEntry]
    by_model: list[ModelStatsEntry] = []
    monthly: list[MonthlyStatsEntry] = []


class ReferenceImageResponse(BaseModel):
    url: str = Field(..., description="Public URL of the stored reference image")


def _raise_http_error(error: Exception) -> None:
    """Translate service errors to HTTP errors."""
    if isinstance(error, GenerationNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidGenerationState):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, InsufficientFunds):
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(error))
    if isinstance(error, InvalidGenerationRequest):
        raise HTTPException(status_code=422, detail=str(error))
    raise error


# API Endpoints


@router.post("", response_model=GenerationDTO, status_code=status.HTTP_202_ACCEPTED)
async def create_generation(
    body: CreateGenerationRequest,
    request: Request,
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationDTO:
    """Accept a generation request and return the pending record immediately.

    The client polls GET /api/generations/{id} until the status is
    completed or failed. Credits are charged only once the generation completes.

    Raises:
        HTTPException 402: Not enough credits (nothing created)
        HTTPException 422: Invalid prompt or parameters (nothing created)
    """
    meta = RequestMeta(
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device_info=body.device_info,
    )
    try:
        record = await service.create_generation(
            account,
            body.prompt,
            body.parameters,
            input_image_url=body.input_image_url,
            meta=meta,
        )
    except (InvalidGenerationRequest, InsufficientFunds) as e:
        logger.info(
            "generation.rejected",
            account_id=str(account.id),
            error_type=type(e).__name__,
            error_message=str(e),
        )
        _raise_http_error(e)

    return GenerationDTO.from_record(record)


@router.get("", response_model=GenerationsResponse)
async def list_generations(
    status_filter: GenerationStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationsResponse:
    """Caller's generations, newest first."""
    records, total = await service.list_generations(
        account, status=status_filter, page=page, limit=limit
    )
    return GenerationsResponse(
        generations=[GenerationDTO.from_record(r) for r in records],
        total=total,
        page=page,
        limit=limit,
        pages=(total + limit - 1) // limit,
    )


@router.get("/stats", response_model=GenerationStatsResponse)
async def generation_stats(
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationStatsResponse:
    stats = await service.generation_stats(account)
    return GenerationStatsResponse(
        stats=[GenerationStatsEntry(**entry) for entry in stats["by_status"]],
        by_model=[ModelStatsEntry(**entry) for entry in stats["by_model"]],
        monthly=[MonthlyStatsEntry(**entry) for entry in stats["monthly"]],
    )


@router.post(
    "/reference-image",
    response_model=ReferenceImageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_reference_image(
    request: Request,
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> ReferenceImageResponse:
    """Store a reference image sent as the raw request body.

    The Content-Type header must be image/jpeg, image/png or image/webp.

    Raises:
        HTTPException 422: Empty, oversized, unsupported or undecodable image
        HTTPException 503: Image store unavailable
    """
    data = await request.body()
    content_type = (request.headers.get("content-type") or "").split(";")[0].strip() or None
    try:
        url = await service.upload_reference_image(account, data, content_type)
    except InvalidGenerationRequest as e:
        _raise_http_error(e)
    except StorageError as e:
        logger.error("reference_image.store_failed", account_id=str(account.id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image storage is temporarily unavailable",
        )
    return ReferenceImageResponse(url=url)


@router.get("/{generation_id}", response_model=GenerationDTO)
async def get_generation(
    generation_id: UUID,
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationDTO:
    try:
        record = await service.get_generation(account, generation_id)
    except GenerationNotFound as e:
        _raise_http_error(e)
    return GenerationDTO.from_record(record)


@router.post(
    "/{generation_id}/retry", response_model=GenerationDTO, status_code=status.HTTP_202_ACCEPTED
)
async def retry_generation(
    generation_id: UUID,
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationDTO:
    """Re-queue a failed generation.

    Raises:
        HTTPException 402: Not enough credits
        HTTPException 404: Generation not found
        HTTPException 409: Generation is not failed
    """
    try:
        record = await service.retry_generation(account, generation_id)
    except (GenerationNotFound, InvalidGenerationState, InsufficientFunds) as e:
        _raise_http_error(e)
    return GenerationDTO.from_record(record)


@router.post("/{generation_id}/cancel", response_model=GenerationDTO)
async def cancel_generation(
    generation_id: UUID,
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationDTO:
    """Cancel a pending or processing generation.

    A provider call already in flight is not interrupted; its result is discarded.

    Raises:
        HTTPException 404: Generation not found
        HTTPException 409: Generation already completed or failed
    """
    try:
        record = await service.cancel_generation(account, generation_id)
    except (GenerationNotFound, InvalidGenerationState) as e:
        _raise_http_error(e)
    return GenerationDTO.from_record(record)


@router.delete("/{generation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_generation(
    generation_id: UUID,
    account: Account = Depends(get_current_account),
    service: GenerationService = Depends(get_generation_service),
) -> Response:
    try:
        await service.delete_generation(account, generation_id)
    except GenerationNotFound as e:
        _raise_http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
