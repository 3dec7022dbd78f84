"""GenerationRecord entity - one image generation request and its lifecycle."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from pixcraft.core.timezone import utcnow

MIN_IMAGES_PER_REQUEST = 1
MAX_IMAGES_PER_REQUEST = 4
PROMPT_MAX_LENGTH = 1000
DEFAULT_MODEL = "black-forest-labs/flux-kontext-pro"


class GenerationStatus(str, Enum):
    """Generation lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[GenerationStatus, frozenset[GenerationStatus]] = {
    GenerationStatus.PROCESSING: frozenset({GenerationStatus.PENDING}),
    GenerationStatus.COMPLETED: frozenset({GenerationStatus.PROCESSING}),
    GenerationStatus.FAILED: frozenset({GenerationStatus.PENDING, GenerationStatus.PROCESSING}),
    GenerationStatus.PENDING: frozenset({GenerationStatus.FAILED}),
}


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid generation state transition."""

    pass


def credits_for_image_count(image_count: int | None) -> int:
    """One credit per requested image, clamped to the supported range."""
    count = image_count or MIN_IMAGES_PER_REQUEST
    return min(max(count, MIN_IMAGES_PER_REQUEST), MAX_IMAGES_PER_REQUEST)


class GenerationParameters(BaseModel):
    """Canonical snapshot of generation settings.

    Legacy request field names are mapped onto these fields by
    ``normalize_parameters`` before a record is created.
    """

    model_config = ConfigDict(frozen=True)

    width: int = PydanticField(default=1024, ge=512, le=2048)
    height: int = PydanticField(default=1024, ge=512, le=2048)
    guidance_scale: float = PydanticField(default=7.5, ge=1, le=20)
    num_inference_steps: int = PydanticField(default=25, ge=10, le=50)
    seed: Optional[int] = None
    style: str = PydanticField(default="photographic", max_length=50)
    negative_prompt: str = PydanticField(default="", max_length=PROMPT_MAX_LENGTH)
    quality: int = PydanticField(default=2, ge=1, le=4)
    image_count: int = PydanticField(
        default=MIN_IMAGES_PER_REQUEST, ge=MIN_IMAGES_PER_REQUEST, le=MAX_IMAGES_PER_REQUEST
    )


class GenerationRecord(SQLModel, table=True):
    """GenerationRecord tracks one user-initiated image generation request.

    Status changes are persisted through conditional updates in
    GenerationRepository; ALLOWED_TRANSITIONS is the single source for which
    status a record may be moved from.
    """

    __tablename__ = "generations"  # type: ignore[assignment]
    __table_args__ = (Index("ix_generations_owner_created", "owner_id", "created_at"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(foreign_key="accounts.id")
    input_image_url: Optional[str] = Field(default=None, max_length=2048)
    prompt: str = Field(max_length=PROMPT_MAX_LENGTH)
    model_used: str = Field(default=DEFAULT_MODEL, max_length=100)
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    credits_reserved: int = Field(ge=MIN_IMAGES_PER_REQUEST, le=MAX_IMAGES_PER_REQUEST)
    status: GenerationStatus = Field(default=GenerationStatus.PENDING, index=True)
    output_image_urls: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    failure_reason: Optional[str] = Field(default=None, max_length=1000)
    processing_started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    processing_duration_ms: Optional[int] = Field(default=None, ge=0)

    # Request metadata
    client_ip: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    device_info: Optional[str] = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def allowed_sources(cls, target: GenerationStatus) -> frozenset[GenerationStatus]:
        """Statuses from which a record may move to ``target``."""
        return ALLOWED_TRANSITIONS[target]

    def check_transition(self, target: GenerationStatus) -> None:
        """Raise InvalidStateTransition unless the record may move to ``target``.

        Raises:
            InvalidStateTransition: If current status is not an allowed source
        """
        allowed = self.allowed_sources(target)
        if self.status not in allowed:
            expected = " or ".join(sorted(s.value for s in allowed))
            raise InvalidStateTransition(
                f"Cannot move generation to {target.value} from {self.status.value}. "
                f"Generation must be {expected}."
            )

    @property
    def generation_parameters(self) -> GenerationParameters:
        """Parameters snapshot as the canonical model."""
        return GenerationParameters.model_validate(self.parameters)

    @property
    def image_url(self) -> Optional[str]:
        """First produced image, for clients that show a single result."""
        return self.output_image_urls[0] if self.output_image_urls else None
