"""Generation repository for the pixcraft backend.

Status changes are single conditional UPDATE statements guarded by the
record's current status, so two concurrent writers can never both win the
same transition (e.g. two ``process`` calls claiming one pending record, or
a late provider result overwriting a cancellation).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixcraft.core.timezone import utcnow
from pixcraft.models.generation import GenerationRecord, GenerationStatus


class GenerationRepository:
    """Repository for GenerationRecord entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, generation_id: UUID) -> GenerationRecord | None:
        """Retrieve generation by ID, bypassing any stale identity-map copy."""
        result = await self.session.execute(
            select(GenerationRecord)
            .where(GenerationRecord.id == generation_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_owner(self, generation_id: UUID, owner_id: UUID) -> GenerationRecord | None:
        """Retrieve generation by ID only if it belongs to ``owner_id``."""
        result = await self.session.execute(
            select(GenerationRecord)
            .where(GenerationRecord.id == generation_id)  # type: ignore[arg-type]
            .where(GenerationRecord.owner_id == owner_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, record: GenerationRecord) -> GenerationRecord:
        """Persist new generation record.

        Args:
            record: GenerationRecord entity to persist

        Returns:
            Persisted record with generated ID
        """
        self.session.add(record)
        await self.session.flush()
        return record

    async def _transition(
        self, generation_id: UUID, target: GenerationStatus, **values
    ) -> bool:
        """Move a record to ``target`` only if its current status allows it.

        Returns:
            True if exactly one row changed, False if the record is missing or
            its status is not an allowed source for ``target``
        """
        sources = GenerationRecord.allowed_sources(target)
        result = await self.session.execute(
            update(GenerationRecord)
            .where(GenerationRecord.id == generation_id)  # type: ignore[arg-type]
            .where(GenerationRecord.status.in_(list(sources)))  # type: ignore[attr-defined]
            .values(status=target, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim_for_processing(self, generation_id: UUID, started_at: datetime) -> bool:
        """Atomically move pending → processing.

        Args:
            generation_id: Record to claim
            started_at: Processing start timestamp to persist

        Returns:
            True if this caller won the claim, False otherwise
        """
        return await self._transition(
            generation_id, GenerationStatus.PROCESSING, processing_started_at=started_at
        )

    async def mark_completed(
        self,
        generation_id: UUID,
        output_image_urls: list[str],
        completed_at: datetime,
        duration_ms: int | None,
    ) -> bool:
        """Atomically move processing → completed with produced images.

        Raises:
            ValueError: If output_image_urls is empty

        Returns:
            False if the record left processing meanwhile (e.g. cancelled)
        """
        if not output_image_urls:
            raise ValueError("output_image_urls cannot be empty")

        return await self._transition(
            generation_id,
            GenerationStatus.COMPLETED,
            output_image_urls=list(output_image_urls),
            completed_at=completed_at,
            processing_duration_ms=duration_ms,
        )

    async def mark_failed(
        self,
        generation_id: UUID,
        reason: str,
        failed_at: datetime,
        duration_ms: int | None = None,
    ) -> bool:
        """Atomically move pending/processing → failed.

        Args:
            generation_id: Record to fail
            reason: Human-readable failure reason (truncated to 1000 characters)
            failed_at: Terminal transition timestamp
            duration_ms: Processing duration, if processing had started

        Returns:
            False if the record was already terminal
        """
        return await self._transition(
            generation_id,
            GenerationStatus.FAILED,
            failure_reason=reason[:1000],
            completed_at=failed_at,
            processing_duration_ms=duration_ms,
            output_image_urls=[],
        )

    async def reset_for_retry(self, generation_id: UUID) -> bool:
        """Atomically move failed → pending, clearing every mutable field.

        id, owner_id, prompt, parameters and credits_reserved are untouched.
        """
        return await self._transition(
            generation_id,
            GenerationStatus.PENDING,
            failure_reason=None,
            output_image_urls=[],
            processing_started_at=None,
            completed_at=None,
            processing_duration_ms=None,
        )

    async def list_by_owner(
        self,
        owner_id: UUID,
        status: GenerationStatus | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[GenerationRecord], int]:
        """Retrieve an owner's generations with pagination and total count.

        Returns:
            Tuple of (records newest first, total matching count)
        """
        filters = [GenerationRecord.owner_id == owner_id]
        if status is not None:
            filters.append(GenerationRecord.status == status)

        count_result = await self.session.execute(
            select(func.count(GenerationRecord.id)).where(*filters)  # type: ignore[arg-type]
        )
        total = count_result.scalar() or 0

        data_result = await self.session.execute(
            select(GenerationRecord)
            .where(*filters)  # type: ignore[arg-type]
            .order_by(GenerationRecord.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(data_result.scalars().all()), total

    async def stats_by_owner(self, owner_id: UUID) -> list[dict]:
        """Aggregate an owner's generations per status.

        Returns:
            One dict per status present: status, count, total_credits,
            avg_processing_ms (None when no record has a duration)
        """
        result = await self.session.execute(
            select(
                GenerationRecord.status,
                func.count(GenerationRecord.id),
                func.coalesce(func.sum(GenerationRecord.credits_reserved), 0),
                func.avg(GenerationRecord.processing_duration_ms),
            )
            .where(GenerationRecord.owner_id == owner_id)  # type: ignore[arg-type]
            .group_by(GenerationRecord.status)
        )
        return [
            {
                "status": status,
                "count": count,
                "total_credits": int(total_credits),
                "avg_processing_ms": float(avg_ms) if avg_ms is not None else None,
            }
            for status, count, total_credits, avg_ms in result.all()
        ]

    async def stats_by_model(self, owner_id: UUID) -> list[dict]:
        """Aggregate an owner's completed generations per model.

        Returns:
            One dict per model: model, count, avg_processing_ms
        """
        result = await self.session.execute(
            select(
                GenerationRecord.model_used,
                func.count(GenerationRecord.id),
                func.avg(GenerationRecord.processing_duration_ms),
            )
            .where(
                GenerationRecord.owner_id == owner_id,  # type: ignore[arg-type]
                GenerationRecord.status == GenerationStatus.COMPLETED,  # type: ignore[arg-type]
            )
            .group_by(GenerationRecord.model_used)
            .order_by(GenerationRecord.model_used)
        )
        return [
            {
                "model": model,
                "count": count,
                "avg_processing_ms": float(avg_ms) if avg_ms is not None else None,
            }
            for model, count, avg_ms in result.all()
        ]

    async def monthly_stats(self, owner_id: UUID, since: datetime) -> list[dict]:
        """Count and credits per calendar month for generations created at or after ``since``.

        Months are bucketed in Python so the query stays portable between
        PostgreSQL and SQLite.

        Returns:
            One dict per month with activity, oldest first: year, month,
            count, total_credits
        """
        result = await self.session.execute(
            select(GenerationRecord.created_at, GenerationRecord.credits_reserved).where(
                GenerationRecord.owner_id == owner_id,  # type: ignore[arg-type]
                GenerationRecord.created_at >= since,  # type: ignore[arg-type,operator]
            )
        )
        months: dict[tuple[int, int], dict] = {}
        for created_at, credits in result.all():
            key = (created_at.year, created_at.month)
            entry = months.setdefault(
                key, {"year": key[0], "month": key[1], "count": 0, "total_credits": 0}
            )
            entry["count"] += 1
            entry["total_credits"] += credits or 0
        return [months[key] for key in sorted(months)]

    async def delete(self, generation_id: UUID) -> None:
        """Physically delete a generation row."""
        await self.session.execute(
            delete(GenerationRecord).where(GenerationRecord.id == generation_id)  # type: ignore[arg-type]
        )

    async def list_pending_ids(self, limit: int = 1000) -> list[UUID]:
        """IDs of pending records, oldest first."""
        result = await self.session.execute(
            select(GenerationRecord.id)
            .where(GenerationRecord.status == GenerationStatus.PENDING)  # type: ignore[arg-type]
            .order_by(GenerationRecord.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def fail_orphaned_processing(self, reason: str) -> int:
        """Fail every record left in processing by a previous process.

        Returns:
            Number of records failed
        """
        result = await self.session.execute(
            update(GenerationRecord)
            .where(GenerationRecord.status == GenerationStatus.PROCESSING)  # type: ignore[arg-type]
            .values(
                status=GenerationStatus.FAILED,
                failure_reason=reason,
                completed_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def count_by_status(self, status: GenerationStatus) -> int:
        """Number of records currently in ``status`` across all owners."""
        result = await self.session.execute(
            select(func.count(GenerationRecord.id)).where(  # type: ignore[arg-type]
                GenerationRecord.status == status  # type: ignore[arg-type]
            )
        )
        return result.scalar() or 0
