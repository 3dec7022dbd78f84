"""GenerationOrchestrator tests.

Covers the processing pipeline end to end against the test database, with
the Replicate runner scripted and images served by an httpx mock transport:
- Completion with materialized outputs and a single credit deduction
- Rate-limit retry, provider failure, partial materialization
- Premium accounts are never charged
- Cancellation wins over late provider results
"""

import asyncio

import pytest

from conftest import IMAGE_HOST, PUBLIC_BASE_URL, create_account, make_oversized_png
from pixcraft.core.timezone import utcnow
from pixcraft.models.credit_transaction import CreditTransactionKind
from pixcraft.models.generation import GenerationParameters, GenerationRecord, GenerationStatus
from pixcraft.services.image_generation.provider_client import OVERLOADED_MESSAGE
from pixcraft.workers.generation_orchestrator import (
    CANCELLED_REASON,
    NO_IMAGES_REASON,
    NO_STORED_IMAGES_REASON,
)


async def add_pending(uow_factory, owner_id, image_count: int = 1, **kwargs) -> GenerationRecord:
    record = GenerationRecord(
        owner_id=owner_id,
        prompt="An astronaut riding a horse",
        parameters=GenerationParameters(image_count=image_count).model_dump(),
        credits_reserved=image_count,
        **kwargs,
    )
    async with await uow_factory() as uow:
        await uow.generations.add(record)
    return record


async def load(uow_factory, generation_id) -> GenerationRecord:
    async with await uow_factory() as uow:
        return await uow.generations.get_by_id(generation_id)


async def balance(uow_factory, account_id) -> int:
    async with await uow_factory() as uow:
        return await uow.accounts.get_balance(account_id)


async def charges(uow_factory, generation_id):
    async with await uow_factory() as uow:
        return await uow.credit_transactions.list_for_generation(
            generation_id, kind=CreditTransactionKind.GENERATION
        )


def serve_outputs(image_server, count: int) -> list[str]:
    return [image_server.add(f"{IMAGE_HOST}/out-{i}.png") for i in range(count)]


@pytest.mark.asyncio
async def test_two_images_complete_and_charge_two_credits(
    orchestrator, uow_factory, account, provider_runner, image_server
):
    """Two outputs materialize: completed with two stored URLs, two credits charged once."""
    record = await add_pending(uow_factory, account.id, image_count=2)
    provider_runner.default = serve_outputs(image_server, 2)

    assert await orchestrator.process(record.id) is True

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert len(stored.output_image_urls) == 2
    assert all(url.startswith(PUBLIC_BASE_URL) for url in stored.output_image_urls)
    assert stored.failure_reason is None
    assert stored.processing_started_at is not None
    assert stored.completed_at is not None
    assert stored.processing_duration_ms is not None

    assert await balance(uow_factory, account.id) == 8
    transactions = await charges(uow_factory, record.id)
    assert len(transactions) == 1
    assert transactions[0].amount == -2
    assert transactions[0].balance_after == 8


@pytest.mark.asyncio
async def test_rate_limited_twice_then_completes(
    orchestrator, uow_factory, account, provider_runner, image_server, sleeps
):
    record = await add_pending(uow_factory, account.id)
    provider_runner.outcomes = [
        Exception("429 Too Many Requests"),
        Exception("429 Too Many Requests"),
        serve_outputs(image_server, 1),
    ]

    assert await orchestrator.process(record.id) is True

    assert (await load(uow_factory, record.id)).status == GenerationStatus.COMPLETED
    assert len(provider_runner.calls) == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_provider_error_fails_without_charge(orchestrator, uow_factory, account, provider_runner):
    record = await add_pending(uow_factory, account.id)
    provider_runner.outcomes = [Exception("Model version does not exist")]

    assert await orchestrator.process(record.id) is False

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.FAILED
    assert "unavailable" in stored.failure_reason
    assert stored.output_image_urls == []
    assert len(provider_runner.calls) == 1
    assert await balance(uow_factory, account.id) == 10
    assert await charges(uow_factory, record.id) == []


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_fails_as_overloaded(
    orchestrator, uow_factory, account, provider_runner
):
    record = await add_pending(uow_factory, account.id)
    provider_runner.default = Exception("rate limit reached")

    assert await orchestrator.process(record.id) is False

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.failure_reason == OVERLOADED_MESSAGE
    assert len(provider_runner.calls) == 4


@pytest.mark.asyncio
async def test_partial_materialization_completes_with_survivors(
    orchestrator, uow_factory, account, provider_runner, image_server
):
    """One of three outputs cannot be fetched: completed with the other two, in order."""
    record = await add_pending(uow_factory, account.id, image_count=3)
    first, _, third = serve_outputs(image_server, 3)
    provider_runner.default = [first, f"{IMAGE_HOST}/vanished.png", third]

    assert await orchestrator.process(record.id) is True

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert len(stored.output_image_urls) == 2
    assert await balance(uow_factory, account.id) == 7


@pytest.mark.asyncio
async def test_oversized_output_is_dropped_and_rest_delivered(
    orchestrator, uow_factory, account, provider_runner, image_server
):
    record = await add_pending(uow_factory, account.id, image_count=2)
    [ok] = serve_outputs(image_server, 1)
    bomb = image_server.add(f"{IMAGE_HOST}/bomb.png", make_oversized_png())
    provider_runner.default = [ok, bomb]

    assert await orchestrator.process(record.id) is True

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert len(stored.output_image_urls) == 1
    assert stored.output_image_urls[0].startswith(PUBLIC_BASE_URL)


@pytest.mark.asyncio
async def test_unexpected_materialize_error_drops_only_that_image(
    orchestrator, uow_factory, account, provider_runner, image_server, artifact_store, monkeypatch
):
    record = await add_pending(uow_factory, account.id, image_count=2)
    first, second = serve_outputs(image_server, 2)
    provider_runner.default = [first, second]
    materialize = artifact_store.materialize

    async def flaky_materialize(remote_url, filename):
        if remote_url == second:
            raise RuntimeError("unexpected store bug")
        return await materialize(remote_url, filename)

    monkeypatch.setattr(artifact_store, "materialize", flaky_materialize)

    assert await orchestrator.process(record.id) is True

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert len(stored.output_image_urls) == 1


@pytest.mark.asyncio
async def test_premium_account_is_not_charged(
    orchestrator, uow_factory, premium_account, provider_runner, image_server
):
    record = await add_pending(uow_factory, premium_account.id, image_count=2)
    provider_runner.default = serve_outputs(image_server, 2)

    assert await orchestrator.process(record.id) is True

    assert (await load(uow_factory, record.id)).status == GenerationStatus.COMPLETED
    assert await balance(uow_factory, premium_account.id) == 0
    assert await charges(uow_factory, record.id) == []


@pytest.mark.asyncio
async def test_expired_premium_is_charged(orchestrator, uow_factory, provider_runner, image_server):
    from datetime import timedelta

    lapsed = await create_account(
        uow_factory,
        email="lapsed@example.com",
        username="lapsed",
        credits=5,
        is_premium=True,
        premium_expires_at=utcnow() - timedelta(days=1),
    )
    record = await add_pending(uow_factory, lapsed.id)
    provider_runner.default = serve_outputs(image_server, 1)

    assert await orchestrator.process(record.id) is True
    assert await balance(uow_factory, lapsed.id) == 4


@pytest.mark.asyncio
async def test_cancel_before_processing_discards_late_result(
    orchestrator, uow_factory, account, provider_runner
):
    """Cancelled pending record: process is a no-op and a late completion changes nothing."""
    record = await add_pending(uow_factory, account.id)

    assert await orchestrator.fail(record.id, CANCELLED_REASON) is True
    assert await orchestrator.process(record.id) is False
    assert provider_runner.calls == []

    async with await uow_factory() as uow:
        late = await uow.generations.mark_completed(
            record.id, [f"{IMAGE_HOST}/late.png"], utcnow(), 100
        )
    assert late is False

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.failure_reason == CANCELLED_REASON
    assert stored.output_image_urls == []
    assert await balance(uow_factory, account.id) == 10


@pytest.mark.asyncio
async def test_cancel_during_provider_call_wins(
    orchestrator, uow_factory, account, provider_runner, image_server
):
    record = await add_pending(uow_factory, account.id)
    provider_runner.default = serve_outputs(image_server, 1)
    provider_runner.gate = asyncio.Event()

    task = asyncio.create_task(orchestrator.process(record.id))
    while not provider_runner.calls:
        await asyncio.sleep(0.01)

    assert await orchestrator.fail(record.id, CANCELLED_REASON) is True
    provider_runner.gate.set()

    assert await task is False
    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.failure_reason == CANCELLED_REASON
    assert await balance(uow_factory, account.id) == 10


@pytest.mark.asyncio
async def test_process_is_noop_for_non_pending(orchestrator, uow_factory, account, provider_runner):
    record = await add_pending(
        uow_factory,
        account.id,
        status=GenerationStatus.COMPLETED,
        output_image_urls=[f"{PUBLIC_BASE_URL}/uploads/done.jpeg"],
    )

    assert await orchestrator.process(record.id) is False

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert stored.output_image_urls == [f"{PUBLIC_BASE_URL}/uploads/done.jpeg"]
    assert provider_runner.calls == []


@pytest.mark.asyncio
async def test_process_unknown_generation_is_noop(orchestrator, provider_runner):
    from uuid import uuid4

    assert await orchestrator.process(uuid4()) is False
    assert provider_runner.calls == []


@pytest.mark.asyncio
async def test_concurrent_process_calls_run_provider_once(
    orchestrator, uow_factory, account, provider_runner, image_server
):
    record = await add_pending(uow_factory, account.id)
    provider_runner.default = serve_outputs(image_server, 1)

    results = await asyncio.gather(orchestrator.process(record.id), orchestrator.process(record.id))

    assert sorted(results) == [False, True]
    assert len(provider_runner.calls) == 1
    assert await balance(uow_factory, account.id) == 9


@pytest.mark.asyncio
async def test_empty_provider_output_fails(orchestrator, uow_factory, account, provider_runner):
    record = await add_pending(uow_factory, account.id)
    provider_runner.default = []

    assert await orchestrator.process(record.id) is False

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.failure_reason == NO_IMAGES_REASON


@pytest.mark.asyncio
async def test_no_materialized_outputs_fails(orchestrator, uow_factory, account, provider_runner):
    record = await add_pending(uow_factory, account.id, image_count=2)
    provider_runner.default = [f"{IMAGE_HOST}/gone-1.png", f"{IMAGE_HOST}/gone-2.png"]

    assert await orchestrator.process(record.id) is False

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.FAILED
    assert stored.failure_reason == NO_STORED_IMAGES_REASON
    assert stored.output_image_urls == []
    assert await balance(uow_factory, account.id) == 10


@pytest.mark.asyncio
async def test_store_outage_keeps_remote_urls(
    orchestrator, uow_factory, account, provider_runner, image_server, s3_client
):
    record = await add_pending(uow_factory, account.id)
    remote = serve_outputs(image_server, 1)
    provider_runner.default = remote
    s3_client.fail_puts = True

    assert await orchestrator.process(record.id) is True

    assert (await load(uow_factory, record.id)).output_image_urls == remote


@pytest.mark.asyncio
async def test_insufficient_balance_at_completion_keeps_record_completed(
    orchestrator, uow_factory, provider_runner, image_server
):
    """A failed charge is logged; the completed generation stands."""
    poor = await create_account(uow_factory, email="poor@example.com", username="poor", credits=1)
    record = await add_pending(uow_factory, poor.id, image_count=2)
    provider_runner.default = serve_outputs(image_server, 2)

    assert await orchestrator.process(record.id) is True

    assert (await load(uow_factory, record.id)).status == GenerationStatus.COMPLETED
    assert await balance(uow_factory, poor.id) == 1
    assert await charges(uow_factory, record.id) == []


@pytest.mark.asyncio
async def test_failed_generation_can_be_retried_to_completion(
    orchestrator, uow_factory, account, provider_runner, image_server
):
    record = await add_pending(uow_factory, account.id)
    provider_runner.outcomes = [Exception("Internal server error")]
    provider_runner.default = serve_outputs(image_server, 1)

    assert await orchestrator.process(record.id) is False
    async with await uow_factory() as uow:
        assert await uow.generations.reset_for_retry(record.id)
    assert await orchestrator.process(record.id) is True

    stored = await load(uow_factory, record.id)
    assert stored.status == GenerationStatus.COMPLETED
    assert stored.failure_reason is None
    assert await balance(uow_factory, account.id) == 9
    assert len(await charges(uow_factory, record.id)) == 1
