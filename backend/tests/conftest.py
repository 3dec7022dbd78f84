"""pytest fixtures for pixcraft backend tests.

Provides:
- postgres_url: Session-scoped testcontainer PostgreSQL (only when TEST_DATABASE=postgres)
- session: Function-scoped database session on a fresh schema
- uow_factory: Function-scoped UnitOfWork factory
- account / premium_account: Persisted accounts
- s3_client, object_store, artifact_store: S3-backed artifact store on an in-memory bucket
- image_server: httpx transport serving generated JPEG bytes
- provider_runner, provider: Replicate runner stub and the ProviderClient using it
- orchestrator, dispatcher, generation_service: Wired generation pipeline

By default tests run against a per-test SQLite file (aiosqlite). Set
TEST_DATABASE=postgres to run them against PostgreSQL in Docker instead.
"""

import io
import os
import struct
import subprocess
import sys
import zlib
from pathlib import Path
from typing import Any, AsyncGenerator

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["TZ"] = "UTC"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from botocore.exceptions import ClientError  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from pixcraft import models  # noqa: E402,F401
from pixcraft.core.database import setup_db_session  # noqa: E402
from pixcraft.models.account import Account  # noqa: E402
from pixcraft.services.credit_ledger import CreditLedger  # noqa: E402
from pixcraft.services.generation_service import GenerationService  # noqa: E402
from pixcraft.services.image_generation.provider_client import ProviderClient  # noqa: E402
from pixcraft.services.storage.artifact_store import ArtifactStore  # noqa: E402
from pixcraft.services.storage.s3_client import S3ObjectStore  # noqa: E402
from pixcraft.uow import create_uow_factory  # noqa: E402
from pixcraft.workers.dispatcher import GenerationDispatcher  # noqa: E402
from pixcraft.workers.generation_orchestrator import GenerationOrchestrator  # noqa: E402

BACKEND_DIR = Path(__file__).resolve().parents[1]
TEST_BUCKET = "pixcraft-test"
PUBLIC_BASE_URL = "https://cdn.pixcraft.test"
IMAGE_HOST = "https://replicate.delivery"


@pytest.fixture(scope="session")
def postgres_url():
    """Provide a migrated PostgreSQL URL, or None to use SQLite.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    if os.environ.get("TEST_DATABASE") != "postgres":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_pixcraft",
    ) as container:
        db_url = container.get_connection_url(driver="psycopg")

        env = os.environ.copy()
        env["DATABASE_URL"] = db_url
        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=BACKEND_DIR,
        )

        yield db_url


@pytest_asyncio.fixture(scope="function")
async def session(postgres_url, tmp_path) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session on empty tables."""
    if postgres_url:
        session_factory = setup_db_session(postgres_url, pool_size=5)
    else:
        session_factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with session_factory() as session:
        engine = session.bind
        if not postgres_url:
            async with engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

        yield session

        await session.rollback()

        if postgres_url:
            # Dependent tables first
            await session.execute(text("DELETE FROM credit_transactions"))
            await session.execute(text("DELETE FROM generations"))
            await session.execute(text("DELETE FROM accounts"))
            await session.commit()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session: AsyncSession):
    """Provide function-scoped UnitOfWork factory bound to the test database."""
    session_factory = async_sessionmaker(
        bind=session.bind,
        expire_on_commit=False,
    )
    return create_uow_factory(session_factory)


async def create_account(uow_factory, **overrides) -> Account:
    values: dict[str, Any] = {
        "email": "artist@example.com",
        "username": "artist",
        "credits": 10,
    }
    values.update(overrides)
    async with await uow_factory() as uow:
        account = await uow.accounts.add(Account(**values))
    return account


@pytest_asyncio.fixture
async def account(uow_factory) -> Account:
    """Non-premium account with 10 credits."""
    return await create_account(uow_factory)


@pytest_asyncio.fixture
async def premium_account(uow_factory) -> Account:
    """Premium account (no expiry) with zero credits."""
    return await create_account(
        uow_factory, email="pro@example.com", username="pro", credits=0, is_premium=True
    )


# Storage


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.fail_puts = False
        self.fail_deletes = False

    def put_object(self, **kwargs):
        if self.fail_puts:
            raise ClientError(
                {"Error": {"Code": "ServiceUnavailable", "Message": "Slow down"}}, "PutObject"
            )
        self.objects[kwargs["Key"]] = kwargs
        return {"ETag": '"etag"'}

    def delete_object(self, **kwargs):
        if self.fail_deletes:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "Denied"}}, "DeleteObject")
        self.objects.pop(kwargs["Key"], None)
        return {}


def make_image_bytes(size=(64, 48), fmt="PNG", color="red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_oversized_png(width: int = 30000, height: int = 30000) -> bytes:
    """PNG header declaring a huge canvas, enough for Pillow's decompression bomb check."""

    def chunk(kind: bytes, payload: bytes) -> bytes:
        return (
            struct.pack(">I", len(payload))
            + kind
            + payload
            + struct.pack(">I", zlib.crc32(kind + payload) & 0xFFFFFFFF)
        )

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IEND", b"")


class ImageServer:
    """httpx.MockTransport handler serving images by URL.

    Unknown URLs answer 404; URLs in ``broken`` answer bytes that are not an image.
    """

    def __init__(self):
        self.images: dict[str, bytes] = {}
        self.broken: set[str] = set()
        self.requests: list[str] = []

    def add(self, url: str, data: bytes | None = None) -> str:
        self.images[url] = data if data is not None else make_image_bytes()
        return url

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.broken:
            return httpx.Response(200, content=b"definitely not an image")
        if url in self.images:
            return httpx.Response(200, content=self.images[url])
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def object_store(s3_client) -> S3ObjectStore:
    return S3ObjectStore(bucket=TEST_BUCKET, public_base_url=PUBLIC_BASE_URL, client=s3_client)


@pytest.fixture
def image_server() -> ImageServer:
    return ImageServer()


@pytest.fixture
def artifact_store(object_store, image_server) -> ArtifactStore:
    return ArtifactStore(object_store, max_width=32, max_height=32, transport=image_server.transport)


# Provider


class ProviderRunner:
    """Scripted Replicate runner: each call pops the next outcome.

    An outcome is either an exception instance (raised) or an output (returned).
    When the script runs out, ``default`` is returned.
    """

    def __init__(self):
        self.outcomes: list[Any] = []
        self.default: Any = []
        self.calls: list[tuple[str, dict]] = []
        self.gate = None

    async def __call__(self, model: str, payload: dict) -> Any:
        self.calls.append((model, payload))
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def provider_runner() -> ProviderRunner:
    return ProviderRunner()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def provider(provider_runner, sleeps) -> ProviderClient:
    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return ProviderClient(
        api_token="r8_test",
        max_retries=3,
        timeout_seconds=5,
        runner=provider_runner,
        sleep=record_sleep,
        jitter=lambda low, high: 0.5,
    )


# Pipeline


@pytest.fixture
def orchestrator(uow_factory, provider, artifact_store) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        uow_factory,
        provider=provider,
        artifact_store=artifact_store,
        ledger=CreditLedger(uow_factory),
        store_timeout_seconds=5,
    )


@pytest.fixture
def dispatcher(orchestrator) -> GenerationDispatcher:
    return GenerationDispatcher(orchestrator, worker_count=2, queue_size=10)


@pytest.fixture
def generation_service(uow_factory, orchestrator, dispatcher, artifact_store) -> GenerationService:
    return GenerationService(
        uow_factory,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        artifact_store=artifact_store,
        max_upload_bytes=64 * 1024,
    )
