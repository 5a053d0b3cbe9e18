"""pytest fixtures for parascene backend tests.

Provides:
- engine / uow_factory: Function-scoped in-memory SQLite database (aiosqlite)
- settings: Test settings with queue signing keys and a temporary image dir
- seed: Users, an active provider server and a funded creator
- provider: Provider server stub behind httpx.MockTransport
- creation_service / job_runner: Pipeline wired against the stubs
- test_client: AsyncClient for the FastAPI app with state injected
"""

import time
from types import SimpleNamespace
from typing import AsyncGenerator, Callable

import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from parascene.api.dependencies import get_current_user
from parascene.app import app
from parascene.core.config import Settings
from parascene.core.database import create_engine_for_url, init_models
from parascene.models.server import Server, ServerStatus
from parascene.models.user import ROLE_ADMIN, User
from parascene.services.creation import CreationService
from parascene.services.provider.client import ProviderClient
from parascene.services.queue.signature import body_digest
from parascene.services.storage import LocalImageStorage
from parascene.uow import create_uow_factory
from parascene.workers.creation_job import make_job_runner
from parascene.workers.dispatch import DispatchResult

PROVIDER_URL = "https://provider.example.com/generate"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
CURRENT_SIGNING_KEY = "sig_current_test_key"
NEXT_SIGNING_KEY = "sig_next_test_key"


class ProviderStub:
    """Provider server double; ``responder`` decides each response."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = self.success

    @staticmethod
    def success(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=PNG_BYTES,
            headers={
                "Content-Type": "image/png",
                "X-Image-Width": "768",
                "X-Image-Height": "512",
                "X-Image-Color": "#112233",
            },
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def client(self) -> ProviderClient:
        return ProviderClient(timeout_seconds=5, transport=httpx.MockTransport(self.handler))


class RecordingDispatcher:
    """Dispatcher double that keeps payloads for the test to run."""

    def __init__(self):
        self.payloads = []

    async def dispatch(self, payload) -> DispatchResult:
        self.payloads.append(payload)
        return DispatchResult(enqueued=False)


@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Provide a fresh in-memory database with all tables created."""
    engine = create_engine_for_url("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(engine: AsyncEngine):
    """Provide function-scoped UnitOfWork factory."""
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    return create_uow_factory(session_factory)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        APP_ENV="test",
        APP_BASE_URL="https://app.test",
        IMAGES_DIR=str(tmp_path / "images"),
        IMAGES_URL_PREFIX="/images/created",
        QSTASH_CURRENT_SIGNING_KEY=CURRENT_SIGNING_KEY,
        QSTASH_NEXT_SIGNING_KEY=NEXT_SIGNING_KEY,
    )


@pytest_asyncio.fixture
async def seed(uow_factory):
    """Seed a server owner, a creator with 10 credits, an admin and an active server.

    Server methods: ``txt2img`` (0.5 credits), ``upscale`` (1.0), ``legacy`` (no price).
    """
    async with await uow_factory() as uow:
        owner = await uow.users.add(User(email="owner@example.com", role="provider"))
        creator = await uow.users.add(User(email="creator@example.com"))
        other = await uow.users.add(User(email="other@example.com"))
        admin = await uow.users.add(User(email="admin@example.com", role=ROLE_ADMIN))
        server = await uow.servers.add(
            Server(
                user_id=owner.id,
                name="Flux Server",
                status=ServerStatus.ACTIVE,
                server_url=PROVIDER_URL,
                auth_token="provider-secret",
                server_config={
                    "methods": {
                        "txt2img": {"name": "Text to image", "credits": 0.5},
                        "upscale": {"displayName": "Upscale x2", "credits": 1.0},
                        "legacy": {"name": "Legacy"},
                    }
                },
            )
        )
        await uow.user_credits.add(creator.id, 10.0)

    return SimpleNamespace(owner=owner, creator=creator, other=other, admin=admin, server=server)


@pytest.fixture
def get_balance(uow_factory):
    async def _get_balance(user_id: int) -> float:
        async with await uow_factory() as uow:
            row = await uow.user_credits.get_by_user(user_id)
            return float(row.balance) if row else 0.0

    return _get_balance


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def storage(settings) -> LocalImageStorage:
    return LocalImageStorage(settings.images_dir, settings.images_url_prefix)


@pytest.fixture
def job_runner(uow_factory, storage, provider, settings):
    return make_job_runner(uow_factory, storage, provider.client(), settings)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def creation_service(uow_factory, dispatcher, settings) -> CreationService:
    return CreationService(uow_factory, dispatcher, settings)


@pytest.fixture
def sign_delivery(settings):
    """Mint an Upstash-Signature JWT for a raw body."""

    def _sign(
        raw_body: bytes,
        key: str = CURRENT_SIGNING_KEY,
        url: str | None = None,
        **claims,
    ) -> str:
        now = int(time.time())
        payload = {
            "iss": "Upstash",
            "sub": url or settings.worker_callback_url,
            "exp": now + 300,
            "nbf": now - 5,
            "iat": now,
            "jti": f"jwt_{now}",
            "body": body_digest(raw_body),
        }
        payload.update(claims)
        return jwt.encode(payload, key, algorithm="HS256")

    return _sign


@pytest_asyncio.fixture
async def test_client(uow_factory, settings, creation_service, job_runner):
    """Provide AsyncClient for testing API endpoints with database access."""
    app.state.settings = settings
    app.state.uow_factory = uow_factory
    app.state.creation_service = creation_service
    app.state.job_runner = job_runner

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def act_as():
    """Authenticate subsequent requests as ``user``."""

    def _act_as(user: User) -> None:
        app.dependency_overrides[get_current_user] = lambda: user

    yield _act_as
    app.dependency_overrides.pop(get_current_user, None)
