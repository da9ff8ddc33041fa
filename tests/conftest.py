"""Shared pytest fixtures and configuration."""

import copy
from datetime import timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import all models to ensure they're registered with SQLAlchemy
import brdsync.models  # noqa: F401
from brdsync.core.config import (
    EncryptionSettings,
    JiraSettings,
    Settings,
    SyncSettings,
)
from brdsync.core.database import Base
from brdsync.models import Connection
from brdsync.repositories.rule_repository import rule_repository
from brdsync.services.sync import (
    LocalRecordStore,
    RemoteRecordStore,
    SyncEventChannel,
    SyncJobQueue,
    SyncOrchestrator,
)
from brdsync.services.sync.transforms import default_rule_definitions
from brdsync.services.token_cipher import TokenCipher
from brdsync.utils.timeutils import utcnow

# Test database URL
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ENCRYPTION_KEY = "test-encryption-key"
ENCRYPTION_SALT = "test-salt"


@pytest.fixture
def test_settings() -> Settings:
    """Settings with OAuth enabled and instant retries."""
    return Settings(
        jira=JiraSettings(client_id="client-id", client_secret="client-secret"),
        encryption=EncryptionSettings(key=ENCRYPTION_KEY, salt=ENCRYPTION_SALT),
        sync=SyncSettings(
            backoff_seconds=[1, 5, 15, 60],
            max_retries=3,
            state_backend="memory",
            webhook_base_url="https://sync.example.com",
        ),
    )


@pytest.fixture
async def test_async_engine():
    """Create test async database engine with a fresh schema."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_async_engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_async_session(session_factory):
    """Create test async database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def seeded_rules(session_factory):
    """Install the default field mapping rules."""
    async with session_factory() as db:
        return await rule_repository.seed_defaults(db, default_rule_definitions())


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(ENCRYPTION_KEY, ENCRYPTION_SALT)


@pytest.fixture
async def connection(session_factory, cipher) -> Connection:
    """An active Jira connection with tokens valid for an hour."""
    async with session_factory() as db:
        conn = Connection(
            user_id="user-1",
            remote_site_id="cloud-1",
            site_url="https://acme.atlassian.net",
            site_name="acme",
            access_token_enc=cipher.encrypt("access-token"),
            refresh_token_enc=cipher.encrypt("refresh-token"),
            token_expires_at=utcnow() + timedelta(hours=1),
            scopes=["read:jira-work", "write:jira-work"],
            is_active=True,
            requires_reauth=False,
        )
        db.add(conn)
        await db.commit()
        await db.refresh(conn)
        return conn


class FakeLocalStore(LocalRecordStore):
    """BRD records kept in a dict."""

    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self.updates: List[Dict[str, Any]] = []
        self._counter = 0

    def add(self, record: Dict[str, Any]) -> Dict[str, Any]:
        self._counter += 1
        stored = {"id": record.get("id") or f"brd-{self._counter}", **record}
        self.records[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def get(self, local_id: str) -> Optional[Dict[str, Any]]:
        record = self.records.get(local_id)
        return copy.deepcopy(record) if record else None

    async def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self.add(record)

    async def update(self, local_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        self.updates.append(copy.deepcopy(changes))
        self.records[local_id].update(copy.deepcopy(changes))
        return copy.deepcopy(self.records[local_id])


class FakeRemoteStore(RemoteRecordStore):
    """Jira issues kept in a dict, with optional injected failures."""

    def __init__(self) -> None:
        self.issues: Dict[str, Dict[str, Any]] = {}
        self.updates: List[Dict[str, Any]] = []
        self.failures: List[Exception] = []
        self._counter = 0

    def add(self, record: Dict[str, Any]) -> Dict[str, Any]:
        self._counter += 1
        project = record.get("project", "PROJ")
        key = record.get("key") or f"{project}-{self._counter}"
        stored = {"id": str(10000 + self._counter), "key": key, "project": project, **record}
        self.issues[key] = stored
        return copy.deepcopy(stored)

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def get(self, connection_id: str, key: str) -> Optional[Dict[str, Any]]:
        self._maybe_fail()
        issue = self.issues.get(key)
        return copy.deepcopy(issue) if issue else None

    async def create(
        self, connection_id: str, project_key: str, record: Dict[str, Any]
    ) -> Dict[str, Any]:
        self._maybe_fail()
        return self.add({**record, "project": project_key})

    async def update(self, connection_id: str, key: str, changes: Dict[str, Any]) -> None:
        self._maybe_fail()
        self.updates.append(copy.deepcopy(changes))
        self.issues[key].update(copy.deepcopy(changes))


@pytest.fixture
def local_store() -> FakeLocalStore:
    return FakeLocalStore()


@pytest.fixture
def remote_store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def event_channel() -> SyncEventChannel:
    return SyncEventChannel()


@pytest.fixture
async def job_queue(session_factory, event_channel, test_settings):
    queue = SyncJobQueue(session_factory, events=event_channel, settings=test_settings)
    yield queue
    await queue.stop()


@pytest.fixture
def orchestrator(
    job_queue, local_store, remote_store, session_factory, test_settings, seeded_rules
) -> SyncOrchestrator:
    return SyncOrchestrator(
        job_queue,
        local_store,
        remote_store,
        session_factory=session_factory,
        settings=test_settings,
    )


@pytest.fixture
def fast_async():
    """Make all async sleep calls instant for faster tests."""
    with patch("asyncio.sleep", new_callable=AsyncMock):
        yield
