import os

os.environ["TESTING"] = "1"

import pytest  # noqa: E402
from cryptography.fernet import Fernet  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from humanagent.crud import crud  # noqa: E402
from humanagent.database import Base  # noqa: E402
from humanagent.database import initialize_database  # noqa: E402
from humanagent.database import make_engine  # noqa: E402
from humanagent.database import make_sessionmaker  # noqa: E402
from humanagent.events import event_bus  # noqa: E402
from humanagent.models.enums import SchedulingMode  # noqa: E402
from humanagent.testing.mock_llm import ScriptedChatModel  # noqa: E402

# In-memory SQLite shared by every session of a test
test_engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
TestingSessionLocal = make_sessionmaker(test_engine)

_PROVIDER_ENV = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "OPENROUTER_API_KEY",
    "ELEVENLABS_API_KEY",
    "AGENTMAIL_API_KEY",
    "LLM_DISABLED",
    "DATABASE_URL",
    "APP_PUBLIC_URL",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Pin the environment so a developer's .env never leaks into tests."""
    for name in _PROVIDER_ENV:
        monkeypatch.setenv(name, "")
    monkeypatch.setenv("TESTING", "1")
    monkeypatch.setenv("FERNET_SECRET", Fernet.generate_key().decode())
    monkeypatch.setenv("LLM_MAX_RETRIES", "3")
    yield


@pytest.fixture(autouse=True)
def clean_event_bus():
    """Drop subscribers registered by a test."""
    saved = {k: set(v) for k, v in event_bus._subscribers.items()}
    yield
    event_bus._subscribers.clear()
    event_bus._subscribers.update(saved)


@pytest.fixture
def db_session():
    """
    Creates a fresh database for each test, then tears it down after the test is done.
    """
    initialize_database(test_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def session_factory(db_session):
    """Session factory bound to the test database (new session per call)."""
    return TestingSessionLocal


@pytest.fixture
def owner(db_session):
    return crud.create_user(db_session, email="owner@example.com", display_name="Olivia")


@pytest.fixture
def make_agent(db_session, owner):
    """Factory creating agents owned by ``owner`` unless told otherwise."""
    counter = {"n": 0}

    def _make(slug=None, *, owner_id=None, **fields):
        counter["n"] += 1
        slug = slug or f"agent-{counter['n']}"
        fields.setdefault("scheduling_mode", SchedulingMode.MANUAL)
        fields.setdefault("llm_provider", "openai")
        fields.setdefault("llm_model", "gpt-4o-mini")
        return crud.create_agent(
            db_session,
            owner_id=owner_id or owner.id,
            slug=slug,
            name=slug.replace("-", " ").title(),
            **fields,
        )

    return _make


@pytest.fixture
def sample_agent(make_agent):
    return make_agent("researcher", instructions="Research carefully and report findings.")


@pytest.fixture
def make_task(db_session, owner):
    def _make(description="Summarise the quarterly report", **fields):
        fields.setdefault("owner_id", owner.id)
        return crud.create_task(db_session, description=description, **fields)

    return _make


@pytest.fixture
def scripted_llm():
    """Factory for :class:`ScriptedChatModel` instances."""

    def _make(*responses, tokens_per_call=30):
        return ScriptedChatModel(responses=list(responses), tokens_per_call=tokens_per_call)

    return _make
