"""Pytest configuration and fixtures."""
import os

# Keep the module-level engine off the working directory
os.environ.setdefault("BONSAI_DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bonsai.core.bonsai_types import LLMResult, TokenUsage
from bonsai.core.db import Base
from bonsai.core.errors import AnalysisUnavailableError
from bonsai.core.tree_store import TreeStore
from bonsai.services.event_service import EventBroadcaster
from bonsai.services.generation_service import GenerationOrchestrator
from bonsai.services.session_service import BonsaiSession
import bonsai.models  # noqa: F401

# Use in-memory SQLite for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_SESSION_ID = "test-session"


class FakeLLMClient:
    """
    Stand-in for LLMClient.

    Returns canned outputs in order; an exception instance in ``outputs`` is
    raised instead of returned.
    """

    def __init__(self, outputs=None, models=None):
        self.outputs = list(outputs or [])
        self.models = ["qwen/qwen2.5-coder-3b-instruct"] if models is None else models
        self.calls = []
        self.base_url = "localhost:1234/v1"
        self.model = "qwen/qwen2.5-coder-3b-instruct"
        self.document_result = LLMResult(content="print('from doc')", reasoning="doc", tokens=TokenUsage())

    def configure(self, base_url=None, model=None):
        self.base_url = base_url or self.base_url
        self.model = model or self.model

    async def generate(self, prompt, code, on_retry=None):
        self.calls.append((prompt, code))
        if self.outputs:
            output = self.outputs.pop(0)
        else:
            output = f"generated {len(self.calls)}"
        if isinstance(output, Exception):
            raise output
        return LLMResult(
            content=output,
            reasoning=f"reasoning {len(self.calls)}",
            tokens=TokenUsage(prompt=10, completion=5, total=15)
        )

    async def list_models(self, timeout=None, base_url=None):
        if isinstance(self.models, Exception):
            raise self.models
        return list(self.models)

    async def synthesize_from_document(self, document):
        if isinstance(self.document_result, Exception):
            raise self.document_result
        return self.document_result


async def fake_analyzer(code, name_hint, extension):
    return {"filename": f"{name_hint}{extension}", "nloc": len(code.splitlines()), "functions": []}


async def missing_analyzer(code, name_hint, extension):
    raise AnalysisUnavailableError("lizard is not installed")


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_factory(db):
    """Session factory handing out the shared test session."""
    def get_test_db():
        # Mark it so db_utils knows not to close it
        db._test_session_reuse = True
        return db
    return get_test_db


@pytest.fixture
def store(db_factory):
    """Tree store with a single root node holding "a"."""
    store = TreeStore(db_session_factory=db_factory, session_id=TEST_SESSION_ID)
    store.create_root("a")
    return store


@pytest.fixture
def llm():
    return FakeLLMClient()


@pytest.fixture
def session(store, llm):
    """Bonsai session wired to the fake LLM and analyzer."""
    return BonsaiSession(
        store=store,
        llm_client=llm,
        broadcaster=EventBroadcaster(),
        orchestrator=GenerationOrchestrator(store, llm, analyzer=fake_analyzer)
    )


@pytest.fixture(scope="function")
def client(db_factory, llm):
    """Create a test client bound to a fresh session on the test database."""
    import bonsai.services.session_service as session_service
    from bonsai import main

    store = TreeStore(db_session_factory=db_factory, session_id=TEST_SESSION_ID)
    session_service._session_instance = BonsaiSession(
        store=store,
        llm_client=llm,
        orchestrator=GenerationOrchestrator(store, llm, analyzer=fake_analyzer)
    )

    with TestClient(main.app) as test_client:
        yield test_client

    # Clean up
    main.app.dependency_overrides.clear()
    session_service._session_instance = None


def drain(queue):
    """Pop every message currently waiting in a subscriber queue."""
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages


def commands(messages):
    return [message["command"] for message in messages]
