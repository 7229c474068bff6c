import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_funnelos.db")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret")
os.environ.setdefault("GENERATION_RETRY_BASE_SECONDS", "0")
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

from fastapi.testclient import TestClient  # noqa: E402

from factories import TEST_USER_ID, FakeProvider, section_content  # noqa: E402
from funnelos.auth.dependencies import AuthContext, get_current_user  # noqa: E402
from funnelos.db.base import Base, engine, init_db, session_scope  # noqa: E402
from funnelos.db.enums import SectionStatusEnum  # noqa: E402
from funnelos.db.repositories.funnels import FunnelsRepository  # noqa: E402
from funnelos.db.repositories.section_documents import SectionDocumentsRepository  # noqa: E402
from funnelos.llm.deps import get_generation_provider  # noqa: E402
from funnelos.main import app  # noqa: E402
from funnelos.services.section_generator import hash_content  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    init_db()
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())
    yield


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def funnel_id() -> str:
    with session_scope() as session:
        funnel = FunnelsRepository(session).create(
            user_id=TEST_USER_ID,
            name="Coaching funnel",
            answers={
                "businessName": "Flow Coaching",
                "industry": "coaching",
                "idealClient": "Online coaches",
                "callToAction": "Book a call",
            },
        )
        return funnel.id


@pytest.fixture()
def seed_sections():
    """Store a current document per section; defaults to approved seed content."""

    def _seed(
        funnel_id: str,
        *section_ids: str,
        status: SectionStatusEnum = SectionStatusEnum.approved,
        tag: str = "seed",
    ) -> None:
        with session_scope() as session:
            repo = SectionDocumentsRepository(session)
            for section_id in section_ids:
                content = section_content(section_id, tag)
                repo.create_version(
                    funnel_id=funnel_id,
                    section_id=section_id,
                    content=content,
                    content_hash=hash_content(content),
                    status=status,
                )

    return _seed


@pytest.fixture()
def api_client(fake_provider):
    app.dependency_overrides[get_current_user] = lambda: AuthContext(user_id=TEST_USER_ID)
    app.dependency_overrides[get_generation_provider] = lambda: fake_provider
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
