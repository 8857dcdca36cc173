"""Shared test fixtures."""
import os
import tempfile

# curioread.db builds a default engine at import time; keep it out of the repo.
_DEFAULT_DIR = tempfile.mkdtemp(prefix="curioread-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_DEFAULT_DIR, 'default.db')}")
os.environ.setdefault("CONTENT_STORE_DIR", os.path.join(_DEFAULT_DIR, "content"))

from pathlib import Path  # noqa: E402

import pytest  # noqa: E402

from curioread import repository as repo  # noqa: E402
from curioread.admission import QueueAdmissionController  # noqa: E402
from curioread.config import Settings  # noqa: E402
from curioread.db import get_session, init_db, make_engine, make_session_factory  # noqa: E402
from curioread.models import ReadingSession  # noqa: E402
from curioread.pipeline import Orchestrator  # noqa: E402
from curioread.scraper import ScrapedArticle  # noqa: E402
from curioread.status import SessionStatus, StudyStatus  # noqa: E402
from curioread.storage import ContentStore  # noqa: E402
from curioread.utils import normalize_url  # noqa: E402

LONG_TEXT = (
    "Most people assume that forests grow fastest in the tropics, but long-term plot data tell "
    "a more complicated story. Growth depends on water, soil nitrogen and the age of the stand. "
) * 6

ANALYSIS = {
    "archetype": {"label": "EMPIRICAL"},
    "logical_schema": {"label": "claim-evidence"},
    "structural_skeleton": ["setup", "data", "conclusion"],
    "domain": {"primary": "ecology", "secondary": "forestry", "specific_topic": "tree growth"},
    "complexity": "intermediate",
    "core_thesis": {"content": "Stand age matters more than latitude."},
    "key_concepts": ["stand age", "nitrogen"],
    "language": "en",
    "reading_time_minutes": 6,
    "pedagogy": {
        "hooks": [
            {
                "focal_point": "CAUSALITY",
                "dynamic_type": "DISRUPTION",
                "reader_prediction": "Tropical forests grow fastest.",
                "text_reality": "Young temperate stands can outgrow old tropical ones.",
                "relevant_context": "",
                "source_location": {"section_index": 1, "anchor_text": "long-term plot data"},
                "cognitive_impact_score": 0.8,
            }
        ]
    },
}

QUESTIONS = [
    {
        "id": 1,
        "category": "CONFIRMATIVE",
        "prompt": "True or false: tropical forests always grow fastest.",
        "options": [
            {"text": "True", "rationale": "The common intuition."},
            {"text": "False", "rationale": "Stand age dominates."},
        ],
        "answer_index": 1,
        "source_anchor": "long-term plot data",
        "remediation": "The article shows stand age matters more than latitude.",
    }
]


class FakeScraper:
    """Returns a long article unless told otherwise; ``errors`` are raised first, in order."""

    def __init__(self):
        self.calls = []
        self.errors = []
        self.result = None

    def scrape(self, url):
        self.calls.append(url)
        if self.errors:
            raise self.errors.pop(0)
        if self.result is not None:
            return self.result
        return ScrapedArticle(
            normalized_url=url,
            text=LONG_TEXT,
            html=f"<article><p>{LONG_TEXT}</p></article>",
            metadata={
                "title": "Why forests grow",
                "byline": "A. Writer",
                "excerpt": LONG_TEXT[:80],
                "length": len(LONG_TEXT),
                "siteName": "example.com",
                "lang": "en",
            },
        )


class FakeAnalyzer:
    model_name = "fake-model"

    def __init__(self):
        self.calls = 0
        self.errors = []

    def analyze(self, text):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return dict(ANALYSIS)


class FakeGenerator:
    name = "curiosity"
    needs_text = False
    model_name = "fake-model"

    def __init__(self):
        self.calls = 0
        self.errors = []

    def generate(self, metadata, text=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return [dict(q) for q in QUESTIONS]


class DeferredRunner:
    """Collects spawned work; tests decide when it runs."""

    def __init__(self):
        self.tasks = []

    def spawn(self, limiter, fn, *args):
        self.tasks.append((limiter, fn, args))

    def run_all(self):
        while self.tasks:
            _limiter, fn, args = self.tasks.pop(0)
            fn(*args)

    def wait(self, timeout=None):
        self.run_all()

    def shutdown(self, wait_for_tasks=True):
        self.tasks.clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        content_store_dir=str(tmp_path / "content"),
        article_wait_attempts=1,
        article_wait_seconds=0,
    )


@pytest.fixture
def engine(settings: Settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    with get_session(session_factory) as session:
        yield session


@pytest.fixture
def store(settings: Settings) -> ContentStore:
    return ContentStore(settings.content_store_dir, settings.max_pdf_size_bytes)


@pytest.fixture
def scraper() -> FakeScraper:
    return FakeScraper()


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def runner() -> DeferredRunner:
    return DeferredRunner()


@pytest.fixture
def orchestrator(session_factory, store, scraper, analyzer, generator, settings) -> Orchestrator:
    return Orchestrator(session_factory, store, scraper, analyzer, generator, settings)


@pytest.fixture
def controller(session_factory, orchestrator, runner, settings) -> QueueAdmissionController:
    return QueueAdmissionController(session_factory, orchestrator, runner, settings)


@pytest.fixture
def client(controller):
    from fastapi.testclient import TestClient

    from curioread.main import create_app

    return TestClient(create_app(controller))


def add_session(db, user_id: str, url: str, status: SessionStatus = SessionStatus.PENDING,
                study_status: StudyStatus = StudyStatus.NOT_STARTED, quiz_id=None) -> ReadingSession:
    """Insert a session row directly, bypassing admission."""
    row = ReadingSession(
        session_token=repo.new_session_token(),
        user_id=user_id,
        article_url=url,
        normalized_url=normalize_url(url),
        status=status,
        study_status=study_status,
        quiz_id=quiz_id,
        meta={},
    )
    db.add(row)
    db.commit()
    return row
