import os
import tempfile
from pathlib import Path

import pytest

# Point the import-time settings at a scratch location before slidecraft is imported.
_SCRATCH = Path(tempfile.mkdtemp(prefix="slidecraft-tests-"))
os.environ.setdefault("STORAGE_ROOT", str(_SCRATCH / "storage"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{(_SCRATCH / 'import.db').as_posix()}")
os.environ.setdefault("DEFAULT_LLM_PROVIDER", "mock")
os.environ.setdefault("PERSIST_REQUEST_EVENTS", "true")

from slidecraft.config import settings  # noqa: E402
from slidecraft.db import Base, SessionLocal, make_engine  # noqa: E402
from slidecraft.models import GenerationRequest, Slide  # noqa: E402


@pytest.fixture
def db_engine(tmp_path, monkeypatch):
    engine = make_engine(f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    Base.metadata.create_all(bind=engine)
    SessionLocal.configure(bind=engine)
    monkeypatch.setattr(settings, "storage_root", tmp_path / "storage")
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_request(db_engine):
    def _make_request(request_id: str = "req-1", **overrides) -> GenerationRequest:
        values = {
            "id": request_id,
            "owner_id": "teacher-1",
            "topic": "Photosynthesis",
            "grade_level": "Grade 6",
            "subject": "Science",
            "slide_count": 3,
        }
        values.update(overrides)
        session = SessionLocal()
        try:
            row = GenerationRequest(**values)
            session.add(row)
            session.commit()
            return row
        finally:
            session.close()

    return _make_request


@pytest.fixture
def make_slide(db_engine):
    def _make_slide(slide_id: str, request_id: str = "req-1", **overrides) -> Slide:
        values = {
            "id": slide_id,
            "request_id": request_id,
            "owner_id": "teacher-1",
            "title": f"Slide {slide_id}",
            "content_json": '["Light energy", "Chlorophyll"]',
        }
        values.update(overrides)
        session = SessionLocal()
        try:
            row = Slide(**values)
            session.add(row)
            session.commit()
            return row
        finally:
            session.close()

    return _make_slide
