from __future__ import annotations

import json
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from briefing.config import get_settings
from briefing.llm import Completion
from briefing.models import Base, Project, Report, ReportFile, User


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point data and storage dirs at a temp dir and reset the cached settings."""
    monkeypatch.setenv("BRIEFING_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("BRIEFING_STORAGE_DIR", str(tmp_path / "storage"))
    monkeypatch.delenv("BRIEFING_OVERVIEW_POLICY", raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    # StaticPool so every session sees the same in-memory database
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def admin(session: Session) -> User:
    user = User(email="admin@agency.test", name="Admin", role="ADMIN")
    session.add(user)
    session.commit()
    return user


@pytest.fixture()
def project(session: Session) -> Project:
    proj = Project(name="Acme Retail", slug="acme-retail", ai_context="Online shoe retailer in Spain.")
    session.add(proj)
    session.commit()
    return proj


def write_csv(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def sales_csv(rows: int = 10) -> str:
    lines = ["month,channel,revenue"]
    lines += [f"2024-{(i % 12) + 1:02d},web,{1000 + i * 10}" for i in range(rows)]
    return "\n".join(lines) + "\n"


@pytest.fixture()
def draft_report(session: Session, project: Project, tmp_path) -> Report:
    """DRAFT report with one 10-row CSV attached."""
    report = Report(project_id=project.id, title="Q1 sales", prompt="Analyze Q1 sales")
    session.add(report)
    session.flush()
    path = write_csv(tmp_path, "sales.csv", sales_csv(10))
    session.add(ReportFile(
        report_id=report.id, filename="sales.csv", original_name="sales.csv",
        mime_type="text/csv", size=path.stat().st_size, path=str(path),
    ))
    session.commit()
    session.refresh(report)
    return report


# ---------------------------------------------------------------------------
# Fake model client
# ---------------------------------------------------------------------------


REPORT_HTML = "<!DOCTYPE html><html><body><h1>Q1</h1></body></html>"


def report_payload(html: str = REPORT_HTML, questions=None, proposals=None) -> str:
    return json.dumps({
        "html": html,
        "questions": questions if questions is not None else [
            {"question": "What is the target audience?", "context": "not specified"},
        ],
        "proposals": proposals if proposals is not None else [
            {"type": "RISK", "title": "Declining conversion", "description": "Conversion fell 3 weeks in a row.",
             "priority": "HIGH"},
        ],
    })


class FakeLLM:
    """Stands in for LLMClient: returns queued texts and records every call."""

    def __init__(self, *texts: str, input_tokens: int = 100, output_tokens: int = 50,
                 duration_ms: int = 1000, on_call=None, error: Exception | None = None):
        self.texts = list(texts)
        self.calls: list[dict] = []
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.duration_ms = duration_ms
        self.on_call = on_call
        self.error = error

    async def complete(self, system: str, user: str, kind: str = "report") -> Completion:
        self.calls.append({"system": system, "user": user, "kind": kind})
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        text = self.texts.pop(0) if len(self.texts) > 1 else self.texts[0]
        return Completion(
            text=text, model="fake-model",
            input_tokens=self.input_tokens, output_tokens=self.output_tokens,
            duration_ms=self.duration_ms,
        )
