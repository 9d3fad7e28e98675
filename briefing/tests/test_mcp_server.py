from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from briefing import mcp_server
from briefing.db import init_db, session_scope
from briefing.models import PROPOSAL_TYPES, AIProposal, AIQuestion, Project, Report, ReportFile

from conftest import FakeLLM, report_payload, sales_csv, write_csv


@pytest.fixture()
def mcp_db(tmp_path):
    """Initialize the global database on a temp file and seed one project."""
    init_db(tmp_path / "mcp.db")
    with session_scope() as session:
        project = Project(name="Acme Corp", slug="acme-corp")
        session.add(project)
        session.flush()
        report = Report(project_id=project.id, title="Q1", prompt="Analyze Q1 sales")
        session.add(report)
        session.flush()
        path = write_csv(tmp_path, "sales.csv", sales_csv(5))
        session.add(ReportFile(report_id=report.id, filename="sales.csv", original_name="sales.csv",
                               size=path.stat().st_size, path=str(path)))
        session.commit()
        return {"project_id": project.id, "report_id": report.id}


def test_overview_resource_is_json():
    data = json.loads(mcp_server.briefing_overview())
    assert "workflow" in data
    assert data["report_statuses"] == ["DRAFT", "PROCESSING", "READY", "ERROR"]
    assert all(kind in data["data_model"]["proposal"] for kind in PROPOSAL_TYPES)


def test_list_projects(mcp_db):
    projects = mcp_server.list_projects()
    assert [p["slug"] for p in projects] == ["acme-corp"]
    assert projects[0]["report_count"] == 1


def test_get_report_hides_html_by_default(mcp_db):
    data = mcp_server.get_report(mcp_db["report_id"])
    assert data["status"] == "DRAFT"
    assert "html_content" not in data
    assert "html_content" in mcp_server.get_report(mcp_db["report_id"], include_html=True)
    assert "error" in mcp_server.get_report(4242)


@pytest.mark.asyncio
async def test_generate_then_resolve_feedback(mcp_db):
    with patch("briefing.mcp_server.LLMClient", return_value=FakeLLM(report_payload())):
        result = await mcp_server.generate_report(mcp_db["report_id"])
    assert result["status"] == "READY"
    assert result["rows"] == 5
    assert result["questions_added"] == 1
    assert result["ai_metadata"]["inputTokens"] == 100

    pending = mcp_server.list_pending_feedback("acme-corp")
    assert len(pending["questions"]) == 1
    assert len(pending["proposals"]) == 1

    qid = pending["questions"][0]["id"]
    pid = pending["proposals"][0]["id"]
    assert mcp_server.answer_question(qid, "Retail buyers")["status"] == "ANSWERED"
    assert "error" in mcp_server.dismiss_question(qid)
    assert mcp_server.vote_proposal(pid, "reject", "no")["status"] == "REJECTED"
    assert "error" in mcp_server.vote_proposal(pid, "approve")

    pending = mcp_server.list_pending_feedback("acme-corp")
    assert pending["questions"] == [] and pending["proposals"] == []

    usage = mcp_server.usage_summary()
    assert usage["reports"] == 1


@pytest.mark.asyncio
async def test_generate_failure_reports_error(mcp_db):
    with patch("briefing.mcp_server.LLMClient", return_value=FakeLLM("not json")):
        result = await mcp_server.generate_report(mcp_db["report_id"])
    assert result["status"] == "ERROR"
    assert "Generation failed" in result["error"]
    assert mcp_server.get_report(mcp_db["report_id"])["status"] == "ERROR"


@pytest.mark.asyncio
async def test_generate_without_rows(mcp_db, tmp_path):
    with session_scope() as session:
        report = Report(project_id=mcp_db["project_id"], title="Empty", prompt="p")
        session.add(report)
        session.commit()
        report_id = report.id
    result = await mcp_server.generate_report(report_id)
    assert result["status"] == "ERROR"
    assert "No data" in result["error"]


def test_unknown_entities(mcp_db):
    assert "error" in mcp_server.list_pending_feedback("missing")
    assert "error" in mcp_server.answer_question(999, "x")
    assert "error" in mcp_server.vote_proposal(999, "approve")
    assert "error" in mcp_server.project_reports("missing")


def test_project_reports(mcp_db):
    reports = mcp_server.project_reports("acme-corp")
    assert [r["id"] for r in reports] == [mcp_db["report_id"]]
    assert "html_content" not in reports[0]


def test_invalid_vote_action(mcp_db):
    with session_scope() as session:
        p = AIProposal(project_id=mcp_db["project_id"], report_id=mcp_db["report_id"], title="t", description="d")
        q = AIQuestion(project_id=mcp_db["project_id"], report_id=mcp_db["report_id"], question="q?")
        session.add_all([p, q])
        session.commit()
        pid, qid = p.id, q.id
    assert "error" in mcp_server.vote_proposal(pid, "maybe")
    assert "error" in mcp_server.answer_question(qid, "  ")
