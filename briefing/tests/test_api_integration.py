"""Integration tests for the FastAPI endpoints.

Uses TestClient with an in-memory database and a fake model client. Background
generation tasks run to completion before TestClient returns the response.
"""
from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from briefing.models import AIProposal, AIQuestion, Project, ProjectMember, Report, ReportFile, User

from conftest import REPORT_HTML, FakeLLM, report_payload, sales_csv


@pytest.fixture()
def fake_llm():
    return FakeLLM(report_payload())


@pytest.fixture()
def client(session_factory, fake_llm):
    """FastAPI TestClient using the in-memory database and the fake model."""
    from briefing.app import app, db_session, llm_client, session_factory as job_session_factory

    def override_db_session():
        session = session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[job_session_factory] = lambda: session_factory
    app.dependency_overrides[llm_client] = lambda: fake_llm
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def users(session):
    """An admin, a consultant who owns the seeded project, an outsider and a client viewer."""
    admin = User(email="admin@agency.test", name="Admin", role="ADMIN")
    owner = User(email="owner@agency.test", name="Owner", role="CONSULTANT")
    outsider = User(email="out@agency.test", name="Outsider", role="CONSULTANT")
    viewer = User(email="client@acme.test", name="Client", role="CLIENT")
    project = Project(name="Acme Corp", slug="acme-corp", ai_context="B2B hardware distributor")
    session.add_all([admin, owner, outsider, viewer, project])
    session.flush()
    session.add_all([
        ProjectMember(project_id=project.id, user_id=owner.id, role="OWNER"),
        ProjectMember(project_id=project.id, user_id=viewer.id, role="VIEWER"),
    ])
    session.commit()
    return {
        name: {"X-User-Id": str(u.id)}
        for name, u in (("admin", admin), ("owner", owner), ("outsider", outsider), ("viewer", viewer))
    }


def _create_report(c, headers, title="Q1 Sales", prompt="Analyze Q1 sales") -> dict:
    resp = c.post("/api/reports", headers=headers,
                  json={"project_slug": "acme-corp", "title": title, "prompt": prompt})
    assert resp.status_code == 201
    return resp.json()


def _upload(c, headers, report_id, name="sales.csv", content=None):
    content = content if content is not None else sales_csv(10).encode()
    return c.post("/api/upload", headers=headers, data={"report_id": str(report_id)},
                  files={"file": (name, content, "text/csv")})


def _generated_report(c, headers) -> dict:
    report = _create_report(c, headers)
    assert _upload(c, headers, report["id"]).status_code == 201
    resp = c.post("/api/reports/generate", headers=headers, json={"report_id": report["id"]})
    assert resp.status_code == 202
    return c.get(f"/api/reports/{report['id']}", headers=headers).json()


class TestAuth:
    def test_missing_header_is_401(self, client, users):
        assert client.get("/api/projects").status_code == 401

    def test_unknown_user_is_401(self, client, users):
        assert client.get("/api/projects", headers={"X-User-Id": "999"}).status_code == 401

    def test_non_member_gets_403(self, client, users):
        assert client.get("/api/projects/acme-corp", headers=users["outsider"]).status_code == 403

    def test_project_visibility(self, client, users):
        assert [p["slug"] for p in client.get("/api/projects", headers=users["admin"]).json()] == ["acme-corp"]
        assert client.get("/api/projects", headers=users["outsider"]).json() == []
        assert len(client.get("/api/projects", headers=users["owner"]).json()) == 1


class TestProjectEndpoints:
    def test_create_project_with_unique_slug(self, client, users, session):
        resp = client.post("/api/projects", headers=users["outsider"],
                           json={"name": "Acme Corp", "social_links": {"x": "https://x.com/acme"}})
        assert resp.status_code == 201
        data = resp.json()
        assert data["slug"] == "acme-corp-1"
        assert data["social_links"] == {"x": "https://x.com/acme"}
        member = session.execute(select(ProjectMember).where(ProjectMember.project_id == data["id"])).scalars().one()
        assert member.role == "OWNER"

    def test_create_project_requires_name(self, client, users):
        assert client.post("/api/projects", headers=users["admin"], json={"name": "  "}).status_code == 422

    def test_client_cannot_create_project(self, client, users):
        assert client.post("/api/projects", headers=users["viewer"], json={"name": "X"}).status_code == 403

    def test_update_project(self, client, users):
        resp = client.put("/api/projects/acme-corp", headers=users["owner"],
                          json={"ai_context": "Now also sells software", "name": None})
        assert resp.status_code == 200
        assert resp.json()["ai_context"] == "Now also sells software"
        assert resp.json()["name"] == "Acme Corp"

    def test_unknown_project_404(self, client, users):
        assert client.get("/api/projects/nope", headers=users["admin"]).status_code == 404


class TestReportGeneration:
    def test_full_generation_flow(self, client, users, fake_llm):
        report = _create_report(client, users["owner"])
        assert report["status"] == "DRAFT"

        upload = _upload(client, users["owner"], report["id"])
        assert upload.status_code == 201
        assert upload.json()["original_name"] == "sales.csv"

        resp = client.post("/api/reports/generate", headers=users["owner"], json={"report_id": report["id"]})
        assert resp.status_code == 202
        assert resp.json() == {"success": True, "report_id": report["id"]}

        data = client.get(f"/api/reports/{report['id']}", headers=users["owner"]).json()
        assert data["status"] == "READY"
        assert data["html_content"] == REPORT_HTML
        assert data["ai_metadata"]["inputTokens"] == 100
        assert data["files"][0]["row_count"] == 10
        assert data["files"][0]["columns"] == ["month", "channel", "revenue"]
        assert len(fake_llm.calls) == 1

        project = client.get("/api/projects/acme-corp", headers=users["owner"]).json()
        assert project["pending_questions"] == 1
        assert project["pending_proposals"] == 1
        assert project["report_count"] == 1

    def test_no_data_is_400_and_error(self, client, users, fake_llm):
        report = _create_report(client, users["owner"])
        resp = client.post("/api/reports/generate", headers=users["owner"], json={"report_id": report["id"]})
        assert resp.status_code == 400
        assert "No data" in resp.json()["detail"]
        data = client.get(f"/api/reports/{report['id']}", headers=users["owner"]).json()
        assert data["status"] == "ERROR"
        assert fake_llm.calls == []

    def test_generate_while_processing_is_409(self, client, users, session):
        report = _create_report(client, users["owner"])
        _upload(client, users["owner"], report["id"])
        stored = session.get(Report, report["id"])
        stored.status = "PROCESSING"
        session.commit()
        resp = client.post("/api/reports/generate", headers=users["owner"], json={"report_id": report["id"]})
        assert resp.status_code == 409

    def test_parse_failure_visible_when_polling(self, client, users, fake_llm):
        fake_llm.texts = ["Sure! Here's your report: <html>...</html>"]
        data = _generated_report(client, users["owner"])
        assert data["status"] == "ERROR"
        assert "parse" in data["error_message"].lower()

    def test_create_report_validation(self, client, users):
        resp = client.post("/api/reports", headers=users["owner"],
                           json={"project_slug": "acme-corp", "title": "T", "prompt": " "})
        assert resp.status_code == 422

    def test_generate_unknown_report_404(self, client, users):
        assert client.post("/api/reports/generate", headers=users["admin"],
                           json={"report_id": 12345}).status_code == 404

    def test_xlsx_upload_generates(self, client, users, tmp_path):
        import openpyxl
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.append(["region", "sales"])
        ws.append(["north", 120])
        path = tmp_path / "regions.xlsx"
        wb.save(path)

        report = _create_report(client, users["owner"])
        resp = client.post(
            "/api/upload", headers=users["owner"], data={"report_id": str(report["id"])},
            files={"file": ("regions.xlsx", path.read_bytes(),
                            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        )
        assert resp.status_code == 201
        client.post("/api/reports/generate", headers=users["owner"], json={"report_id": report["id"]})
        data = client.get(f"/api/reports/{report['id']}", headers=users["owner"]).json()
        assert data["status"] == "READY"
        assert data["files"][0]["row_count"] == 1


class TestRefineEndpoint:
    def test_refine_success(self, client, users, fake_llm):
        report = _generated_report(client, users["owner"])
        fake_llm.texts = ["<!DOCTYPE html><html><body>refined</body></html>"]
        resp = client.post(f"/api/reports/{report['id']}/refine", headers=users["owner"],
                           json={"prompt": "Use a bar chart", "additional_files": [{"name": "n.csv", "content": "a\n1"}]})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        data = client.get(f"/api/reports/{report['id']}", headers=users["owner"]).json()
        assert data["html_content"] == "<!DOCTYPE html><html><body>refined</body></html>"
        assert data["ai_metadata"]["inputTokens"] == 200

    def test_refine_failure_keeps_html(self, client, users, fake_llm):
        report = _generated_report(client, users["owner"])
        fake_llm.texts = ["Sorry, no."]
        resp = client.post(f"/api/reports/{report['id']}/refine", headers=users["owner"], json={"prompt": "x"})
        assert resp.status_code == 502
        data = client.get(f"/api/reports/{report['id']}", headers=users["owner"]).json()
        assert data["status"] == "ERROR"
        assert data["html_content"] == REPORT_HTML

    def test_refine_without_html_is_400(self, client, users):
        report = _create_report(client, users["owner"])
        resp = client.post(f"/api/reports/{report['id']}/refine", headers=users["owner"], json={"prompt": "x"})
        assert resp.status_code == 400


class TestFeedbackEndpoints:
    def test_answer_and_vote(self, client, users):
        _generated_report(client, users["owner"])
        questions = client.get("/api/projects/acme-corp/questions?status=PENDING", headers=users["owner"]).json()
        proposals = client.get("/api/projects/acme-corp/proposals", headers=users["owner"]).json()
        assert len(questions) == 1
        assert len(proposals) == 1

        qid, pid = questions[0]["id"], proposals[0]["id"]
        resp = client.post(f"/api/questions/{qid}/answer", headers=users["owner"], json={"answer": "SMBs"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "ANSWERED"
        assert client.post(f"/api/questions/{qid}/dismiss", headers=users["owner"]).status_code == 409

        resp = client.post(f"/api/proposals/{pid}/vote", headers=users["owner"],
                           json={"action": "reject", "comment": "Too risky"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "REJECTED"
        assert resp.json()["vote_comment"] == "Too risky"
        again = client.post(f"/api/proposals/{pid}/vote", headers=users["owner"], json={"action": "approve"})
        assert again.status_code == 409

    def test_empty_answer_400_and_bad_action_422(self, client, users):
        _generated_report(client, users["owner"])
        qid = client.get("/api/projects/acme-corp/questions", headers=users["owner"]).json()[0]["id"]
        pid = client.get("/api/projects/acme-corp/proposals", headers=users["owner"]).json()[0]["id"]
        assert client.post(f"/api/questions/{qid}/answer", headers=users["owner"],
                           json={"answer": "  "}).status_code == 400
        assert client.post(f"/api/proposals/{pid}/vote", headers=users["owner"],
                           json={"action": "maybe"}).status_code == 422

    def test_client_cannot_vote(self, client, users):
        _generated_report(client, users["owner"])
        pid = client.get("/api/projects/acme-corp/proposals", headers=users["viewer"]).json()[0]["id"]
        assert client.post(f"/api/proposals/{pid}/vote", headers=users["viewer"],
                           json={"action": "approve"}).status_code == 403

    def test_missing_question_404(self, client, users):
        assert client.post("/api/questions/777/dismiss", headers=users["admin"]).status_code == 404


class TestOverviewEndpoints:
    def test_overview_lifecycle(self, client, users, fake_llm, session):
        assert client.get("/api/projects/acme-corp/overview", headers=users["owner"]).json() == {"overview": None}
        assert client.post("/api/projects/acme-corp/overview", headers=users["owner"]).status_code == 400

        _generated_report(client, users["owner"])
        pid = client.get("/api/projects/acme-corp/proposals", headers=users["owner"]).json()[0]["id"]
        client.post(f"/api/proposals/{pid}/vote", headers=users["owner"], json={"action": "reject"})

        fake_llm.texts = ['{"html": "<html><body>Overview</body></html>", "projectStatus": "RED", '
                          '"summary": "Needs attention."}']
        resp = client.post("/api/projects/acme-corp/overview", headers=users["owner"])
        assert resp.status_code == 202
        overview_id = resp.json()["overview_id"]

        overview = client.get("/api/projects/acme-corp/overview", headers=users["owner"]).json()["overview"]
        assert overview["id"] == overview_id
        assert overview["type"] == "OVERVIEW"
        assert overview["status"] == "READY"
        assert overview["executive_summary"] == "Needs attention."
        assert overview["ai_metadata"]["projectStatus"] == "RED"
        assert "DO NOT SUGGEST" in fake_llm.calls[-1]["user"]

        again = client.post("/api/projects/acme-corp/overview", headers=users["owner"])
        assert again.json()["overview_id"] == overview_id
        project = client.get("/api/projects/acme-corp", headers=users["owner"]).json()
        assert project["report_count"] == 1


class TestPublishing:
    def test_publish_and_public_view(self, client, users):
        report = _generated_report(client, users["owner"])
        resp = client.post(f"/api/reports/{report['id']}/publish", headers=users["owner"],
                           json={"is_published": True, "is_public": True})
        assert resp.status_code == 200
        assert resp.json()["slug"] == "q1-sales"
        assert resp.json()["public_url"] == "/r/acme-corp/q1-sales"

        page = client.get("/r/acme-corp/q1-sales")
        assert page.status_code == 200
        assert "<h1>Q1</h1>" in page.text

    def test_private_published_report_needs_member(self, client, users):
        report = _generated_report(client, users["owner"])
        client.post(f"/api/reports/{report['id']}/publish", headers=users["owner"],
                    json={"is_published": True, "is_public": False})
        assert client.get("/r/acme-corp/q1-sales").status_code == 401
        assert client.get("/r/acme-corp/q1-sales", headers=users["outsider"]).status_code == 403
        assert client.get("/r/acme-corp/q1-sales", headers=users["viewer"]).status_code == 200

    def test_unpublished_is_404_and_slug_kept(self, client, users):
        report = _generated_report(client, users["owner"])
        client.post(f"/api/reports/{report['id']}/publish", headers=users["owner"], json={"is_published": True})
        resp = client.post(f"/api/reports/{report['id']}/publish", headers=users["owner"],
                           json={"is_published": False})
        assert resp.json()["slug"] == "q1-sales"
        assert client.get("/r/acme-corp/q1-sales").status_code == 404

    def test_slug_collision_gets_suffix(self, client, users):
        first = _generated_report(client, users["owner"])
        second = _generated_report(client, users["owner"])
        client.post(f"/api/reports/{first['id']}/publish", headers=users["owner"], json={"is_published": True})
        resp = client.post(f"/api/reports/{second['id']}/publish", headers=users["owner"],
                           json={"is_published": True})
        assert resp.json()["slug"] == "q1-sales-1"


class TestReportManagement:
    def test_overlay_update(self, client, users):
        report = _generated_report(client, users["owner"])
        resp = client.patch(f"/api/reports/{report['id']}", headers=users["owner"],
                            json={"strengths": "Fast growth", "opportunities": None})
        assert resp.status_code == 200
        assert resp.json()["strengths"] == "Fast growth"
        assert resp.json()["html_content"] == REPORT_HTML

    def test_delete_removes_children_and_files(self, client, users, session):
        report = _generated_report(client, users["owner"])
        stored_path = Path(session.execute(select(ReportFile.path)).scalar_one())
        assert stored_path.exists()

        assert client.delete(f"/api/reports/{report['id']}", headers=users["viewer"]).status_code == 403
        assert client.delete(f"/api/reports/{report['id']}", headers=users["owner"]).status_code == 200
        assert client.get(f"/api/reports/{report['id']}", headers=users["owner"]).status_code == 404
        assert not stored_path.exists()
        session.expire_all()
        assert session.execute(select(AIQuestion)).first() is None
        assert session.execute(select(AIProposal)).first() is None

    def test_upload_html_report(self, client, users):
        resp = client.post(
            "/api/projects/acme-corp/reports/html", headers=users["owner"], data={"title": "Imported"},
            files={"file": ("deck.html", b"<!DOCTYPE html><html><body>Imported</body></html>", "text/html")},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "READY"
        assert data["ai_metadata"] == {"source": "UPLOADED", "inputTokens": 0, "outputTokens": 0}

    def test_upload_non_html_rejected(self, client, users):
        resp = client.post(
            "/api/projects/acme-corp/reports/html", headers=users["owner"], data={"title": "Bad"},
            files={"file": ("notes.txt", b"just text", "text/plain")},
        )
        assert resp.status_code == 400

    def test_client_sees_ready_reports_only(self, client, users):
        ready = _generated_report(client, users["owner"])
        draft = _create_report(client, users["owner"], title="Draft one")
        listed = client.get("/api/projects/acme-corp/reports", headers=users["viewer"]).json()
        assert [r["id"] for r in listed] == [ready["id"]]
        assert client.get(f"/api/reports/{draft['id']}", headers=users["viewer"]).status_code == 403
        assert client.get(f"/api/reports/{ready['id']}", headers=users["viewer"]).status_code == 200
        assert client.post("/api/reports", headers=users["viewer"],
                           json={"project_slug": "acme-corp", "title": "t", "prompt": "p"}).status_code == 403


class TestUsageEndpoint:
    def test_usage_summary(self, client, users):
        _generated_report(client, users["owner"])
        resp = client.get("/api/usage", headers=users["admin"])
        assert resp.status_code == 200
        data = resp.json()
        assert data["reports"] == 1
        assert data["inputTokens"] == 100
        assert data["projects"][0]["slug"] == "acme-corp"
        assert client.get("/api/usage", headers=users["viewer"]).status_code == 403
