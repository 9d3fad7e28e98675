from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import (
    BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile,
)
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from briefing import auth, feedback, jobs, services
from briefing.auth import Actor
from briefing.db import SessionFactory, get_session, init_db
from briefing.errors import (
    AlreadyResolvedError, GenerationError, InvalidArtifactError, InvalidFeedbackError,
    PreconditionError,
)
from briefing.llm import LLMClient
from briefing.models import AIProposal, AIQuestion, Project, Report
from briefing.schemas import (
    AnswerRequest, GenerateRequest, ProjectCreate, ProjectOut, ProjectUpdate, ProposalOut,
    PublishOut, PublishRequest, QuestionOut, RefineRequest, ReportCreate, ReportDetail,
    ReportFileOut, ReportOut, ReportOverlayUpdate, VoteRequest,
)
from briefing.usage import usage_summary

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Briefing",
    version="0.1.0",
    description=(
        "AI reporting platform. Operators upload tabular data and instructions per "
        "project; an LLM produces HTML reports, open questions and proposals. "
        "Resolved feedback is fed back into later generations and into the project Overview."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Projects", "description": "Create and browse projects."},
        {"name": "Reports", "description": "Register reports, upload data, read report state."},
        {"name": "Generation", "description": "LLM generation and refinement. Requires ANTHROPIC_API_KEY."},
        {"name": "Overview", "description": "Per-project executive overview."},
        {"name": "Feedback", "description": "Answer questions and vote on proposals."},
        {"name": "Admin", "description": "Usage accounting."},
        {"name": "Public", "description": "Published report viewer."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_factory() -> SessionFactory:
    """Session source for detached jobs, which outlive the request session."""
    return get_session


def llm_client() -> LLMClient:
    return LLMClient()


def current_actor(
    x_user_id: int | None = Header(None), session: Session = Depends(db_session),
) -> Actor:
    try:
        return auth.resolve_actor(session, x_user_id)
    except auth.AuthError as exc:
        raise HTTPException(exc.status_code, str(exc)) from exc


def _authorize(check, *args) -> None:
    try:
        check(*args)
    except auth.AuthError as exc:
        raise HTTPException(exc.status_code, str(exc)) from exc


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _project_or_404(session: Session, slug: str) -> Project:
    project = services.get_project_by_slug(session, slug)
    if not project:
        raise HTTPException(404, "Project not found")
    return project


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Admin"], summary="Liveness probe")
async def health():
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.get("/api/projects", response_model=list[ProjectOut],
         tags=["Projects"], summary="List projects visible to the current user")
async def list_projects(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    projects = services.visible_projects(session, actor.id, actor.is_admin)
    return [services.project_summary(session, p) for p in projects]


@app.post("/api/projects", response_model=ProjectOut, status_code=201,
          tags=["Projects"], summary="Create a project (creator becomes owner)")
async def create_project(body: ProjectCreate, actor: Actor = Depends(current_actor),
                         session: Session = Depends(db_session)):
    if not actor.can_edit:
        raise HTTPException(403, "You do not have permission to create projects")
    project = services.create_project(
        session, name=body.name, description=body.description, ai_context=body.ai_context,
        website_url=body.website_url, social_links=body.social_links, owner_id=actor.id,
    )
    session.commit()
    return services.project_summary(session, project)


@app.get("/api/projects/{slug}", response_model=ProjectOut,
         tags=["Projects"], summary="Get a project with pending feedback counts")
async def get_project(slug: str, actor: Actor = Depends(current_actor),
                      session: Session = Depends(db_session)):
    project = _project_or_404(session, slug)
    _authorize(auth.require_access, session, actor, project.id)
    return services.project_summary(session, project)


@app.put("/api/projects/{slug}", response_model=ProjectOut,
         tags=["Projects"], summary="Update project settings (partial update, null fields ignored)")
async def update_project(slug: str, body: ProjectUpdate, actor: Actor = Depends(current_actor),
                         session: Session = Depends(db_session)):
    project = _project_or_404(session, slug)
    _authorize(auth.require_editor, session, actor, project.id)
    services.apply_updates(project, body.model_dump(), services.PROJECT_UPDATABLE_FIELDS)
    session.commit()
    return services.project_summary(session, project)


@app.get("/api/projects/{slug}/reports", response_model=list[ReportOut],
         tags=["Reports"], summary="List the custom reports of a project")
async def list_reports(slug: str, actor: Actor = Depends(current_actor),
                       session: Session = Depends(db_session)):
    project = _project_or_404(session, slug)
    _authorize(auth.require_access, session, actor, project.id)
    reports = [r for r in project.reports if r.type == "CUSTOM"]
    if actor.role == "CLIENT":
        reports = [r for r in reports if r.status == "READY"]
    reports.sort(key=lambda r: (r.created_at, r.id), reverse=True)
    return [services.report_summary(r) for r in reports]


# ---------------------------------------------------------------------------
# Routes: Reports
# ---------------------------------------------------------------------------


@app.post("/api/reports", response_model=ReportDetail, status_code=201,
          tags=["Reports"], summary="Register a report in DRAFT")
async def create_report(body: ReportCreate, actor: Actor = Depends(current_actor),
                        session: Session = Depends(db_session)):
    project = _project_or_404(session, body.project_slug)
    _authorize(auth.require_editor, session, actor, project.id)
    report = services.create_report(
        session, project, title=body.title, prompt=body.prompt, description=body.description,
        period_from=body.period_from, period_to=body.period_to, actor_id=actor.id,
    )
    session.commit()
    return services.report_detail(report)


@app.get("/api/reports/{report_id}", response_model=ReportDetail,
         tags=["Reports"], summary="Get report state (poll this while DRAFT or PROCESSING)")
async def get_report(report_id: int, actor: Actor = Depends(current_actor),
                     session: Session = Depends(db_session)):
    report = _get_or_404(session, Report, report_id, "Report")
    _authorize(auth.require_report_visible, session, actor, report)
    return services.report_detail(report)


@app.patch("/api/reports/{report_id}", response_model=ReportDetail,
           tags=["Reports"], summary="Edit the human overlay (executive summary, strengths, opportunities)")
async def update_report(report_id: int, body: ReportOverlayUpdate, actor: Actor = Depends(current_actor),
                        session: Session = Depends(db_session)):
    report = _get_or_404(session, Report, report_id, "Report")
    _authorize(auth.require_editor, session, actor, report.project_id)
    services.update_overlay(report, body.model_dump())
    session.commit()
    return services.report_detail(report)


@app.delete("/api/reports/{report_id}", tags=["Reports"],
            summary="Delete a report with its files, questions and proposals")
async def delete_report(report_id: int, actor: Actor = Depends(current_actor),
                        session: Session = Depends(db_session)):
    report = _get_or_404(session, Report, report_id, "Report")
    _authorize(auth.require_report_delete, session, actor, report)
    paths = services.delete_report(session, report)
    session.commit()
    services.remove_stored_files(paths)
    return {"success": True}


@app.post("/api/upload", response_model=ReportFileOut, status_code=201,
          tags=["Reports"], summary="Attach a data file (CSV or XLSX) to a report")
async def upload_file(report_id: int = Form(...), file: UploadFile = File(...),
                      actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    report = _get_or_404(session, Report, report_id, "Report")
    _authorize(auth.require_editor, session, actor, report.project_id)
    if not file.filename:
        raise HTTPException(400, "A file is required")
    content = await file.read()
    rf = services.attach_file(session, report, content, file.filename, file.content_type)
    session.commit()
    return services.file_summary(rf)


@app.post("/api/projects/{slug}/reports/html", response_model=ReportDetail, status_code=201,
          tags=["Reports"], summary="Register a pre-rendered HTML report (no generation)")
async def upload_html_report(slug: str, title: str = Form(...), file: UploadFile = File(...),
                             actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    project = _project_or_404(session, slug)
    _authorize(auth.require_editor, session, actor, project.id)
    html = (await file.read()).decode("utf-8", errors="replace")
    try:
        report = services.create_uploaded_report(session, project, title=title, html=html, actor_id=actor.id)
    except InvalidArtifactError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.report_detail(report)


@app.post("/api/reports/{report_id}/publish", response_model=PublishOut,
          tags=["Reports"], summary="Publish or unpublish a report")
async def publish_report(report_id: int, body: PublishRequest, actor: Actor = Depends(current_actor),
                         session: Session = Depends(db_session)):
    report = _get_or_404(session, Report, report_id, "Report")
    _authorize(auth.require_editor, session, actor, report.project_id)
    result = services.publish_report(session, report, body.is_published, body.is_public)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Generation
# ---------------------------------------------------------------------------


@app.post("/api/reports/generate", status_code=202, tags=["Generation"],
          summary="Start report generation; poll GET /api/reports/{id} for the result")
async def generate_report(
    body: GenerateRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
    factory: SessionFactory = Depends(session_factory),
):
    report = _get_or_404(session, Report, body.report_id, "Report")
    _authorize(auth.require_editor, session, actor, report.project_id)
    if report.type != "CUSTOM":
        raise HTTPException(400, "Use the overview endpoint to generate an overview")
    try:
        jobs.start_report_generation(session, report)
    except jobs.JobConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    except PreconditionError as exc:
        raise HTTPException(400, str(exc)) from exc
    background_tasks.add_task(jobs.run_report_job, report.id, client, factory)
    return {"success": True, "report_id": report.id}


@app.post("/api/reports/{report_id}/refine", tags=["Generation"],
          summary="Apply an edit instruction to a ready report and wait for the result")
async def refine_report(
    report_id: int,
    body: RefineRequest,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
):
    report = _get_or_404(session, Report, report_id, "Report")
    _authorize(auth.require_editor, session, actor, report.project_id)
    extra = [(f.name, f.content) for f in body.additional_files]
    try:
        await jobs.refine_report(session, report, body.prompt, client, additional_files=extra)
    except jobs.JobConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    except PreconditionError as exc:
        raise HTTPException(400, str(exc)) from exc
    except GenerationError as exc:
        raise HTTPException(502, str(exc)) from exc
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Overview
# ---------------------------------------------------------------------------


class OverviewEnvelope(BaseModel):
    overview: ReportDetail | None = None


@app.get("/api/projects/{slug}/overview", response_model=OverviewEnvelope,
         tags=["Overview"], summary="Get the project overview, if any")
async def get_overview(slug: str, actor: Actor = Depends(current_actor),
                       session: Session = Depends(db_session)):
    project = _project_or_404(session, slug)
    _authorize(auth.require_access, session, actor, project.id)
    overview = jobs.find_overview(session, project.id)
    if overview is not None and actor.role == "CLIENT" and overview.status != "READY":
        overview = None
    return {"overview": services.report_detail(overview) if overview else None}


@app.post("/api/projects/{slug}/overview", status_code=202, tags=["Overview"],
          summary="Generate or regenerate the project overview")
async def generate_overview(
    slug: str,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(current_actor),
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
    factory: SessionFactory = Depends(session_factory),
):
    project = _project_or_404(session, slug)
    _authorize(auth.require_editor, session, actor, project.id)
    try:
        overview = jobs.start_overview_generation(session, project, actor.id)
    except jobs.JobConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    except PreconditionError as exc:
        raise HTTPException(400, str(exc)) from exc
    background_tasks.add_task(jobs.run_overview_job, overview.id, client, factory)
    return {"success": True, "overview_id": overview.id}


# ---------------------------------------------------------------------------
# Routes: Feedback
# ---------------------------------------------------------------------------


@app.get("/api/projects/{slug}/questions", response_model=list[QuestionOut],
         tags=["Feedback"], summary="List questions (filter by PENDING, ANSWERED, DISMISSED)")
async def list_questions(slug: str, status: str | None = Query(None),
                         actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    project = _project_or_404(session, slug)
    _authorize(auth.require_access, session, actor, project.id)
    return [services.question_summary(q) for q in feedback.list_questions(session, project.id, status)]


@app.get("/api/projects/{slug}/proposals", response_model=list[ProposalOut],
         tags=["Feedback"], summary="List proposals (filter by PENDING, APPROVED, REJECTED)")
async def list_proposals(slug: str, status: str | None = Query(None),
                         actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    project = _project_or_404(session, slug)
    _authorize(auth.require_access, session, actor, project.id)
    return [services.proposal_summary(p) for p in feedback.list_proposals(session, project.id, status)]


@app.post("/api/questions/{question_id}/answer", response_model=QuestionOut,
          tags=["Feedback"], summary="Answer a pending question")
async def answer_question(question_id: int, body: AnswerRequest, actor: Actor = Depends(current_actor),
                          session: Session = Depends(db_session)):
    question = _get_or_404(session, AIQuestion, question_id, "Question")
    _authorize(auth.require_editor, session, actor, question.project_id)
    try:
        feedback.answer_question(session, question, body.answer, actor.id)
    except InvalidFeedbackError as exc:
        raise HTTPException(400, str(exc)) from exc
    except AlreadyResolvedError as exc:
        raise HTTPException(409, str(exc)) from exc
    session.commit()
    return services.question_summary(question)


@app.post("/api/questions/{question_id}/dismiss", response_model=QuestionOut,
          tags=["Feedback"], summary="Dismiss a pending question")
async def dismiss_question(question_id: int, actor: Actor = Depends(current_actor),
                           session: Session = Depends(db_session)):
    question = _get_or_404(session, AIQuestion, question_id, "Question")
    _authorize(auth.require_editor, session, actor, question.project_id)
    try:
        feedback.dismiss_question(session, question, actor.id)
    except AlreadyResolvedError as exc:
        raise HTTPException(409, str(exc)) from exc
    session.commit()
    return services.question_summary(question)


@app.post("/api/proposals/{proposal_id}/vote", response_model=ProposalOut,
          tags=["Feedback"], summary="Approve or reject a pending proposal")
async def vote_proposal(proposal_id: int, body: VoteRequest, actor: Actor = Depends(current_actor),
                        session: Session = Depends(db_session)):
    proposal = _get_or_404(session, AIProposal, proposal_id, "Proposal")
    _authorize(auth.require_editor, session, actor, proposal.project_id)
    try:
        feedback.vote_proposal(session, proposal, body.action, body.comment, actor.id)
    except InvalidFeedbackError as exc:
        raise HTTPException(400, str(exc)) from exc
    except AlreadyResolvedError as exc:
        raise HTTPException(409, str(exc)) from exc
    session.commit()
    return services.proposal_summary(proposal)


# ---------------------------------------------------------------------------
# Routes: Usage
# ---------------------------------------------------------------------------


@app.get("/api/usage", tags=["Admin"], summary="Token usage and cost per project and month")
async def get_usage(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    if not actor.can_edit:
        raise HTTPException(403, "You do not have permission to view usage")
    return usage_summary(session)


# ---------------------------------------------------------------------------
# Routes: Public viewer
# ---------------------------------------------------------------------------


@app.get("/r/{project_slug}/{report_slug}", response_class=HTMLResponse,
         tags=["Public"], summary="Published report HTML")
async def public_report(project_slug: str, report_slug: str, x_user_id: int | None = Header(None),
                        session: Session = Depends(db_session)):
    report = services.find_published(session, project_slug, report_slug)
    if report is None:
        raise HTTPException(404, "Report not found")
    if not report.is_public:
        try:
            actor = auth.resolve_actor(session, x_user_id)
        except auth.AuthError as exc:
            raise HTTPException(exc.status_code, str(exc)) from exc
        _authorize(auth.require_access, session, actor, report.project_id)
    return HTMLResponse(report.html_content or "")


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("briefing.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
