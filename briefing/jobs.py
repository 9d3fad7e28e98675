"""Generation job lifecycle: DRAFT -> PROCESSING -> READY | ERROR.

A job is a Report row (``type`` CUSTOM or OVERVIEW).  The request that
triggers a generation flips the row to PROCESSING and commits before any model
call, so pollers see PROCESSING immediately.  The model call then runs
detached (``run_report_job`` / ``run_overview_job``); those wrappers are the
outermost error boundary and always leave the row in READY or ERROR.
Refinement is the exception: it runs inside the request and is awaited.
A READY row keeps its previous html while PROCESSING; a failed generation
drops it, a failed refinement keeps it.
"""
from __future__ import annotations

import logging
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from briefing.config import Settings, get_settings
from briefing.db import SessionFactory, session_scope
from briefing.errors import GenerationError, NoDataError, PreconditionError
from briefing.feedback import load_feedback
from briefing.ingest import ingest_report_files
from briefing.llm import LLMClient
from briefing.models import AIProposal, AIQuestion, Project, Report
from briefing.parsing import (
    OverviewResult, ReportResult, parse_overview_response, parse_refinement_response,
    parse_report_response,
)
from briefing.prompts import (
    OverviewSource, build_overview_prompt, build_refinement_prompt, build_report_prompt,
)
from briefing.usage import accumulate
from briefing.utils import json_parse

log = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 500


class JobConflictError(Exception):
    """A generation is already in flight for this job."""


def _error_message(exc: BaseException) -> str:
    msg = str(exc).strip() or exc.__class__.__name__
    return msg[:_MAX_ERROR_CHARS]


def _project_context(project: Project) -> str:
    return project.ai_context or project.description or ""


def _row_exists(session: Session, report_id: int) -> bool:
    return session.execute(select(Report.id).where(Report.id == report_id)).scalar() is not None


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


def mark_processing(report: Report, *, allow_concurrent: bool = False) -> None:
    """Enter PROCESSING from any state and clear the previous error (caller must commit)."""
    if report.status == "PROCESSING" and not allow_concurrent:
        raise JobConflictError(f"Report {report.id} is already being generated")
    report.status = "PROCESSING"
    report.error_message = None


def mark_ready(report: Report, html: str, metadata, *, summary: str | None = None) -> None:
    report.status = "READY"
    report.html_content = html
    report.error_message = None
    report.ai_metadata_json = accumulate(report.ai_metadata_json, metadata)
    if summary is not None:
        report.executive_summary = summary


def mark_error(report: Report, exc: BaseException | str, *, keep_html: bool = False) -> None:
    """Enter ERROR.  The artifact is dropped unless *keep_html* (failed refinement)."""
    report.status = "ERROR"
    if not keep_html:
        report.html_content = None
    report.error_message = exc if isinstance(exc, str) else _error_message(exc)


def fail_job(report_id: int, exc: BaseException, session_factory: SessionFactory | None = None) -> None:
    """Persist ERROR for *report_id* in a fresh session. Never raises."""
    try:
        with session_scope(session_factory) as session:
            report = session.get(Report, report_id)
            if report is None:
                log.warning("Report %s vanished before it could be marked ERROR (%s)", report_id, exc)
                return
            mark_error(report, exc)
            session.commit()
        log.info("Report %s -> ERROR: %s", report_id, _error_message(exc))
    except Exception:
        log.exception("Could not record failure for report %s", report_id)


# ---------------------------------------------------------------------------
# Report generation
# ---------------------------------------------------------------------------


def start_report_generation(session: Session, report: Report, *, allow_concurrent: bool = False) -> int:
    """Flip to PROCESSING, ingest attached files, and gate on empty data.

    Commits.  Returns the aggregate row count.  Raises ``NoDataError`` (after
    committing ERROR) when no file yields rows, so no model call is made.
    """
    if not (report.prompt or "").strip():
        raise PreconditionError("The report has no instructions (prompt) to generate from")
    mark_processing(report, allow_concurrent=allow_concurrent)
    session.commit()

    rows = ingest_report_files(report)
    if not rows:
        exc = NoDataError()
        mark_error(report, exc)
        session.commit()
        log.info("Report %s -> ERROR: no data", report.id)
        raise exc
    session.commit()
    log.info("Report %s -> PROCESSING with %d rows", report.id, len(rows))
    return len(rows)


def stored_rows(report: Report) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for rf in report.files:
        data = json_parse(rf.parsed_data_json, [])
        if isinstance(data, list):
            rows.extend(r for r in data if isinstance(r, dict))
    return rows


async def generate_report(
    session: Session, report: Report, client: LLMClient, settings: Settings | None = None,
) -> ReportResult | None:
    """Run the model for a PROCESSING report and persist READY (commits).

    Returns ``None`` if the report was deleted while the model was running.
    """
    settings = settings or get_settings()
    rows = stored_rows(report)
    if not rows:
        raise NoDataError()
    project = report.project
    feedback = load_feedback(session, project.id)
    prompt = build_report_prompt(
        _project_context(project), report.prompt, rows, feedback, max_rows=settings.max_prompt_rows,
    )
    completion = await client.complete(prompt.system, prompt.user, kind="report")
    result = parse_report_response(completion.text)

    if not _row_exists(session, report.id):
        log.warning("Report %s was deleted during generation; dropping result", report.id)
        return None

    mark_ready(report, result.html, completion.metadata())
    for q in result.questions:
        session.add(AIQuestion(
            project_id=project.id, report_id=report.id,
            question=q.question, context=q.context,
        ))
    for p in result.proposals:
        session.add(AIProposal(
            project_id=project.id, report_id=report.id, type=p.type,
            title=p.title, description=p.description, priority=p.priority,
        ))
    session.commit()
    log.info("Report %s -> READY (%d chars html, %d questions, %d proposals)",
             report.id, len(result.html), len(result.questions), len(result.proposals))
    return result


async def run_report_job(
    report_id: int, client: LLMClient, session_factory: SessionFactory | None = None,
) -> None:
    """Detached entry point. Always ends in READY or ERROR."""
    try:
        with session_scope(session_factory) as session:
            report = session.get(Report, report_id)
            if report is None:
                log.warning("Report %s vanished before generation started", report_id)
                return
            await generate_report(session, report, client)
    except Exception as exc:
        if not isinstance(exc, GenerationError):
            log.exception("Unexpected failure generating report %s", report_id)
        else:
            log.warning("Generation failed for report %s: %s", report_id, exc)
        fail_job(report_id, exc, session_factory)


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------


async def refine_report(
    session: Session,
    report: Report,
    instruction: str,
    client: LLMClient,
    additional_files: Sequence[tuple[str, str]] | None = None,
) -> str:
    """Apply an edit instruction to a report's HTML and wait for the result.

    Preconditions are checked before any state change.  On failure the report
    goes to ERROR with the previous HTML kept, and the error is re-raised.
    """
    if not (instruction or "").strip():
        raise PreconditionError("A refinement instruction is required")
    if not report.html_content:
        raise PreconditionError("The report has no content to refine")
    mark_processing(report)
    session.commit()

    try:
        prompt = build_refinement_prompt(
            report.html_content, instruction,
            project_context=_project_context(report.project) or None,
            additional_files=additional_files,
        )
        completion = await client.complete(prompt.system, prompt.user, kind="refine")
        html = parse_refinement_response(completion.text)
    except Exception as exc:
        session.rollback()
        mark_error(report, exc, keep_html=True)
        session.commit()
        log.warning("Refinement failed for report %s: %s", report.id, exc)
        raise

    mark_ready(report, html, completion.metadata())
    session.commit()
    log.info("Report %s refined (%d chars html)", report.id, len(html))
    return html


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------


def find_overview(session: Session, project_id: int) -> Report | None:
    return session.execute(
        select(Report)
        .where(Report.project_id == project_id, Report.type == "OVERVIEW")
        .order_by(Report.created_at.desc(), Report.id.desc())
    ).scalars().first()


def get_or_create_overview(session: Session, project: Project, actor_id: int | None = None) -> Report:
    """Find-or-create the single OVERVIEW report of a project (caller must commit)."""
    overview = find_overview(session, project.id)
    if overview is None:
        overview = Report(
            project_id=project.id, type="OVERVIEW", status="DRAFT",
            title=f"Overview - {project.name}",
            description=f"Executive overview of project {project.name}",
            prompt="", created_by_id=actor_id,
        )
        session.add(overview)
        session.flush()
    return overview


def ready_reports(session: Session, project_id: int, limit: int = 0) -> list[Report]:
    query = (
        select(Report)
        .where(Report.project_id == project_id, Report.type == "CUSTOM", Report.status == "READY")
        .order_by(Report.created_at.desc(), Report.id.desc())
    )
    if limit > 0:
        query = query.limit(limit)
    return list(session.execute(query).scalars())


def start_overview_generation(
    session: Session, project: Project, actor_id: int | None = None, *, allow_concurrent: bool = False,
) -> Report:
    """Upsert the overview and flip it to PROCESSING (commits)."""
    if not ready_reports(session, project.id, limit=1):
        raise PreconditionError("At least one ready report is needed to build the overview")
    overview = get_or_create_overview(session, project, actor_id)
    mark_processing(overview, allow_concurrent=allow_concurrent)
    session.commit()
    log.info("Overview %s for project %s -> PROCESSING", overview.id, project.slug)
    return overview


async def generate_overview(
    session: Session, overview: Report, client: LLMClient, settings: Settings | None = None,
) -> OverviewResult | None:
    settings = settings or get_settings()
    project = overview.project
    sources = [
        OverviewSource(
            title=r.title, created_at=r.created_at, html=r.html_content or "",
            period_from=r.period_from, period_to=r.period_to,
            executive_summary=r.executive_summary,
        )
        for r in ready_reports(session, project.id, settings.max_overview_reports)
    ]
    if not sources:
        raise PreconditionError("At least one ready report is needed to build the overview")
    feedback = load_feedback(session, project.id)
    prompt = build_overview_prompt(
        project.name, _project_context(project) or f"Project: {project.name}",
        sources, feedback,
        policy=settings.load_overview_policy(), max_chars=settings.max_report_chars,
    )
    completion = await client.complete(prompt.system, prompt.user, kind="overview")
    result = parse_overview_response(completion.text)

    leaked = [t for t in feedback.rejected_titles if t in result.html]
    if leaked:
        log.warning("Overview %s mentions %d rejected proposals: %s", overview.id, len(leaked), leaked)

    if not _row_exists(session, overview.id):
        log.warning("Overview %s was deleted during generation; dropping result", overview.id)
        return None

    mark_ready(overview, result.html, completion.metadata(result.project_status), summary=result.summary)
    session.commit()
    log.info("Overview %s -> READY (status %s)", overview.id, result.project_status)
    return result


async def run_overview_job(
    overview_id: int, client: LLMClient, session_factory: SessionFactory | None = None,
) -> None:
    """Detached entry point. Always ends in READY or ERROR."""
    try:
        with session_scope(session_factory) as session:
            overview = session.get(Report, overview_id)
            if overview is None:
                log.warning("Overview %s vanished before generation started", overview_id)
                return
            await generate_overview(session, overview, client)
    except Exception as exc:
        if not isinstance(exc, GenerationError):
            log.exception("Unexpected failure generating overview %s", overview_id)
        else:
            log.warning("Overview generation failed for %s: %s", overview_id, exc)
        fail_job(overview_id, exc, session_factory)
