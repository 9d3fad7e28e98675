from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from briefing import feedback, jobs, services
from briefing.db import init_db, session_scope
from briefing.errors import FeedbackError, GenerationError
from briefing.llm import LLMClient
from briefing.models import AIProposal, AIQuestion, Report
from briefing.usage import usage_summary as compute_usage

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def briefing_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Briefing",
    instructions=(
        "Briefing turns uploaded data into AI-written HTML reports per client project. "
        "Each generation also asks questions and makes proposals; answering and voting on "
        "them shapes later reports and the project Overview. "
        "Start with list_projects(), then list_pending_feedback(project_slug)."
    ),
    lifespan=briefing_lifespan,
    json_response=True,
)

# Tools act on behalf of the operator running the server, with ADMIN reach.
_SERVICE_ACTOR_ID = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _project_or_error(session, slug: str):
    project = services.get_project_by_slug(session, slug)
    if not project:
        return None, {"error": f"Project '{slug}' not found"}
    return project, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("briefing://overview")
def briefing_overview() -> str:
    """Overview of Briefing: data model, workflow, and feedback statuses."""
    return json.dumps({
        "system": "Briefing: AI report, overview and feedback-loop engine",
        "description": (
            "Operators upload CSV/XLSX data and instructions per project. An LLM renders a "
            "standalone HTML report, plus open questions and improvement proposals. Answers "
            "and votes are fed into the next generation and into the project Overview."
        ),
        "data_model": {
            "project": "A client engagement. Holds reports, questions and proposals.",
            "report": "A generation job. CUSTOM reports come from data files; the single OVERVIEW report summarizes all READY ones.",
            "question": "Something the model could not infer from the data. PENDING until answered or dismissed.",
            "proposal": "An ACTION, INSIGHT, RISK or OPPORTUNITY. PENDING until approved or rejected.",
        },
        "workflow": [
            "1. list_projects() to see projects and pending feedback counts.",
            "2. list_pending_feedback(project_slug) to see what needs an answer or a vote.",
            "3. answer_question(id, answer) / dismiss_question(id).",
            "4. vote_proposal(id, 'approve' | 'reject', comment).",
            "5. generate_report(report_id) to (re)run a report with the new feedback.",
            "6. get_report(report_id) to read the result.",
        ],
        "feedback_rules": {
            "APPROVED": "Fed into later prompts as a confirmed direction.",
            "REJECTED": "Titles are passed as an exclusion list and never resurface.",
            "ANSWERED": "Answers become learned project context.",
            "PENDING / DISMISSED": "Ignored by generation.",
        },
        "report_statuses": ["DRAFT", "PROCESSING", "READY", "ERROR"],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Projects & Reports
# ---------------------------------------------------------------------------


@mcp.tool()
def list_projects() -> list[dict]:
    """List all projects with report counts and pending questions/proposals."""
    with session_scope() as session:
        projects = services.visible_projects(session, 0, is_admin=True)
        return [services.project_summary(session, p) for p in projects]


@mcp.tool()
def get_report(report_id: int, include_html: bool = False) -> dict:
    """Get a report's status, overlay and token usage.

    Args:
        report_id: The report to read.
        include_html: Also return the full HTML body (can be large).
    """
    with session_scope() as session:
        report, err = _get_or_error(session, Report, report_id, "Report")
        if err:
            return err
        data = services.report_detail(report)
        if not include_html:
            data.pop("html_content", None)
        return data


@mcp.tool()
async def generate_report(report_id: int) -> dict:
    """Generate a report from its uploaded files and wait for the result. Requires an LLM API key."""
    with session_scope() as session:
        report, err = _get_or_error(session, Report, report_id, "Report")
        if err:
            return err
        try:
            rows = jobs.start_report_generation(session, report)
        except (jobs.JobConflictError, GenerationError) as exc:
            return {"error": str(exc), "status": report.status}
        try:
            result = await jobs.generate_report(session, report, LLMClient())
        except Exception as exc:
            session.rollback()
            jobs.fail_job(report_id, exc)
            return {"error": f"Generation failed: {exc}", "status": "ERROR"}
        if result is None:
            return {"error": f"Report {report_id} was deleted during generation"}
        return {
            "report_id": report.id, "status": report.status, "rows": rows,
            "questions_added": len(result.questions),
            "proposals_added": len(result.proposals),
            "ai_metadata": services.report_summary(report)["ai_metadata"],
        }


# ---------------------------------------------------------------------------
# Tools: Feedback
# ---------------------------------------------------------------------------


@mcp.tool()
def list_pending_feedback(project_slug: str) -> dict:
    """List PENDING questions and proposals of a project."""
    with session_scope() as session:
        project, err = _project_or_error(session, project_slug)
        if err:
            return err
        return {
            "project": project.slug,
            "questions": [services.question_summary(q)
                          for q in feedback.list_questions(session, project.id, "PENDING")],
            "proposals": [services.proposal_summary(p)
                          for p in feedback.list_proposals(session, project.id, "PENDING")],
        }


@mcp.tool()
def answer_question(question_id: int, answer: str) -> dict:
    """Answer a PENDING question. The answer becomes context for later generations."""
    with session_scope() as session:
        question, err = _get_or_error(session, AIQuestion, question_id, "Question")
        if err:
            return err
        try:
            feedback.answer_question(session, question, answer, _SERVICE_ACTOR_ID)
        except FeedbackError as exc:
            return {"error": str(exc)}
        session.commit()
        return services.question_summary(question)


@mcp.tool()
def dismiss_question(question_id: int) -> dict:
    """Dismiss a PENDING question without answering it."""
    with session_scope() as session:
        question, err = _get_or_error(session, AIQuestion, question_id, "Question")
        if err:
            return err
        try:
            feedback.dismiss_question(session, question, _SERVICE_ACTOR_ID)
        except FeedbackError as exc:
            return {"error": str(exc)}
        session.commit()
        return services.question_summary(question)


@mcp.tool()
def vote_proposal(proposal_id: int, action: str, comment: str | None = None) -> dict:
    """Approve or reject a PENDING proposal.

    Args:
        proposal_id: The proposal to vote on.
        action: "approve" or "reject". Rejected titles are never suggested again.
        comment: Optional note stored with the vote.
    """
    with session_scope() as session:
        proposal, err = _get_or_error(session, AIProposal, proposal_id, "Proposal")
        if err:
            return err
        try:
            feedback.vote_proposal(session, proposal, action, comment, _SERVICE_ACTOR_ID)
        except FeedbackError as exc:
            return {"error": str(exc)}
        session.commit()
        return services.proposal_summary(proposal)


# ---------------------------------------------------------------------------
# Tools: Usage
# ---------------------------------------------------------------------------


@mcp.tool()
def usage_summary() -> dict:
    """Token usage and estimated cost, per project and per month."""
    with session_scope() as session:
        return compute_usage(session)


@mcp.tool()
def project_reports(project_slug: str) -> list[dict] | dict:
    """List the reports of a project, newest first, without HTML bodies."""
    with session_scope() as session:
        project, err = _project_or_error(session, project_slug)
        if err:
            return err
        reports = session.execute(
            select(Report).where(Report.project_id == project.id)
            .order_by(Report.created_at.desc(), Report.id.desc())
        ).scalars()
        return [services.report_summary(r) for r in reports]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Briefing MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
