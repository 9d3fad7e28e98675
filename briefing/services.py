"""Shared business logic for the Briefing API and MCP server."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from briefing.errors import InvalidArtifactError
from briefing.models import AIProposal, AIQuestion, Project, ProjectMember, Report, ReportFile
from briefing.parsing import looks_like_html
from briefing.storage import delete_stored, save_upload
from briefing.usage import AIMetadata
from briefing.utils import json_parse, slugify

log = logging.getLogger(__name__)

OVERLAY_FIELDS = ("executive_summary", "strengths", "opportunities")
PROJECT_UPDATABLE_FIELDS = ("name", "description", "ai_context", "website_url", "status")

# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def get_project_by_slug(session: Session, slug: str) -> Project | None:
    return session.execute(select(Project).where(Project.slug == slug)).scalars().first()


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def file_summary(rf: ReportFile) -> dict:
    return {
        "id": rf.id, "original_name": rf.original_name, "mime_type": rf.mime_type,
        "size": rf.size, "row_count": rf.row_count,
        "columns": json_parse(rf.columns_json, []),
    }


def report_summary(report: Report) -> dict:
    """List-view fields; no HTML body."""
    meta = AIMetadata.from_json(report.ai_metadata_json)
    return {
        "id": report.id, "project_id": report.project_id, "type": report.type,
        "title": report.title, "description": report.description,
        "status": report.status, "error_message": report.error_message,
        "is_published": report.is_published, "is_public": report.is_public,
        "slug": report.slug,
        "period_from": _iso(report.period_from), "period_to": _iso(report.period_to),
        "created_at": _iso(report.created_at),
        "ai_metadata": meta.to_dict() if meta else None,
    }


def report_detail(report: Report) -> dict:
    base = report_summary(report)
    base.update({
        "prompt": report.prompt,
        "html_content": report.html_content,
        **{f: getattr(report, f) for f in OVERLAY_FIELDS},
        "files": [file_summary(f) for f in report.files],
    })
    return base


def question_summary(q: AIQuestion) -> dict:
    return {
        "id": q.id, "project_id": q.project_id, "report_id": q.report_id,
        "question": q.question, "context": q.context, "status": q.status,
        "answer": q.answer, "answered_by_id": q.answered_by_id,
        "answered_at": _iso(q.answered_at), "created_at": _iso(q.created_at),
    }


def proposal_summary(p: AIProposal) -> dict:
    return {
        "id": p.id, "project_id": p.project_id, "report_id": p.report_id,
        "type": p.type, "title": p.title, "description": p.description,
        "priority": p.priority, "status": p.status,
        "voted_by_id": p.voted_by_id, "voted_at": _iso(p.voted_at),
        "vote_comment": p.vote_comment, "created_at": _iso(p.created_at),
    }


def project_summary(session: Session, project: Project) -> dict:
    def count(model, *where) -> int:
        return session.execute(
            select(func.count()).select_from(model).where(model.project_id == project.id, *where)
        ).scalar_one()

    return {
        "id": project.id, "name": project.name, "slug": project.slug,
        "description": project.description, "ai_context": project.ai_context,
        "website_url": project.website_url,
        "social_links": json_parse(project.social_links_json, {}),
        "status": project.status,
        "report_count": count(Report, Report.type == "CUSTOM"),
        "pending_questions": count(AIQuestion, AIQuestion.status == "PENDING"),
        "pending_proposals": count(AIProposal, AIProposal.status == "PENDING"),
    }


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def unique_project_slug(session: Session, name: str) -> str:
    base = slugify(name) or "project"
    slug, counter = base, 0
    while session.execute(select(Project.id).where(Project.slug == slug)).first():
        counter += 1
        slug = f"{base}-{counter}"
    return slug


def create_project(
    session: Session, *, name: str, description: str = "", ai_context: str = "",
    website_url: str = "", social_links: dict[str, str] | None = None,
    owner_id: int | None = None,
) -> Project:
    """Create a project with a unique slug; the creator becomes OWNER (caller must commit)."""
    project = Project(
        name=name.strip(), slug=unique_project_slug(session, name),
        description=description or "", ai_context=ai_context or "",
        website_url=website_url or "",
        social_links_json=json.dumps(social_links or {}),
    )
    session.add(project)
    session.flush()
    if owner_id is not None:
        session.add(ProjectMember(project_id=project.id, user_id=owner_id, role="OWNER"))
    return project


def visible_projects(session: Session, user_id: int, is_admin: bool) -> list[Project]:
    query = select(Project).order_by(Project.updated_at.desc(), Project.id.desc())
    if not is_admin:
        query = query.join(ProjectMember).where(ProjectMember.user_id == user_id)
    return list(session.execute(query).scalars())


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def create_report(
    session: Session, project: Project, *, title: str, prompt: str,
    description: str | None = None, period_from: datetime | None = None,
    period_to: datetime | None = None, actor_id: int | None = None,
) -> Report:
    """Register a CUSTOM report in DRAFT (caller must commit)."""
    report = Report(
        project_id=project.id, type="CUSTOM", status="DRAFT",
        title=title.strip(), prompt=prompt.strip(), description=description,
        period_from=period_from, period_to=period_to, created_by_id=actor_id,
    )
    session.add(report)
    session.flush()
    return report


def attach_file(
    session: Session, report: Report, content: bytes, original_name: str,
    mime_type: str | None = None,
) -> ReportFile:
    """Store an uploaded file and register it on the report (caller must commit)."""
    stored = save_upload(content, original_name)
    rf = ReportFile(
        report_id=report.id, filename=stored.filename, original_name=original_name,
        mime_type=mime_type or "text/csv", size=stored.size, path=str(stored.path),
    )
    session.add(rf)
    session.flush()
    return rf


def create_uploaded_report(
    session: Session, project: Project, *, title: str, html: str,
    description: str | None = None, actor_id: int | None = None,
) -> Report:
    """Register a pre-rendered HTML report that bypasses generation (caller must commit)."""
    if not html or not looks_like_html(html):
        raise InvalidArtifactError("Uploaded file is not a valid HTML document")
    report = Report(
        project_id=project.id, type="CUSTOM", status="READY",
        title=title.strip(), prompt="", description=description,
        html_content=html, ai_metadata_json=AIMetadata.uploaded().to_json(),
        created_by_id=actor_id,
    )
    session.add(report)
    session.flush()
    return report


def update_overlay(report: Report, updates: dict[str, Any]) -> Report:
    apply_updates(report, updates, OVERLAY_FIELDS)
    return report


def unique_report_slug(session: Session, project_id: int, base: str, exclude_id: int | None = None) -> str:
    base = base or "report"
    slug, counter = base, 0
    while True:
        query = select(Report.id).where(Report.project_id == project_id, Report.slug == slug)
        if exclude_id is not None:
            query = query.where(Report.id != exclude_id)
        if session.execute(query).first() is None:
            return slug
        counter += 1
        slug = f"{base}-{counter}"


def publish_report(session: Session, report: Report, is_published: bool, is_public: bool = False) -> dict:
    """Toggle publish flags; the slug is generated on first publish and kept afterwards."""
    if is_published and not report.slug:
        report.slug = unique_report_slug(session, report.project_id, slugify(report.title), report.id)
    report.is_published = is_published
    report.is_public = is_public
    public_url = f"/r/{report.project.slug}/{report.slug}" if report.slug else None
    return {
        "id": report.id, "title": report.title, "slug": report.slug,
        "is_published": report.is_published, "is_public": report.is_public,
        "public_url": public_url,
    }


def find_published(session: Session, project_slug: str, report_slug: str) -> Report | None:
    return session.execute(
        select(Report)
        .join(Project, Report.project_id == Project.id)
        .where(
            Project.slug == project_slug, Report.slug == report_slug,
            Report.is_published.is_(True), Report.status == "READY",
        )
    ).scalars().first()


def delete_report(session: Session, report: Report) -> list[str]:
    """Delete a report in any state; children cascade.

    Returns the stored file paths.  Remove them with ``remove_stored_files``
    once the caller has committed, so a failed commit leaves them in place.
    """
    paths = [rf.path for rf in report.files if rf.path]
    session.delete(report)
    session.flush()
    log.info("Deleted report %s (%d files)", report.id, len(paths))
    return paths


def remove_stored_files(paths: list[str]) -> None:
    for path in paths:
        delete_stored(path)
