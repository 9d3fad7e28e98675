"""Role and membership checks for the current actor.

Authentication itself is external: an upstream session layer sets the
``X-User-Id`` header and this module only resolves it to an ``Actor``.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from briefing.models import ProjectMember, Report, User

EDITOR_ROLES = ("ADMIN", "CONSULTANT")
REPORT_DELETE_MEMBER_ROLES = ("OWNER", "CONSULTANT")


class AuthError(Exception):
    status_code = 403


class Unauthenticated(AuthError):
    status_code = 401


class PermissionDenied(AuthError):
    status_code = 403


@dataclass(frozen=True)
class Actor:
    id: int
    role: str
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"

    @property
    def can_edit(self) -> bool:
        return self.role in EDITOR_ROLES


def resolve_actor(session: Session, user_id: int | None) -> Actor:
    if user_id is None:
        raise Unauthenticated("Not authenticated")
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise Unauthenticated("Not authenticated")
    return Actor(id=user.id, role=user.role, name=user.name)


def member_role(session: Session, actor: Actor, project_id: int) -> str | None:
    return session.execute(
        select(ProjectMember.role).where(
            ProjectMember.project_id == project_id, ProjectMember.user_id == actor.id,
        )
    ).scalar()


def require_access(session: Session, actor: Actor, project_id: int) -> None:
    if actor.is_admin:
        return
    if member_role(session, actor, project_id) is None:
        raise PermissionDenied("You do not have access to this project")


def require_editor(session: Session, actor: Actor, project_id: int) -> None:
    if not actor.can_edit:
        raise PermissionDenied("You do not have permission to modify this project")
    require_access(session, actor, project_id)


def require_report_visible(session: Session, actor: Actor, report: Report) -> None:
    require_access(session, actor, report.project_id)
    if actor.role == "CLIENT" and report.status != "READY":
        raise PermissionDenied("This report is not available yet")


def require_report_delete(session: Session, actor: Actor, report: Report) -> None:
    if actor.is_admin:
        return
    if member_role(session, actor, report.project_id) not in REPORT_DELETE_MEMBER_ROLES:
        raise PermissionDenied("You do not have permission to delete this report")
