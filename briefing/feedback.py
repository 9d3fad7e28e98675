"""Feedback loop: human resolution of generated questions and proposals, and the
read side that feeds resolved items back into the next generation.

Only APPROVED proposals and ANSWERED questions flow forward as positive
context.  REJECTED proposals flow forward as titles only, as an exclusion
list.  PENDING and DISMISSED items never reach a prompt.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from briefing.errors import AlreadyResolvedError, InvalidFeedbackError
from briefing.models import AIProposal, AIQuestion

log = logging.getLogger(__name__)

VOTE_ACTIONS = {"approve": "APPROVED", "reject": "REJECTED"}


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovedProposal:
    title: str
    description: str
    type: str = "INSIGHT"
    approved_at: datetime | None = None


@dataclass(frozen=True)
class AnsweredQuestion:
    question: str
    answer: str


@dataclass
class ProjectFeedback:
    approved: list[ApprovedProposal] = field(default_factory=list)
    rejected_titles: list[str] = field(default_factory=list)
    answered: list[AnsweredQuestion] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.approved or self.rejected_titles or self.answered)


def load_feedback(session: Session, project_id: int) -> ProjectFeedback:
    """Query approved, rejected and answered items for a project. Always fresh."""
    approved = session.execute(
        select(AIProposal)
        .where(AIProposal.project_id == project_id, AIProposal.status == "APPROVED")
        .order_by(AIProposal.voted_at.desc(), AIProposal.id.desc())
    ).scalars().all()
    rejected = session.execute(
        select(AIProposal.title)
        .where(AIProposal.project_id == project_id, AIProposal.status == "REJECTED")
        .order_by(AIProposal.id)
    ).scalars().all()
    answered = session.execute(
        select(AIQuestion.question, AIQuestion.answer)
        .where(AIQuestion.project_id == project_id, AIQuestion.status == "ANSWERED")
        .order_by(AIQuestion.answered_at, AIQuestion.id)
    ).all()

    return ProjectFeedback(
        approved=[
            ApprovedProposal(title=p.title, description=p.description or "",
                             type=p.type, approved_at=p.voted_at)
            for p in approved
        ],
        rejected_titles=list(dict.fromkeys(t for t in rejected if t)),
        answered=[
            AnsweredQuestion(question=q, answer=a)
            for q, a in answered
            if a and a.strip()
        ],
    )


# ---------------------------------------------------------------------------
# Write side
# ---------------------------------------------------------------------------


def answer_question(session: Session, question: AIQuestion, answer: str,
                    actor_id: int | None = None) -> AIQuestion:
    """Record an answer on a PENDING question (caller must commit)."""
    text = (answer or "").strip()
    if not text:
        raise InvalidFeedbackError("Answer text is required")
    if question.status != "PENDING":
        raise AlreadyResolvedError(f"Question {question.id} is already {question.status}")
    question.answer = text
    question.status = "ANSWERED"
    question.answered_by_id = actor_id
    question.answered_at = datetime.now(UTC)
    log.info("Question %s answered by %s", question.id, actor_id)
    return question


def dismiss_question(session: Session, question: AIQuestion,
                     actor_id: int | None = None) -> AIQuestion:
    """Dismiss a PENDING question (caller must commit)."""
    if question.status != "PENDING":
        raise AlreadyResolvedError(f"Question {question.id} is already {question.status}")
    question.status = "DISMISSED"
    question.answered_by_id = actor_id
    question.answered_at = datetime.now(UTC)
    log.info("Question %s dismissed by %s", question.id, actor_id)
    return question


def vote_proposal(session: Session, proposal: AIProposal, action: str,
                  comment: str | None = None, actor_id: int | None = None) -> AIProposal:
    """Approve or reject a PENDING proposal (caller must commit)."""
    status = VOTE_ACTIONS.get((action or "").strip().lower())
    if status is None:
        raise InvalidFeedbackError(f"Invalid vote action: {action!r}")
    if proposal.status != "PENDING":
        raise AlreadyResolvedError(f"Proposal {proposal.id} is already {proposal.status}")
    proposal.status = status
    proposal.voted_by_id = actor_id
    proposal.voted_at = datetime.now(UTC)
    proposal.vote_comment = (comment or "").strip() or None
    log.info("Proposal %s %s by %s", proposal.id, status.lower(), actor_id)
    return proposal


def list_questions(session: Session, project_id: int, status: str | None = None) -> list[AIQuestion]:
    query = select(AIQuestion).where(AIQuestion.project_id == project_id)
    if status:
        query = query.where(AIQuestion.status == status.upper())
    return list(session.execute(query.order_by(AIQuestion.created_at.desc(), AIQuestion.id.desc())).scalars())


def list_proposals(session: Session, project_id: int, status: str | None = None) -> list[AIProposal]:
    query = select(AIProposal).where(AIProposal.project_id == project_id)
    if status:
        query = query.where(AIProposal.status == status.upper())
    return list(session.execute(query.order_by(AIProposal.created_at.desc(), AIProposal.id.desc())).scalars())
