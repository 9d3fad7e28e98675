"""Pydantic request/response schemas for the Briefing API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, field_validator


class ProjectCreate(BaseModel):
    name: str
    description: str = ""
    ai_context: str = ""
    website_url: str = ""
    social_links: dict[str, str] = {}

    @field_validator("name")
    @classmethod
    def name_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name is required")
        return v


class ProjectUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    ai_context: str | None = None
    website_url: str | None = None
    status: Literal["ACTIVE", "PAUSED", "ARCHIVED"] | None = None


class ProjectOut(BaseModel):
    id: int
    name: str
    slug: str
    description: str
    ai_context: str
    website_url: str
    social_links: dict[str, str] = {}
    status: str
    report_count: int = 0
    pending_questions: int = 0
    pending_proposals: int = 0


class ReportCreate(BaseModel):
    project_slug: str
    title: str
    prompt: str
    description: str | None = None
    period_from: datetime | None = None
    period_to: datetime | None = None

    @field_validator("title", "prompt")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v


class ReportFileOut(BaseModel):
    id: int
    original_name: str
    mime_type: str
    size: int
    row_count: int | None = None
    columns: list[str] = []


class ReportOut(BaseModel):
    id: int
    project_id: int
    type: str
    title: str
    description: str | None = None
    status: str
    error_message: str | None = None
    is_published: bool = False
    is_public: bool = False
    slug: str | None = None
    period_from: str | None = None
    period_to: str | None = None
    created_at: str | None = None
    ai_metadata: dict[str, Any] | None = None


class ReportDetail(ReportOut):
    prompt: str = ""
    html_content: str | None = None
    executive_summary: str | None = None
    strengths: str | None = None
    opportunities: str | None = None
    files: list[ReportFileOut] = []


class ReportOverlayUpdate(BaseModel):
    executive_summary: str | None = None
    strengths: str | None = None
    opportunities: str | None = None


class GenerateRequest(BaseModel):
    report_id: int


class AdditionalFile(BaseModel):
    name: str
    content: str


class RefineRequest(BaseModel):
    prompt: str
    additional_files: list[AdditionalFile] = []


class PublishRequest(BaseModel):
    is_published: bool
    is_public: bool = False


class PublishOut(BaseModel):
    id: int
    title: str
    slug: str | None = None
    is_published: bool
    is_public: bool
    public_url: str | None = None


class QuestionOut(BaseModel):
    id: int
    project_id: int
    report_id: int
    question: str
    context: str = ""
    status: str
    answer: str | None = None
    answered_by_id: int | None = None
    answered_at: str | None = None
    created_at: str | None = None


class AnswerRequest(BaseModel):
    answer: str


class ProposalOut(BaseModel):
    id: int
    project_id: int
    report_id: int
    type: str
    title: str
    description: str
    priority: str
    status: str
    voted_by_id: int | None = None
    voted_at: str | None = None
    vote_comment: str | None = None
    created_at: str | None = None


class VoteRequest(BaseModel):
    action: Literal["approve", "reject"]
    comment: str | None = None
