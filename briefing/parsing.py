"""Boundary between free-form model text and typed generation results.

Nothing past this module sees untyped model output: callers receive one of
the result dataclasses below or a ``GenerationError`` subclass.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from briefing.errors import GenerationParseError, InvalidArtifactError, MissingArtifactError
from briefing.models import PROJECT_HEALTH, PROPOSAL_PRIORITIES, PROPOSAL_TYPES

log = logging.getLogger(__name__)

# Lenient defaults for enum values the model gets wrong
DEFAULT_PROPOSAL_TYPE = "INSIGHT"
DEFAULT_PRIORITY = "MEDIUM"
DEFAULT_PROJECT_STATUS = "YELLOW"
DEFAULT_SUMMARY = "Executive overview of the project generated from its reports."

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_HTML_FENCE_RE = re.compile(r"```(?:html)?\s*([\s\S]*?)```", re.IGNORECASE)
_HTML_MARKERS = ("<!doctype", "<html", "<div")

_LOG_EXCERPT = 500


@dataclass(frozen=True)
class QuestionDraft:
    question: str
    context: str = ""


@dataclass(frozen=True)
class ProposalDraft:
    type: str
    title: str
    description: str
    priority: str


@dataclass
class ReportResult:
    html: str
    questions: list[QuestionDraft] = field(default_factory=list)
    proposals: list[ProposalDraft] = field(default_factory=list)


@dataclass
class OverviewResult:
    html: str
    project_status: str = DEFAULT_PROJECT_STATUS
    summary: str = DEFAULT_SUMMARY


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_json(text: str) -> str:
    """Locate the JSON payload: fenced block, else outermost braces, else the whole text."""
    m = _FENCE_RE.search(text)
    if m:
        return m.group(1).strip()
    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return text[first:last + 1]
    return text.strip()


def load_payload(text: str) -> dict[str, Any]:
    candidate = extract_json(text)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        log.error("Failed to parse model response: %s; raw (first %d chars): %s",
                  exc, _LOG_EXCERPT, text[:_LOG_EXCERPT])
        raise GenerationParseError(f"Failed to parse model response: {exc}", raw_text=text) from exc
    if not isinstance(data, dict):
        raise GenerationParseError(
            f"Failed to parse model response: expected a JSON object, got {type(data).__name__}",
            raw_text=text,
        )
    return data


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def coerce_choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    v = str(value or "").strip().upper()
    return v if v in allowed else default


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _require_html(data: dict[str, Any]) -> str:
    html = data.get("html")
    if not isinstance(html, str) or not html.strip():
        raise MissingArtifactError("Model response does not contain HTML")
    return html


def coerce_questions(raw: Any) -> list[QuestionDraft]:
    out: list[QuestionDraft] = []
    for item in _as_list(raw):
        if not isinstance(item, dict):
            continue
        question = _clean_str(item.get("question"))
        if not question:
            continue
        out.append(QuestionDraft(question=question, context=_clean_str(item.get("context"))))
    return out


def coerce_proposals(raw: Any) -> list[ProposalDraft]:
    out: list[ProposalDraft] = []
    for item in _as_list(raw):
        if not isinstance(item, dict):
            continue
        title = _clean_str(item.get("title"))
        description = _clean_str(item.get("description"))
        if not title or not description:
            continue
        out.append(ProposalDraft(
            type=coerce_choice(item.get("type"), PROPOSAL_TYPES, DEFAULT_PROPOSAL_TYPE),
            title=title,
            description=description,
            priority=coerce_choice(item.get("priority"), PROPOSAL_PRIORITIES, DEFAULT_PRIORITY),
        ))
    return out


# ---------------------------------------------------------------------------
# Public parsers
# ---------------------------------------------------------------------------


def parse_report_response(text: str) -> ReportResult:
    data = load_payload(text)
    html = _require_html(data)
    questions = coerce_questions(data.get("questions"))
    proposals = coerce_proposals(data.get("proposals"))
    dropped_q = len(_as_list(data.get("questions"))) - len(questions)
    dropped_p = len(_as_list(data.get("proposals"))) - len(proposals)
    if dropped_q or dropped_p:
        log.info("Dropped %d malformed questions and %d malformed proposals", dropped_q, dropped_p)
    return ReportResult(html=html, questions=questions, proposals=proposals)


def parse_overview_response(text: str) -> OverviewResult:
    data = load_payload(text)
    html = _require_html(data)
    return OverviewResult(
        html=html,
        project_status=coerce_choice(data.get("projectStatus"), PROJECT_HEALTH, DEFAULT_PROJECT_STATUS),
        summary=_clean_str(data.get("summary")) or DEFAULT_SUMMARY,
    )


def looks_like_html(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in _HTML_MARKERS)


def parse_refinement_response(text: str) -> str:
    """Return the refined HTML document from a raw-HTML response."""
    m = _HTML_FENCE_RE.search(text)
    html = (m.group(1) if m else text).strip()
    if not html or not looks_like_html(html):
        log.error("Refinement response is not HTML; raw (first %d chars): %s",
                  _LOG_EXCERPT, text[:_LOG_EXCERPT])
        raise InvalidArtifactError("Refined output is not a valid HTML document")
    return html
