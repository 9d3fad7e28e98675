"""Prompt construction for the three generation kinds.

Each kind has a stable system instruction (output contract, charting library,
CSS framework, palette) and a per-call user instruction built from project
context, task instructions, data and accumulated feedback.  Every variable
block is capped before submission and the cap is stated in the prompt so the
model knows how much was left out.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Sequence

from lxml import etree, html as lxml_html

from briefing.config import OverviewPolicy
from briefing.feedback import ProjectFeedback
from briefing.utils import truncate

log = logging.getLogger(__name__)

ECHARTS_CDN = "https://cdn.jsdelivr.net/npm/echarts@5/dist/echarts.min.js"
TAILWIND_CDN = "https://cdn.tailwindcss.com"

PALETTE = {
    "primary": "#215A6B",
    "accent": "#F8AE00",
    "background": "#F5F5F5",
    "text": "#1A1A1A",
}

_BRAND_RULES = f"""\
- Self-contained HTML document: <!DOCTYPE html>, <head>, <body>.
- Charts: Apache ECharts via CDN ({ECHARTS_CDN}).
- Styles: Tailwind CSS via CDN ({TAILWIND_CDN}).
- Palette: primary {PALETTE['primary']}, accent {PALETTE['accent']}, \
background {PALETTE['background']}, text {PALETTE['text']}. Charts use the brand colors.
- Typography: Inter (Google Fonts), fallback system sans-serif.
- Responsive, professional layout. No other external assets."""

# ---------------------------------------------------------------------------
# System instructions
# ---------------------------------------------------------------------------

REPORT_SYSTEM_PROMPT = f"""\
You are an expert data analyst at a consulting agency. Your job is to turn raw \
tabular data into a professional analytical report in HTML.

HTML RULES:
{_BRAND_RULES}
- The report must include: an executive summary, key metrics with variations, \
relevant interactive charts, and conclusions with recommendations.

Also list the open questions you need a human to answer to improve future \
reports, and concrete proposals (actions, insights, risks, opportunities).

Respond with ONLY valid JSON (no markdown code fences) with exactly this structure:
{{
  "html": "<!DOCTYPE html>...",
  "questions": [
    {{"question": "...", "context": "..."}}
  ],
  "proposals": [
    {{
      "type": "ACTION|INSIGHT|RISK|OPPORTUNITY",
      "title": "...",
      "description": "...",
      "priority": "LOW|MEDIUM|HIGH|CRITICAL"
    }}
  ]
}}
"""

REFINE_SYSTEM_PROMPT = f"""\
You are an expert data analyst editing an existing HTML report.

RULES:
- Edit the document in place. Keep its structure, styling, typography, \
charts and color palette unless the instruction asks otherwise.
- Apply ONLY the requested change. Do not rewrite unrelated sections.
- Keep the ECharts ({ECHARTS_CDN}) and Tailwind ({TAILWIND_CDN}) references.
- Return the COMPLETE updated HTML document starting with <!DOCTYPE html>.
- Respond with raw HTML only: no JSON, no explanations, no markdown code fences.
"""

_OVERVIEW_SYSTEM_TEMPLATE = """\
You are a strategy analyst at a consulting agency. Build an executive \
OVERVIEW dashboard of a project's overall state from ALL of its reports and \
the knowledge the team has approved.

HTML RULES:
{brand_rules}

The dashboard has exactly these sections, in this order:
1. Header with the project name and a traffic-light status badge \
(GREEN = on track, YELLOW = needs attention, RED = at risk).
2. Executive summary: 2-3 paragraphs.
3. Key KPIs: at most {max_kpis} cards, each with a directional delta (up/down/flat).
4. Report highlights: reverse-chronological list, at most {max_highlights} items.
5. Milestones: at most {max_milestones} items derived from APPROVED proposals.
6. Insights: at most {max_insights} bullets.
7. Distribution charts: pie/donut charts ONLY, and only when the reports \
contain distribution data. Never use line or bar charts. Omit the section when \
there is no such data.
8. Next steps: {next_steps_min}-{next_steps_max} prioritized items.
9. Learned context: what the team has told you through answered questions.

The "do not suggest" list in the input contains ideas the team rejected. Never \
mention, quote or reference those items and do not suggest anything similar.

Respond with ONLY valid JSON (no markdown code fences):
{{
  "html": "<!DOCTYPE html>...",
  "projectStatus": "GREEN|YELLOW|RED",
  "summary": "<2-3 sentence executive summary>"
}}
"""


def overview_system_prompt(policy: OverviewPolicy | None = None) -> str:
    p = policy or OverviewPolicy()
    return _OVERVIEW_SYSTEM_TEMPLATE.format(brand_rules=_BRAND_RULES, **p.model_dump())


# ---------------------------------------------------------------------------
# Prompt containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Prompt:
    """A system/user instruction pair plus how much input was cut to fit."""
    system: str
    user: str
    omitted_rows: int = 0
    omitted_chars: int = 0


@dataclass(frozen=True)
class OverviewSource:
    """A READY report summarized for the Overview prompt."""
    title: str
    created_at: datetime
    html: str
    period_from: datetime | None = None
    period_to: datetime | None = None
    executive_summary: str | None = None


# ---------------------------------------------------------------------------
# Feedback blocks
# ---------------------------------------------------------------------------


def _bullets(items: Sequence[str], empty: str = "None") -> str:
    return "\n".join(f"- {i}" for i in items) if items else empty


def _answered_block(feedback: ProjectFeedback) -> str:
    if not feedback.answered:
        return "None"
    return "\n".join(f"- Q: {qa.question}\n  A: {qa.answer}" for qa in feedback.answered)


def report_feedback_block(feedback: ProjectFeedback) -> str:
    if feedback.is_empty:
        return ""
    return (
        "PREVIOUS FEEDBACK (use it to improve the analysis):\n"
        f"Approved proposals:\n{_bullets([p.title for p in feedback.approved])}\n"
        "Rejected proposals (do not suggest these or anything similar):\n"
        f"{_bullets(feedback.rejected_titles)}\n"
        f"Answered questions:\n{_answered_block(feedback)}\n"
    )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _rows_block(rows: Sequence[dict[str, Any]], max_rows: int) -> tuple[str, int]:
    shown = list(rows[:max_rows]) if max_rows > 0 else list(rows)
    omitted = len(rows) - len(shown)
    block = json.dumps(shown, indent=2, ensure_ascii=False, default=str)
    if omitted:
        block += f"\n... ({omitted} additional rows omitted; {len(rows)} rows in total)"
    return block, omitted


def build_report_prompt(
    project_context: str,
    instructions: str,
    rows: Sequence[dict[str, Any]],
    feedback: ProjectFeedback | None = None,
    max_rows: int = 500,
) -> Prompt:
    """Assemble the full-report generation prompt."""
    data_block, omitted = _rows_block(rows, max_rows)
    sections = [
        f"PROJECT CONTEXT:\n{project_context.strip() or 'No additional context'}",
        f"SPECIFIC INSTRUCTIONS FOR THIS REPORT:\n{instructions.strip()}",
        f"DATA TO ANALYZE:\n{data_block}",
    ]
    if feedback is not None:
        fb = report_feedback_block(feedback)
        if fb:
            sections.append(fb.rstrip())
    sections.append(
        "Generate the report following the instructions. "
        "Respond ONLY with valid JSON, without markdown code fences."
    )
    if omitted:
        log.info("Report prompt capped at %d rows (%d omitted)", max_rows, omitted)
    return Prompt(system=REPORT_SYSTEM_PROMPT, user="\n\n".join(sections), omitted_rows=omitted)


def build_refinement_prompt(
    current_html: str,
    instruction: str,
    project_context: str | None = None,
    additional_files: Sequence[tuple[str, str]] | None = None,
) -> Prompt:
    """Assemble the in-place edit prompt for an existing report."""
    sections = [f"CURRENT REPORT HTML:\n{current_html}"]
    if project_context and project_context.strip():
        sections.append(f"PROJECT CONTEXT:\n{project_context.strip()}")
    sections.append(f"REQUESTED CHANGE:\n{instruction.strip()}")
    for name, content in additional_files or ():
        sections.append(f"ADDITIONAL FILE: {name}\n--- BEGIN {name} ---\n{content}\n--- END {name} ---")
    sections.append("Return the complete updated HTML document only.")
    return Prompt(system=REFINE_SYSTEM_PROMPT, user="\n\n".join(sections))


def extract_report_body(raw_html: str) -> str:
    """Body markup of a report without scripts and styles, for compact prompts."""
    try:
        tree = lxml_html.document_fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return raw_html
    etree.strip_elements(tree, "script", "style", with_tail=False)
    body = tree.find("body")
    if body is None:
        return raw_html
    inner = "".join(lxml_html.tostring(child, encoding="unicode") for child in body)
    return ((body.text or "") + inner).strip()


def _period(src: OverviewSource) -> str | None:
    def fmt(d: date | None) -> str:
        return d.strftime("%Y-%m-%d") if d else "?"
    if src.period_from is None and src.period_to is None:
        return None
    return f"{fmt(src.period_from)} to {fmt(src.period_to)}"


def build_overview_prompt(
    project_name: str,
    project_context: str,
    reports: Sequence[OverviewSource],
    feedback: ProjectFeedback,
    policy: OverviewPolicy | None = None,
    max_chars: int = 15000,
) -> Prompt:
    """Assemble the Overview prompt from READY reports (most recent first) and feedback."""
    ordered = sorted(reports, key=lambda r: r.created_at, reverse=True)
    report_blocks: list[str] = []
    omitted_total = 0
    for idx, src in enumerate(ordered, start=1):
        body, omitted = truncate(extract_report_body(src.html), max_chars)
        omitted_total += omitted
        lines = [f"### REPORT {idx}: {src.title}", f"Date: {src.created_at.strftime('%Y-%m-%d')}"]
        period = _period(src)
        if period:
            lines.append(f"Period: {period}")
        if src.executive_summary:
            lines.append(f"Executive summary: {src.executive_summary}")
        lines.append(f"Content:\n{body}")
        if omitted:
            lines.append(f"[truncated: {omitted} characters omitted]")
        report_blocks.append("\n".join(lines))

    approved = [
        f"[{p.type}] {p.title}: {p.description}"
        + (f" (approved {p.approved_at.strftime('%Y-%m-%d')})" if p.approved_at else "")
        for p in feedback.approved
    ]
    sections = [
        f"PROJECT: {project_name}",
        f"PROJECT CONTEXT:\n{project_context.strip() or 'No additional context'}",
        f"REPORTS ({len(ordered)}, most recent first):\n\n" + "\n\n".join(report_blocks),
        f"APPROVED PROPOSALS (source for milestones):\n{_bullets(approved)}",
        f"LEARNED CONTEXT (answered questions):\n{_answered_block(feedback)}",
    ]
    if feedback.rejected_titles:
        sections.append(
            "DO NOT SUGGEST (rejected by the team; never mention these or anything similar):\n"
            + _bullets(feedback.rejected_titles)
        )
    sections.append("Generate the executive OVERVIEW. Respond ONLY with valid JSON.")
    return Prompt(
        system=overview_system_prompt(policy),
        user="\n\n".join(sections),
        omitted_chars=omitted_total,
    )
