"""Resource-usage accounting.

``AIMetadata`` is the accumulator stored on every Report.  Each successful
generation or refinement adds its token counts and duration to the stored
values (``add``) while ``model`` and ``project_status`` always reflect the
latest call.  Reports created from an uploaded HTML file carry the
``UPLOADED`` sentinel and count as zero-cost.
"""
from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from briefing.config import get_settings
from briefing.models import Project, Report
from briefing.utils import json_parse

UPLOADED_SOURCE = "UPLOADED"


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class AIMetadata:
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    duration: int = 0  # milliseconds
    project_status: str | None = None
    source: str | None = None

    @classmethod
    def uploaded(cls) -> AIMetadata:
        return cls(source=UPLOADED_SOURCE)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AIMetadata:
        if not isinstance(data, dict):
            return cls()
        return cls(
            model=str(data.get("model") or ""),
            input_tokens=_int(data.get("inputTokens")),
            output_tokens=_int(data.get("outputTokens")),
            duration=_int(data.get("duration")),
            project_status=data.get("projectStatus"),
            source=data.get("source"),
        )

    @classmethod
    def from_json(cls, value: str | None) -> AIMetadata | None:
        if not value:
            return None
        return cls.from_dict(json_parse(value))

    def add(self, other: AIMetadata) -> AIMetadata:
        """Combine with a newer call: counters add up, labels take the newer value."""
        return AIMetadata(
            model=other.model or self.model,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            duration=self.duration + other.duration,
            project_status=other.project_status or self.project_status,
            source=self.source,
        )

    def to_dict(self) -> dict[str, Any]:
        if self.source == UPLOADED_SOURCE and not self.model:
            return {"source": UPLOADED_SOURCE, "inputTokens": self.input_tokens,
                    "outputTokens": self.output_tokens}
        data: dict[str, Any] = {
            "model": self.model,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "duration": self.duration,
        }
        if self.project_status:
            data["projectStatus"] = self.project_status
        if self.source:
            data["source"] = self.source
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def accumulate(stored_json: str | None, latest: AIMetadata) -> str:
    """Merge *latest* into the JSON blob stored on a report."""
    prior = AIMetadata.from_json(stored_json)
    merged = latest if prior is None else prior.add(latest)
    return merged.to_json()


def calculate_cost(input_tokens: int, output_tokens: int) -> float:
    settings = get_settings()
    return (
        input_tokens / 1_000_000 * settings.price_input_per_million
        + output_tokens / 1_000_000 * settings.price_output_per_million
    )


def usage_summary(session: Session) -> dict[str, Any]:
    """Token and cost totals over READY reports, per project and per month."""
    rows = session.execute(
        select(Report, Project.slug, Project.name)
        .join(Project, Report.project_id == Project.id)
        .where(Report.status == "READY", Report.ai_metadata_json.is_not(None))
        .order_by(Report.created_at.desc())
    ).all()

    totals = {"inputTokens": 0, "outputTokens": 0, "reports": 0}
    by_project: dict[str, dict[str, Any]] = {}
    by_month: dict[str, dict[str, int]] = defaultdict(lambda: {"inputTokens": 0, "outputTokens": 0, "reports": 0})
    reports: list[dict[str, Any]] = []

    for report, slug, name in rows:
        meta = AIMetadata.from_json(report.ai_metadata_json)
        if meta is None:
            continue
        totals["inputTokens"] += meta.input_tokens
        totals["outputTokens"] += meta.output_tokens
        totals["reports"] += 1

        proj = by_project.setdefault(slug, {
            "slug": slug, "name": name, "inputTokens": 0, "outputTokens": 0, "reports": 0,
        })
        proj["inputTokens"] += meta.input_tokens
        proj["outputTokens"] += meta.output_tokens
        proj["reports"] += 1

        month = by_month[report.created_at.strftime("%Y-%m")]
        month["inputTokens"] += meta.input_tokens
        month["outputTokens"] += meta.output_tokens
        month["reports"] += 1

        reports.append({
            "id": report.id, "title": report.title, "project": slug,
            "model": meta.model, "source": meta.source,
            "inputTokens": meta.input_tokens, "outputTokens": meta.output_tokens,
            "cost": calculate_cost(meta.input_tokens, meta.output_tokens),
        })

    projects = sorted(
        ({**p, "cost": calculate_cost(p["inputTokens"], p["outputTokens"])} for p in by_project.values()),
        key=lambda p: p["cost"], reverse=True,
    )
    months = {
        k: {**v, "cost": calculate_cost(v["inputTokens"], v["outputTokens"])}
        for k, v in sorted(by_month.items(), reverse=True)
    }
    return {
        **totals,
        "cost": calculate_cost(totals["inputTokens"], totals["outputTokens"]),
        "projects": projects,
        "months": months,
        "reportsDetail": reports,
    }
