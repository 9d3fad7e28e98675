from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

_PACKAGE_DIR = Path(__file__).parent


def _env_path(name: str, default: Path) -> Path:
    override = os.getenv(name, "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


def _data_dir() -> Path:
    return _env_path("BRIEFING_DATA_DIR", _PACKAGE_DIR / "data")


class OverviewPolicy(BaseModel):
    """Section ceilings for the Overview dashboard. Overridable via YAML."""

    max_kpis: int = 4
    max_highlights: int = 10
    max_milestones: int = 6
    max_insights: int = 5
    next_steps_min: int = 3
    next_steps_max: int = 5


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_data_dir)
    database_path: Path = Field(default_factory=lambda: _data_dir() / "briefing.db")
    storage_dir: Path = Field(
        default_factory=lambda: _env_path("BRIEFING_STORAGE_DIR", _data_dir() / "storage")
    )

    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", ""))
    llm_max_tokens: int = Field(default_factory=lambda: _env_int("LLM_MAX_TOKENS", 16000))

    max_prompt_rows: int = Field(default_factory=lambda: _env_int("BRIEFING_MAX_PROMPT_ROWS", 500))
    max_report_chars: int = Field(default_factory=lambda: _env_int("BRIEFING_MAX_REPORT_CHARS", 15000))
    max_overview_reports: int = Field(default_factory=lambda: _env_int("BRIEFING_MAX_OVERVIEW_REPORTS", 0))

    # USD per million tokens
    price_input_per_million: float = Field(default_factory=lambda: _env_float("BRIEFING_PRICE_INPUT", 3.0))
    price_output_per_million: float = Field(default_factory=lambda: _env_float("BRIEFING_PRICE_OUTPUT", 15.0))

    overview_policy_file: Path | None = Field(
        default_factory=lambda: (
            Path(os.environ["BRIEFING_OVERVIEW_POLICY"]).expanduser()
            if os.getenv("BRIEFING_OVERVIEW_POLICY") else None
        )
    )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    @property
    def uploads_dir(self) -> Path:
        return self.storage_dir / "uploads"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_overview_policy(self) -> OverviewPolicy:
        if self.overview_policy_file is None:
            return OverviewPolicy()
        raw = self.load_yaml(self.overview_policy_file)
        payload = raw.get("overview", raw)
        if not isinstance(payload, dict):
            return OverviewPolicy()
        known = {k: v for k, v in payload.items() if k in OverviewPolicy.model_fields and isinstance(v, int)}
        return OverviewPolicy(**known)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
