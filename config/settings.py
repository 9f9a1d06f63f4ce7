"""
Settings Configuration
Pydantic-managed relay settings
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings


class RelaySettings(BaseSettings):
    """Relay configuration; every value has a working default."""

    backend_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RELAY_BACKEND_URL", "BACKEND_URL"),
        description="Remote job runner base address; selects remote mode when set",
    )
    backend_dir: Path = Field(
        default_factory=lambda: Path.cwd().parent / "backend",
        description="Working directory of the local job and home of its artifacts",
    )
    override_env_file: Optional[Path] = Field(
        default=None,
        description="key=value overrides for the job environment (defaults to <backend_dir>/.env)",
    )
    python_bin: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RELAY_PYTHON_BIN", "PYTHON_BIN"),
        description="Preferred interpreter for the local job",
    )
    cli_relative_path: str = Field(default=".venv/bin/crewai", description="Dedicated CLI inside backend_dir")
    job_module: str = Field(default="socialcrew_ai.main", description="Module run with `python -m`")
    fallback_interpreters: List[str] = Field(default_factory=lambda: ["python3", "python"])
    pythonpath: str = Field(default="src", description="PYTHONPATH handed to the local job")

    content_artifact: str = Field(default="social_posts.json")
    report_artifact: str = Field(default="analytics_summary.md")
    log_artifact: str = Field(default="run.log")

    request_timeout: float = Field(default=30.0, description="HTTP timeout (seconds)")
    fetch_retries: int = Field(default=3, description="Attempts per artifact fetch on transport errors")

    class Config:
        env_prefix = "RELAY_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    @field_validator("backend_url", "python_bin", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        text = str(value or "").strip()
        return text or None

    @field_validator("backend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else value

    @property
    def remote_mode(self) -> bool:
        return bool(self.backend_url)

    @property
    def env_file_path(self) -> Path:
        return self.override_env_file or (self.backend_dir / ".env")

    @property
    def cli_path(self) -> Path:
        return self.backend_dir / self.cli_relative_path

    @property
    def artifact_names(self) -> List[str]:
        return [self.content_artifact, self.report_artifact]


@lru_cache()
def get_settings() -> RelaySettings:
    """Process-wide settings singleton."""
    return RelaySettings()
