# config.py
# Runtime configuration. One AgentConfig per process, passed by reference.
#
# Values come from (lowest to highest precedence): field defaults, the .env
# file, CODELOOP_* environment variables, explicit keyword overrides.

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "CODELOOP_"

DEFAULT_DENY_GLOBS = [".git/**", "node_modules/**", "tmp/**", "log/**"]


class AgentConfig(BaseModel):
    """Every tunable the control loop reads."""

    repo_path: Path = Field(default_factory=Path.cwd, description="Sandbox root.")

    # Sandbox
    allow_globs: list[str] = Field(default_factory=lambda: ["**/*"])
    deny_globs: list[str] = Field(default_factory=lambda: list(DEFAULT_DENY_GLOBS))

    # Command execution
    command_allowlist: list[str] = Field(
        default_factory=list,
        description="Allowed command prefixes. Empty means every command is denied.",
    )
    command_timeout_seconds: float = 60.0
    command_max_output_bytes: int = 20_000

    # File mutation
    max_diff_lines: int = 200
    max_file_bytes: int = 100_000
    dry_run: bool = False

    # Loop bounds
    max_cycles: int = 3
    max_plan_reviews: int = 2
    min_plan_confidence: float = 0.5
    max_tool_rejections: int = 2
    max_repeated_errors: int = 2

    # Observation
    require_tests: bool = True
    test_command: str | None = None

    # Collaborators
    retrieval_limit: int = 6
    model_decisions: bool = False
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    planner_model: str = "anthropic/claude-3.5-haiku"
    developer_model: str = "anthropic/claude-3.5-haiku"
    reviewer_model: str = "anthropic/claude-3.5-haiku"
    diagnostics_model: str = "anthropic/claude-3.5-haiku"

    def model_for(self, role: str) -> str:
        return getattr(self, f"{role}_model")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _coerce(name: str, raw: str):
    """Convert an environment string to the annotated type of field `name`."""
    annotation = AgentConfig.model_fields[name].annotation
    if annotation is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if annotation == list[str]:
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw


def _from_environment() -> dict:
    values: dict = {}
    for name in AgentConfig.model_fields:
        raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            values[name] = _coerce(name, raw)
    if "api_key" not in values and os.getenv("OPENROUTER_API_KEY"):
        values["api_key"] = os.getenv("OPENROUTER_API_KEY")
    return values


def load_config(repo_path: str | Path | None = None, **overrides) -> AgentConfig:
    """Build an AgentConfig from .env, the environment and explicit overrides."""
    load_dotenv()
    values = _from_environment()
    if repo_path is not None:
        values["repo_path"] = Path(repo_path)
    values.update(overrides)
    return AgentConfig.model_validate(values)
