# tools.py
# Tool registry: static contracts for every capability the controller can run.
#
# The registry is the single source of truth for what the planner may see and
# what the orchestrator may execute. Implementations live in tool_bus.py; this
# module only describes them. Built once at startup, immutable afterwards.

from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from codeloop.errors import SchemaViolation, UnknownTool
from codeloop.models import Phase


# ---------------------------------------------------------------------------
# Input schemas: one closed variant per tool
# ---------------------------------------------------------------------------


class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class FsReadArgs(_Args):
    path: str = Field(..., min_length=1)


class FsWriteArgs(_Args):
    path: str = Field(..., min_length=1)
    diff: str | None = Field(default=None, description="Controller-generated diff.")
    reason: str = ""


class FsCreateArgs(_Args):
    path: str = Field(..., min_length=1)
    content: str


class FsWriteDiffArgs(_Args):
    path: str = Field(..., min_length=1)
    diff: str = Field(..., min_length=1)


class FsDeleteArgs(_Args):
    path: str = Field(..., min_length=1)


class ExecRunArgs(_Args):
    command: str = Field(..., min_length=1)


class ErrorSummaryArgs(_Args):
    stderr: str


class GitStatusArgs(_Args):
    pass


class GitDiffArgs(_Args):
    staged: bool = False


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ToolContract(BaseModel):
    """Static metadata describing one callable capability."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    category: str
    description: str
    inputs_schema: type[BaseModel]
    outputs_schema: dict[str, str] = Field(default_factory=dict)
    visible_phases: frozenset[Phase] = frozenset({Phase.PLANNING})
    allowed_phases: frozenset[Phase] = frozenset({Phase.EXECUTION})
    forbidden_phases: frozenset[Phase] = frozenset()
    dependencies: tuple[str, ...] = ()
    requires_prior_read: bool = False
    side_effects: tuple[str, ...] = ()
    safety_rules: tuple[str, ...] = ()
    internal: bool = False

    @property
    def read_only(self) -> bool:
        return not self.side_effects

    def permitted_in(self, phase: Phase) -> bool:
        return phase in self.allowed_phases and phase not in self.forbidden_phases


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Immutable catalog of tool contracts keyed by name."""

    def __init__(self, contracts: Iterable[ToolContract]) -> None:
        table: dict[str, ToolContract] = {}
        for contract in contracts:
            if contract.name in table:
                raise ValueError(f"duplicate tool contract {contract.name!r}")
            table[contract.name] = contract
        self._contracts: Mapping[str, ToolContract] = MappingProxyType(table)

    @property
    def contracts(self) -> Mapping[str, ToolContract]:
        return self._contracts

    def __contains__(self, name: object) -> bool:
        return name in self._contracts

    def fetch(self, name: str) -> ToolContract | None:
        return self._contracts.get(name)

    def validate(self, name: str, args: dict[str, Any] | None) -> ToolContract:
        """Return the contract for `name` after checking `args` against its schema."""
        self.parse_args(name, args)
        return self._contracts[name]

    def parse_args(self, name: str, args: dict[str, Any] | None) -> BaseModel:
        contract = self.fetch(name)
        if contract is None:
            raise UnknownTool(f"Unknown tool {name!r}")
        try:
            return contract.inputs_schema.model_validate(args or {})
        except ValidationError as exc:
            raise SchemaViolation(f"{name}: {exc.errors(include_url=False)}") from exc

    def tools_for_phase(self, phase: Phase) -> dict[str, ToolContract]:
        return {
            name: contract
            for name, contract in self._contracts.items()
            if phase in contract.visible_phases and not contract.internal
        }

    @classmethod
    def default(cls) -> "ToolRegistry":
        return cls(DEFAULT_CONTRACTS)


_IO_RESULT = {"stdout": "string", "stderr": "string", "exit_code": "integer"}

DEFAULT_CONTRACTS: tuple[ToolContract, ...] = (
    ToolContract(
        name="fs.read",
        category="filesystem",
        description="Read an existing file. Missing files return empty content.",
        inputs_schema=FsReadArgs,
        outputs_schema={"path": "string", "content": "string", "exists": "boolean", "truncated": "boolean"},
        safety_rules=("path must pass the sandbox policy",),
    ),
    ToolContract(
        name="fs.write",
        category="filesystem",
        description="Edit an EXISTING file. The controller generates a minimal diff from 'reason'.",
        inputs_schema=FsWriteArgs,
        outputs_schema={"applied": "boolean"},
        dependencies=("requires prior fs.read of same path",),
        requires_prior_read=True,
        side_effects=("modifies file",),
        safety_rules=("path must pass the sandbox policy", "target must already exist"),
    ),
    ToolContract(
        name="fs.create",
        category="filesystem",
        description="Create a NEW file with the complete 'content'.",
        inputs_schema=FsCreateArgs,
        outputs_schema={"applied": "boolean"},
        side_effects=("creates file",),
        safety_rules=("path must pass the sandbox policy", "target must not exist"),
    ),
    ToolContract(
        name="fs.delete",
        category="filesystem",
        description="Delete a file.",
        inputs_schema=FsDeleteArgs,
        outputs_schema={"ok": "boolean"},
        side_effects=("deletes file",),
        safety_rules=("path must pass the sandbox policy",),
    ),
    ToolContract(
        name="fs.write_diff",
        category="filesystem",
        description="Apply a unified diff to one file.",
        inputs_schema=FsWriteDiffArgs,
        outputs_schema={"applied": "boolean"},
        visible_phases=frozenset(),
        forbidden_phases=frozenset({Phase.PLANNING}),
        dependencies=("requires prior fs.read of same path",),
        requires_prior_read=True,
        side_effects=("modifies file",),
        safety_rules=(
            "path must pass the sandbox policy",
            "diff header must match path",
            "diff must stay under the line ceiling",
        ),
        internal=True,
    ),
    ToolContract(
        name="exec.run",
        category="process",
        description="Run an allowlisted command in the repository root (tests, linters, diagnostics).",
        inputs_schema=ExecRunArgs,
        outputs_schema=_IO_RESULT,
        allowed_phases=frozenset({Phase.EXECUTION, Phase.OBSERVATION}),
        side_effects=("spawns process",),
        safety_rules=("command must match an allow prefix", "command must not match a deny pattern"),
    ),
    ToolContract(
        name="diagnostics.error_summary",
        category="diagnostics",
        description="Summarize captured stderr into a single root cause.",
        inputs_schema=ErrorSummaryArgs,
        outputs_schema={"root_cause": "string", "confidence": "number"},
    ),
    ToolContract(
        name="git.status",
        category="vcs",
        description="Show working tree status (read-only).",
        inputs_schema=GitStatusArgs,
        outputs_schema=_IO_RESULT,
        allowed_phases=frozenset({Phase.EXECUTION, Phase.OBSERVATION}),
    ),
    ToolContract(
        name="git.diff",
        category="vcs",
        description="Show the working tree diff (read-only).",
        inputs_schema=GitDiffArgs,
        outputs_schema=_IO_RESULT,
        allowed_phases=frozenset({Phase.EXECUTION, Phase.OBSERVATION}),
    ),
)
