# models.py
# Data contracts for the agent control loop.
# No business logic lives here, only schema and validation.

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    """States of the orchestrator state machine."""

    INTENT = "intent"
    PLANNING = "planning"
    EXECUTION = "execution"
    OBSERVATION = "observation"
    REDUCTION = "reduction"
    DECISION = "decision"
    DONE = "done"
    HALTED = "halted"


class Intent(str, Enum):
    CODE_EDIT = "CODE_EDIT"
    CODE_REVIEW = "CODE_REVIEW"
    DEBUG = "DEBUG"
    EXPLANATION = "EXPLANATION"
    GENERAL = "GENERAL"
    REJECT = "REJECT"


# Intents answered directly, without tools or the control loop.
ANSWER_ONLY_INTENTS = frozenset({Intent.EXPLANATION, Intent.GENERAL, Intent.REJECT})


class ObservationKind(str, Enum):
    FILE_READ = "FILE_READ"
    FILE_WRITTEN = "FILE_WRITTEN"
    FILE_MISSING = "FILE_MISSING"
    FILE_DELETED = "FILE_DELETED"
    PATCH_APPLIED = "PATCH_APPLIED"
    COMMAND_RAN = "COMMAND_RAN"
    TEST_RESULT = "TEST_RESULT"
    TOOL_REJECTED = "TOOL_REJECTED"
    ACTION_FAILED = "ACTION_FAILED"
    NO_CHANGES = "NO_CHANGES"
    PLAN_REJECTED = "PLAN_REJECTED"


class TestStatus(str, Enum):
    __test__ = False  # not a pytest class

    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


class Verdict(str, Enum):
    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    BLOCKED = "BLOCKED"


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class Step(BaseModel):
    """A single action node in an execution plan."""

    model_config = ConfigDict(frozen=True)

    step_id: int = Field(..., ge=1, description="1-based step identifier, unique within a plan.")
    action: str = Field(..., min_length=1, description="Tool name, must exist in the registry.")
    path: str | None = Field(default=None, description="Target path for filesystem actions.")
    command: str | None = Field(default=None, description="Command line for exec.run.")
    content: str | None = Field(default=None, description="Full content for fs.create.")
    accepted_exit_codes: list[int] = Field(default_factory=lambda: [0])
    allow_failure: bool = False
    reason: str = Field(default="", description="Why this step is needed.")
    depends_on: list[int] = Field(default_factory=list, description="Prior step ids; 0 means none.")


class Plan(BaseModel):
    """A complete plan emitted by the planning model. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(default="plan")
    goal: str = Field(default="")
    assumptions: list[str] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list)
    rollback_strategy: str = Field(default="none")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_step_graph(self) -> "Plan":
        seen: set[int] = set()
        for step in self.steps:
            if step.step_id in seen:
                raise ValueError(f"duplicate step_id {step.step_id}")
            seen.add(step.step_id)
            for dep in step.depends_on:
                if dep != 0 and dep >= step.step_id:
                    raise ValueError(
                        f"step {step.step_id} depends_on {dep}; only smaller step ids or 0 are allowed"
                    )
        return self


# ---------------------------------------------------------------------------
# Observations and results
# ---------------------------------------------------------------------------


class Observation(BaseModel):
    """Immutable record appended to AgentState after each controller event."""

    model_config = ConfigDict(frozen=True)

    kind: ObservationKind
    step_id: int | None = None
    path: str | None = None
    status: TestStatus | None = None
    reason: str | None = None
    detail: str | None = None
    exit_code: int | None = None


class ErrorRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    signature: str
    message: str
    cycle: int = 0


class StepResult(BaseModel):
    success: bool
    output: Any = None


class Decision(BaseModel):
    decision: Verdict
    reason: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class GoalCheck(BaseModel):
    satisfied: bool
    reason: str


class IntentResult(BaseModel):
    intent: Intent
    confidence: float = Field(..., ge=0.0, le=1.0)


class ErrorSummary(BaseModel):
    root_cause: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class PlanReview(BaseModel):
    approved: bool
    issues: list[str] = Field(default_factory=list)
