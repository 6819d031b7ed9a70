# state.py
# AgentState: the controller-owned working memory for one task.
#
# Models may propose plans, but only the orchestrator mutates this object:
# phase progression, observations, errors, artifacts and hard-stop counters
# all live here. Created fresh per task, discarded at done/halted.

from pydantic import BaseModel, Field

from codeloop.models import (
    Decision,
    ErrorRecord,
    Intent,
    Observation,
    ObservationKind,
    Phase,
    Plan,
    StepResult,
)


class Artifacts(BaseModel):
    files_read: set[str] = Field(default_factory=set)
    files_written: set[str] = Field(default_factory=set)
    patches_applied: int = 0
    commands_run: list[str] = Field(default_factory=list)


class AgentState(BaseModel):
    goal: str
    phase: Phase = Phase.INTENT
    cycle: int = 0
    intent: Intent | None = None
    intent_confidence: float = 0.0
    plan: Plan | None = None
    observations: list[Observation] = Field(default_factory=list)
    errors: list[ErrorRecord] = Field(default_factory=list)
    artifacts: Artifacts = Field(default_factory=Artifacts)
    tool_rejections: int = 0
    plan_fingerprints: list[str] = Field(default_factory=list)
    clarification_asked: bool = False
    step_results: dict[int, StepResult] = Field(default_factory=dict)

    summary: str = ""
    last_decision: Decision | None = None
    last_error_signature: str | None = None
    repeat_error_count: int = 0
    halt_reason: str | None = None

    # ------------------------------------------------------------------
    # Append-only records
    # ------------------------------------------------------------------

    def record_observation(self, kind: ObservationKind, **fields) -> Observation:
        observation = Observation(kind=kind, **fields)
        self.observations.append(observation)
        return observation

    def record_error(self, signature: str, message: str) -> None:
        """Append an error and track consecutive repeats of its signature."""
        self.errors.append(ErrorRecord(signature=signature, message=message, cycle=self.cycle))
        if self.last_error_signature == signature:
            self.repeat_error_count += 1
        else:
            self.last_error_signature = signature
            self.repeat_error_count = 1

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def record_file_read(self, path: str) -> None:
        self.artifacts.files_read.add(path)

    def record_file_written(self, path: str) -> None:
        self.artifacts.files_written.add(path)

    def record_patch_applied(self) -> None:
        self.artifacts.patches_applied += 1

    def record_command(self, command: str) -> None:
        self.artifacts.commands_run.append(command)

    def record_step_result(self, step_id: int, success: bool, output=None) -> None:
        self.step_results[step_id] = StepResult(success=success, output=output)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def terminal(self) -> bool:
        return self.phase in (Phase.DONE, Phase.HALTED)

    def observations_of(self, kind: ObservationKind) -> list[Observation]:
        return [obs for obs in self.observations if obs.kind == kind]

    def errors_in_cycle(self, cycle: int | None = None) -> list[ErrorRecord]:
        cycle = self.cycle if cycle is None else cycle
        return [err for err in self.errors if err.cycle == cycle]


class RunResult(BaseModel):
    """What Orchestrator.run hands back: terminal phase, answer and the full state."""

    phase: Phase
    answer: str = ""
    reason: str = ""
    state: AgentState
