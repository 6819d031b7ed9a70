# orchestrator.py
# The control loop.
#
# The Orchestrator is the kernel. Models are passive responders: this class
# owns every phase transition, every tool call and every stop condition.
#
# Control flow:
#   intent → planning → plan validation → execution → observation
#   → reduction → decision → {planning | done | halted}
#
# Each phase is a method; run() dispatches on AgentState.phase until the state
# is terminal. Cycles and plan reviews are bounded by configuration, so the
# loop always ends.

import os
from collections import Counter
from typing import Any, Callable

from openai import OpenAIError

from codeloop import prompts
from codeloop.collaborators import Retriever, SessionMemory, Tracer, emit, safe_retrieve
from codeloop.config import AgentConfig
from codeloop.decision import DecisionEngine
from codeloop.diffs import DiffGenerator
from codeloop.errors import (
    AgentError,
    CommandNotAllowed,
    DependencyUnmet,
    DiffInvalid,
    PathNotAllowed,
    PlanRejected,
    SchemaViolation,
    StepFailed,
    UnknownTool,
)
from codeloop.intent import IntentClassifier
from codeloop.merkle import PlanCommitment, plan_fingerprint
from codeloop.models import (
    ANSWER_ONLY_INTENTS,
    Intent,
    Observation,
    ObservationKind,
    Phase,
    Plan,
    Step,
    TestStatus,
    Verdict,
)
from codeloop.planner import Planner
from codeloop.state import AgentState, RunResult
from codeloop.tool_bus import ToolBus
from codeloop.tools import ToolRegistry
from codeloop.validation import GoalValidator, StagnationDetector, SuccessVerifier

FILE_TOOLS = frozenset({"fs.read", "fs.write", "fs.create", "fs.delete"})
RESULT_TOOLS = frozenset({"exec.run", "git.status", "git.diff"})
SUMMARY_WINDOW = 10
HISTORY_TURNS = 6
DETAIL_CHARS = 400


def _same_path(a: str | None, b: str | None) -> bool:
    def norm(p: str | None) -> str:
        p = (p or "").strip()
        while p.startswith("./"):
            p = p[2:]
        return os.path.normpath(p) if p else ""
    return bool(a) and norm(a) == norm(b)


def _tail(text: str | None, limit: int = DETAIL_CHARS) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else "…" + text[-limit:]


def describe(obs: Observation) -> str:
    """One summary line per observation."""
    parts = [obs.kind.value]
    if obs.step_id is not None:
        parts.append(f"step={obs.step_id}")
    if obs.path:
        parts.append(f"path={obs.path}")
    if obs.status is not None:
        parts.append(f"status={obs.status.value}")
    if obs.exit_code is not None:
        parts.append(f"exit={obs.exit_code}")
    if obs.reason:
        parts.append(f"reason={obs.reason}")
    return "- " + " ".join(parts)


class Orchestrator:
    """
    Runs one task to a terminal phase.

    Example:
        config = load_config("path/to/repo", command_allowlist=["pytest"])
        orchestrator = Orchestrator(config, OpenAIModelClient(config))
        result = orchestrator.run("Add a module docstring to app/cli.py")
    """

    def __init__(
        self,
        config: AgentConfig,
        model,
        *,
        registry: ToolRegistry | None = None,
        bus: ToolBus | None = None,
        planner: Planner | None = None,
        classifier: IntentClassifier | None = None,
        decision_engine: DecisionEngine | None = None,
        goal_validator: GoalValidator | None = None,
        diff_generator: DiffGenerator | None = None,
        retriever: Retriever | None = None,
        memory: SessionMemory | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._config = config
        self._model = model
        self._tracer = tracer
        self._retriever = retriever
        self._memory = memory or SessionMemory()
        self._registry = registry or ToolRegistry.default()
        self._bus = bus or ToolBus(config, self._registry, model=model, tracer=tracer)
        self._planner = planner or Planner(
            model, self._registry, config, retriever=retriever, memory=self._memory, tracer=tracer
        )
        self._classifier = classifier or IntentClassifier(model, tracer)
        self._decisions = decision_engine or DecisionEngine(model, tracer, use_model=config.model_decisions)
        self._goals = goal_validator or GoalValidator(self._bus.safety.root)
        self._diffs = diff_generator or DiffGenerator(model, config.max_diff_lines)

        self._phases: dict[Phase, Callable[[AgentState], None]] = {
            Phase.PLANNING: self._plan,
            Phase.EXECUTION: self._execute,
            Phase.OBSERVATION: self._observe,
            Phase.REDUCTION: self._reduce,
            Phase.DECISION: self._decide,
        }
        self._reset_run()

    def _reset_run(self) -> None:
        self._detector = StagnationDetector()
        self._commitment: PlanCommitment | None = None
        self._feedback: list[str] = []
        self._attempts: dict[str, int] = {}
        self._cycle_start = 0
        self._cycle_diff = ""
        self._last_stderr = ""
        self._answer = ""
        self._done_reason = ""

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, task: str) -> RunResult:
        """
        Drive one task to done or halted.

        Always returns a RunResult. Interrupts during a blocking call end the
        run as halted("interrupted") with the state left as it was.
        """
        self._reset_run()
        state = AgentState(goal=task)
        self._memory.append("user", task)
        emit(self._tracer, "task_start", goal=task)

        try:
            self._classify(state)
            while not state.terminal:
                self._phases[state.phase](state)
        except KeyboardInterrupt:
            self._halt(state, "interrupted")

        if self._answer:
            self._memory.append("assistant", self._answer)
        reason = state.halt_reason if state.phase == Phase.HALTED else self._done_reason
        emit(self._tracer, "task_end", phase=state.phase.value, reason=reason, cycles=state.cycle)
        return RunResult(phase=state.phase, answer=self._answer, reason=reason or "", state=state)

    # ------------------------------------------------------------------
    # Intent
    # ------------------------------------------------------------------

    def _classify(self, state: AgentState) -> None:
        result = self._classifier.classify(state.goal)
        state.intent = result.intent
        state.intent_confidence = result.confidence
        emit(self._tracer, "intent", intent=result.intent.value, confidence=result.confidence)

        if result.intent not in ANSWER_ONLY_INTENTS:
            state.phase = Phase.PLANNING
            return

        if result.intent == Intent.REJECT:
            self._finish(state, prompts.REJECT_ANSWER, "Request rejected")
        else:
            self._finish(state, self._answer_directly(state.goal), f"Answered directly ({result.intent.value})")

    def _answer_directly(self, question: str, summary: str = "") -> str:
        parts = [prompts.ANSWER_SYSTEM]
        turns = self._memory.last_turns(HISTORY_TURNS)
        if turns:
            parts += ["", "Recent conversation:"] + [f"{t['role']}: {t['content']}" for t in turns]
        snippets = safe_retrieve(self._retriever, question, self._config.retrieval_limit)
        if snippets:
            parts += ["", "Repository context:"]
            parts += [f"{s['path']}:\n{s.get('text', '')}\n---" for s in snippets]
        if summary:
            parts += ["", "What the agent did:", summary]
        parts += ["", f"Question:\n{question}"]
        try:
            return (self._model.query("developer", "\n".join(parts)) or "").strip()
        except OpenAIError as exc:
            emit(self._tracer, "answer_failed", message=str(exc))
            return summary

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan(self, state: AgentState) -> None:
        state.cycle += 1
        state.plan = None
        state.step_results = {}
        self._bus.reset()
        self._cycle_start = len(state.observations)
        emit(self._tracer, "cycle_start", cycle=state.cycle, max_cycles=self._config.max_cycles)

        plan = self._planner.plan(state.goal, state.summary, self._feedback)
        self._feedback = []

        if not plan.steps:
            self._finish(state, self._answer_directly(state.goal, state.summary), "No actions needed")
            return

        try:
            self.validate_plan(state, plan)
        except AgentError as exc:
            self._reject_plan(state, plan, exc)
            return

        fp = plan_fingerprint(plan)
        self._attempts[fp] = state.artifacts.patches_applied
        state.plan_fingerprints.append(fp)
        state.plan = plan
        self._commitment = PlanCommitment(plan.steps)
        emit(
            self._tracer,
            "plan_accepted",
            plan=plan.model_dump(mode="json"),
            fingerprint=fp,
        )
        state.phase = Phase.EXECUTION

    def validate_plan(self, state: AgentState, plan: Plan) -> None:
        """Raise a typed AgentError for the first rule `plan` breaks."""
        visible = self._registry.tools_for_phase(Phase.PLANNING)
        steps = {step.step_id: step for step in plan.steps}

        for step in plan.steps:
            if step.action not in visible:
                raise UnknownTool(f"step {step.step_id}: tool {step.action!r} is not available for planning")

        for step in plan.steps:
            if step.action == "fs.write" and not self._reads_first(step, steps):
                raise DependencyUnmet(
                    f"step {step.step_id}: fs.write {step.path!r} must depend_on an fs.read of the same path"
                )

        for step in plan.steps:
            self._check_fields(step)

        if state.cycle <= 1:
            reads = Counter(step.path for step in plan.steps if step.action == "fs.read")
            repeated = sorted(path for path, count in reads.items() if count > 1)
            if repeated:
                raise PlanRejected(f"fs.read repeated for {', '.join(repeated)} in the first cycle")

        for step in plan.steps:
            if step.action not in FILE_TOOLS:
                continue
            if not self._bus.safety.allowed(step.path):
                raise PathNotAllowed(f"step {step.step_id}: path not allowed: {step.path!r}")
            exists = os.path.exists(self._bus.safety.resolve(step.path))
            if step.action == "fs.write" and not exists:
                raise PlanRejected(f"step {step.step_id}: fs.write target does not exist, use fs.create: {step.path}")
            if step.action == "fs.create" and exists:
                raise PlanRejected(f"step {step.step_id}: fs.create target already exists: {step.path}")

        floor = self._config.min_plan_confidence
        if plan.confidence < floor and not all(self._low_risk(step) for step in plan.steps):
            raise PlanRejected(f"plan confidence {plan.confidence:.2f} is below {floor:.2f}")

        fp = plan_fingerprint(plan)
        if fp in self._attempts and self._attempts[fp] == state.artifacts.patches_applied:
            raise PlanRejected("plan repeated without progress")

    @staticmethod
    def _reads_first(step: Step, steps: dict[int, Step]) -> bool:
        return any(
            dep in steps and steps[dep].action == "fs.read" and _same_path(steps[dep].path, step.path)
            for dep in step.depends_on
        )

    @staticmethod
    def _check_fields(step: Step) -> None:
        if step.action in FILE_TOOLS and not (step.path or "").strip():
            raise SchemaViolation(f"step {step.step_id}: {step.action} needs a path")
        if step.action == "exec.run" and not (step.command or "").strip():
            raise SchemaViolation(f"step {step.step_id}: exec.run needs a command")
        if step.action == "fs.create" and step.content is None:
            raise SchemaViolation(f"step {step.step_id}: fs.create needs content")

    def _low_risk(self, step: Step) -> bool:
        contract = self._registry.fetch(step.action)
        return contract is not None and (contract.read_only or contract.category == "process")

    def _reject_plan(self, state: AgentState, plan: Plan, exc: AgentError) -> None:
        reason = f"{type(exc).__name__}: {exc}"
        state.record_observation(ObservationKind.PLAN_REJECTED, reason=reason, detail=plan.plan_id)
        state.record_error(reason, str(exc))
        self._attempts.setdefault(plan_fingerprint(plan), state.artifacts.patches_applied)
        emit(self._tracer, "plan_rejected", reason=reason, plan_id=plan.plan_id)

        stop = self._hard_stop(state)
        if stop:
            self._halt(state, stop)
        elif state.cycle >= self._config.max_cycles:
            self._halt(state, f"Plan rejected: {reason}")
        else:
            self._feedback = [reason]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, state: AgentState) -> None:
        plan = state.plan
        emit(self._tracer, "execution_start", steps=len(plan.steps))
        for index, step in enumerate(plan.steps):
            if not self._commitment.matches(index, step):
                self._fail(state, step, "plan changed after it was accepted", record=True)
                break
            if not self._run_step(state, step):
                break
        state.phase = Phase.OBSERVATION

    def _run_step(self, state: AgentState, step: Step) -> bool:
        """Execute one step. False stops the remaining steps of the plan."""
        contract = self._registry.fetch(step.action)
        if contract is None or not contract.permitted_in(state.phase):
            self._reject_tool(state, step, f"{step.action} is not permitted in {state.phase.value}")
            return False
        if contract.requires_prior_read and not self._read_done(state, step):
            self._reject_tool(state, step, f"DependencyUnmet: no successful fs.read of {step.path}")
            return False

        emit(self._tracer, "step_start", step_id=step.step_id, action=step.action, reason=step.reason)
        try:
            success, output = self._dispatch(state, step)
        except StepFailed as exc:
            state.record_observation(
                ObservationKind.ACTION_FAILED,
                step_id=step.step_id,
                path=step.path,
                reason=str(exc),
                exit_code=exc.exit_code,
            )
            state.record_step_result(step.step_id, False, str(exc))
            if step.allow_failure:
                emit(self._tracer, "step_failure_allowed", step_id=step.step_id, error=str(exc))
                return True
            state.record_error(f"{step.action}:{exc}", str(exc))
            emit(self._tracer, "step_failed", step_id=step.step_id, error=str(exc))
            return False
        except (PathNotAllowed, CommandNotAllowed, UnknownTool) as exc:
            self._reject_tool(state, step, str(exc))
            return False
        except (AgentError, OSError) as exc:
            return self._fail(state, step, f"{type(exc).__name__}: {exc}", record=not step.allow_failure)

        if success is not None:
            state.record_step_result(step.step_id, success, output)
        emit(self._tracer, "step_done", step_id=step.step_id, action=step.action, success=success is not False)
        return True

    def _read_done(self, state: AgentState, step: Step) -> bool:
        steps = {s.step_id: s for s in state.plan.steps} if state.plan else {}
        for dep in step.depends_on:
            result = state.step_results.get(dep)
            if dep in steps and steps[dep].action == "fs.read" and _same_path(steps[dep].path, step.path):
                if result is not None and result.success:
                    return True
        return False

    def _reject_tool(self, state: AgentState, step: Step, reason: str) -> None:
        state.tool_rejections += 1
        state.record_observation(ObservationKind.TOOL_REJECTED, step_id=step.step_id, path=step.path, reason=reason)
        state.record_step_result(step.step_id, False, reason)
        state.record_error(f"TOOL_REJECTED:{step.action}:{reason}", reason)
        emit(self._tracer, "tool_rejected", step_id=step.step_id, action=step.action, reason=reason)

    def _fail(self, state: AgentState, step: Step, reason: str, record: bool) -> bool:
        state.record_observation(ObservationKind.ACTION_FAILED, step_id=step.step_id, path=step.path, reason=reason)
        state.record_step_result(step.step_id, False, reason)
        if record:
            state.record_error(f"{step.action}:{reason}", reason)
        emit(self._tracer, "step_failed", step_id=step.step_id, error=reason)
        return not record

    def _dispatch(self, state: AgentState, step: Step) -> tuple[bool | None, Any]:
        """
        Run `step` through the bus and record what happened.

        Returns (success, output). success is None for successful mutations:
        those are recorded as artifacts, not as step results.
        """
        action = step.action
        if action == "fs.read":
            return self._read(state, step)
        if action == "fs.write":
            return self._write(state, step)
        if action == "fs.create":
            return self._mutate(state, step, {"type": "fs.create", "args": {"path": step.path, "content": step.content}})
        if action == "fs.delete":
            result = self._bus.invoke({"type": "fs.delete", "args": {"path": step.path}})
            if result.get("existed"):
                state.record_file_written(step.path)
            state.record_observation(ObservationKind.FILE_DELETED, step_id=step.step_id, path=step.path)
            return None, result
        if action == "diagnostics.error_summary":
            stderr = step.content if step.content is not None else self._last_stderr
            result = self._bus.invoke({"type": action, "args": {"stderr": stderr}})
            return True, result
        if action in RESULT_TOOLS:
            return self._command(state, step)
        raise UnknownTool(f"no executor for {action!r}")

    def _read(self, state: AgentState, step: Step) -> tuple[bool, Any]:
        result = self._bus.invoke({"type": "fs.read", "args": {"path": step.path}})
        if not result["exists"]:
            state.record_observation(ObservationKind.FILE_MISSING, step_id=step.step_id, path=step.path)
            return False, result
        state.record_file_read(step.path)
        state.record_observation(
            ObservationKind.FILE_READ,
            step_id=step.step_id,
            path=step.path,
            detail="truncated" if result["truncated"] else None,
        )
        return True, result

    def _write(self, state: AgentState, step: Step) -> tuple[bool | None, Any]:
        current = self._bus.invoke({"type": "fs.read", "args": {"path": step.path}})
        if not current["exists"]:
            raise StepFailed(f"{step.path} no longer exists")
        if current["truncated"]:
            raise DiffInvalid(f"{step.path} is larger than {self._config.max_file_bytes} bytes")
        diff = self._diffs.generate(step.path, current["content"], state.goal, step.reason, file_exists=True)
        return self._mutate(state, step, {"type": "fs.write_diff", "args": {"path": step.path, "diff": diff}})

    def _mutate(self, state: AgentState, step: Step, action: dict[str, Any]) -> tuple[bool | None, Any]:
        result = self._bus.invoke(action)
        if result.get("applied") and not result.get("noop"):
            state.record_file_written(step.path)
            state.record_patch_applied()
            state.record_observation(ObservationKind.FILE_WRITTEN, step_id=step.step_id, path=step.path)
            state.record_observation(ObservationKind.PATCH_APPLIED, step_id=step.step_id, path=step.path)
            return None, result
        # No-op and dry-run diffs succeed without touching disk.
        return True, result

    def _command(self, state: AgentState, step: Step) -> tuple[bool, Any]:
        if step.action == "exec.run":
            result = self._bus.invoke({"type": "exec.run", "args": {"command": step.command}})
            label = step.command
            state.record_command(step.command)
        else:
            result = self._bus.invoke({"type": step.action, "args": {}})
            label = step.action.replace(".", " ")
        self._last_stderr = result["stderr"]
        exit_code = result["exit_code"]
        state.record_observation(
            ObservationKind.COMMAND_RAN,
            step_id=step.step_id,
            reason=label,
            detail=_tail(result["stderr"] or result["stdout"]),
            exit_code=exit_code,
        )
        if exit_code not in step.accepted_exit_codes:
            raise StepFailed(f"{label} exited with {exit_code}", exit_code=exit_code)
        return True, result

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def _observe(self, state: AgentState) -> None:
        if not self._bus.changes_made:
            state.record_observation(ObservationKind.NO_CHANGES, reason="no filesystem changes this cycle")
        elif self._config.require_tests:
            self._run_tests(state)
        self._cycle_diff = self._working_tree_diff(state)
        state.phase = Phase.REDUCTION

    def _run_tests(self, state: AgentState) -> None:
        command = self._config.test_command
        contract = self._registry.fetch("exec.run")
        if not command or contract is None or not contract.permitted_in(state.phase):
            state.record_observation(
                ObservationKind.TEST_RESULT, status=TestStatus.SKIP, reason="no test command available"
            )
            return
        try:
            result = self._bus.invoke({"type": "exec.run", "args": {"command": command}})
        except CommandNotAllowed as exc:
            state.record_observation(ObservationKind.TEST_RESULT, status=TestStatus.SKIP, reason=str(exc))
            return
        state.record_command(command)
        status = TestStatus.PASS if result["exit_code"] == 0 else TestStatus.FAIL
        state.record_observation(
            ObservationKind.TEST_RESULT,
            status=status,
            reason=command,
            detail=_tail(result["stderr"] or result["stdout"]),
            exit_code=result["exit_code"],
        )
        emit(self._tracer, "tests", status=status.value, exit_code=result["exit_code"])

    def _working_tree_diff(self, state: AgentState) -> str:
        diff = "".join(self._bus.applied_diffs)
        if os.path.isdir(os.path.join(self._bus.safety.root, ".git")):
            result = self._bus.invoke({"type": "git.diff", "args": {}})
            diff += result["stdout"]
        return diff

    # ------------------------------------------------------------------
    # Reduction
    # ------------------------------------------------------------------

    def _reduce(self, state: AgentState) -> None:
        artifacts = state.artifacts
        lines = [f"Cycle {state.cycle}/{self._config.max_cycles}. Recent observations:"]
        lines += [describe(obs) for obs in state.observations[-SUMMARY_WINDOW:]]
        lines.append(
            f"Artifacts: {len(artifacts.files_read)} files read, {len(artifacts.files_written)} files written, "
            f"{artifacts.patches_applied} patches applied, {len(artifacts.commands_run)} commands run"
        )
        state.summary = "\n".join(lines)
        emit(self._tracer, "reduction", summary=state.summary)
        state.phase = Phase.DECISION

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def _decide(self, state: AgentState) -> None:
        cycle_observations = state.observations[self._cycle_start:]
        self._detector.record(
            diff=self._cycle_diff,
            plan_fingerprint=state.plan_fingerprints[-1] if state.plan_fingerprints else None,
            observations=cycle_observations,
        )
        stop = self._hard_stop(state, stagnation=True)
        if stop:
            self._halt(state, stop)
            return

        decision = self._decisions.decide(state.plan, state.step_results, cycle_observations)
        state.last_decision = decision
        goal = self._goals.check(state)
        emit(
            self._tracer,
            "decision",
            decision=decision.decision.value,
            reason=decision.reason,
            confidence=decision.confidence,
        )
        emit(self._tracer, "goal_validation", satisfied=goal.satisfied, reason=goal.reason)

        if decision.decision == Verdict.BLOCKED:
            self._halt(state, f"Blocked: {decision.reason}")
            return

        feedback = [f"Last decision: {decision.decision.value} ({decision.reason})"]
        if decision.decision == Verdict.SUCCESS:
            criteria = SuccessVerifier.verify(
                state.plan.success_criteria if state.plan else [], state.observations, state.artifacts
            )
            if goal.satisfied and criteria.satisfied:
                self._finish(state, self._answer_directly(state.goal, state.summary), goal.reason)
                return
            feedback.append(goal.reason if not goal.satisfied else criteria.reason)

        if state.cycle >= self._config.max_cycles:
            self._halt(state, f"Maximum cycles reached: {feedback[-1]}")
            return
        self._feedback = feedback
        state.phase = Phase.PLANNING

    def _hard_stop(self, state: AgentState, stagnation: bool = False) -> str | None:
        if state.tool_rejections >= self._config.max_tool_rejections:
            return f"Too many tool rejections ({state.tool_rejections})"
        if state.repeat_error_count >= self._config.max_repeated_errors:
            return f"Repeated error: {state.last_error_signature}"
        if stagnation:
            stagnant, reason = self._detector.stagnant()
            if stagnant:
                emit(self._tracer, "goal_stagnation", reason=reason)
                return f"Stagnation: {reason}"
        return None

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _finish(self, state: AgentState, answer: str, reason: str) -> None:
        state.phase = Phase.DONE
        self._answer = answer
        self._done_reason = reason
        emit(self._tracer, "done", reason=reason)

    def _halt(self, state: AgentState, reason: str) -> None:
        state.phase = Phase.HALTED
        state.halt_reason = reason
        emit(self._tracer, "halted", reason=reason)
