# planner.py
# Planner: turns a goal into a validated Plan.
#
# The planner model proposes, the reviewer model critiques, and the loop is
# bounded by max_plan_reviews. Everything the models return is repaired and
# schema-validated here; on total failure the result is an empty plan with
# zero confidence, never an exception.

from typing import Any

from openai import OpenAIError
from pydantic import ValidationError

from codeloop import prompts
from codeloop.collaborators import Retriever, SessionMemory, Tracer, emit, json_schema_format, safe_retrieve
from codeloop.config import AgentConfig
from codeloop.errors import SchemaViolation
from codeloop.models import Phase, Plan, PlanReview
from codeloop.parsing import extract_json
from codeloop.tools import ToolRegistry

HISTORY_TURNS = 6


def empty_plan(goal: str, reason: str = "") -> Plan:
    return Plan(goal=goal, assumptions=[reason] if reason else [], confidence=0.0)


def normalize_confidence(value: Any) -> float:
    """Accept 0-1 or 0-100 and clamp to 0-1. Anything unusable is 0."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence > 1.0:
        confidence /= 100.0
    return min(max(confidence, 0.0), 1.0)


def normalize_steps(raw_steps: Any) -> list[dict[str, Any]]:
    steps: list[dict[str, Any]] = []
    for index, step in enumerate(raw_steps or [], start=1):
        if isinstance(step, str):
            steps.append({"step_id": index, "action": step, "reason": step, "depends_on": []})
            continue
        if not isinstance(step, dict):
            raise SchemaViolation(f"step {index} is neither an object nor a string")
        step = dict(step)
        step.setdefault("step_id", index)
        depends_on = step.get("depends_on")
        if depends_on is None:
            step["depends_on"] = []
        elif isinstance(depends_on, int):
            step["depends_on"] = [depends_on]
        steps.append(step)
    return steps


def parse_plan(raw: str, goal: str) -> Plan:
    """Repair and validate planner output. Raises SchemaViolation."""
    try:
        data = extract_json(raw)
    except ValueError as exc:
        raise SchemaViolation(f"planner did not return JSON: {exc}") from exc

    payload = {
        "plan_id": str(data.get("plan_id") or "plan"),
        "goal": str(data.get("goal") or goal),
        "assumptions": [str(a) for a in data.get("assumptions") or []],
        "steps": normalize_steps(data.get("steps")),
        "success_criteria": [str(c) for c in data.get("success_criteria") or []],
        "rollback_strategy": str(data.get("rollback_strategy") or "none"),
        "confidence": normalize_confidence(data.get("confidence")),
    }
    try:
        return Plan.model_validate(payload)
    except ValidationError as exc:
        raise SchemaViolation(f"plan failed validation: {exc.errors(include_url=False)}") from exc


class Planner:
    def __init__(
        self,
        model,
        registry: ToolRegistry,
        config: AgentConfig,
        *,
        retriever: Retriever | None = None,
        memory: SessionMemory | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._model = model
        self._registry = registry
        self._config = config
        self._retriever = retriever
        self._memory = memory
        self._tracer = tracer

    def plan(self, goal: str, summary: str = "", feedback: list[str] | None = None) -> Plan:
        feedback = list(feedback or [])
        plan = empty_plan(goal)

        # One proposal plus up to max_plan_reviews revisions.
        for attempt in range(self._config.max_plan_reviews + 1):
            plan = self._propose(goal, summary, feedback)
            if not plan.steps:
                return plan

            review = self._review(goal, plan)
            emit(self._tracer, "plan_review", attempt=attempt + 1, approved=review.approved, issues=review.issues)
            if review.approved:
                return plan
            feedback = feedback + [f"Reviewer: {issue}" for issue in review.issues]

        emit(self._tracer, "plan_review_exhausted", plan_id=plan.plan_id)
        return plan

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _propose(self, goal: str, summary: str, feedback: list[str]) -> Plan:
        prompt = self.build_prompt(goal, summary, feedback)
        try:
            raw = self._model.query("planner", prompt)
            plan = parse_plan(raw, goal)
        except (SchemaViolation, OpenAIError) as exc:
            emit(self._tracer, "plan_parse_failed", message=str(exc))
            return empty_plan(goal, f"Planning failed: {exc}")
        emit(self._tracer, "plan_proposed", plan=plan.model_dump(mode="json"))
        return plan

    def _review(self, goal: str, plan: Plan) -> PlanReview:
        if self._config.max_plan_reviews <= 0:
            return PlanReview(approved=True)
        prompt = (
            f"{prompts.PLANNER_REVIEW_SYSTEM}\n\n"
            f"Goal:\n{goal}\n\n"
            f"Plan:\n{plan.model_dump_json(indent=2)}"
        )
        try:
            raw = self._model.query(
                "reviewer",
                prompt,
                response_format=json_schema_format("plan_review", PlanReview.model_json_schema()),
            )
            return PlanReview.model_validate(extract_json(raw))
        except (ValueError, ValidationError, OpenAIError) as exc:
            # An unreadable review never blocks a plan; validation still runs.
            emit(self._tracer, "plan_review_failed", message=str(exc))
            return PlanReview(approved=True)

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt(self, goal: str, summary: str = "", feedback: list[str] | None = None) -> str:
        parts = [prompts.PLANNER_SYSTEM, "", "Available tools:"]
        for name, contract in sorted(self._registry.tools_for_phase(Phase.PLANNING).items()):
            fields = ", ".join(contract.inputs_schema.model_fields) or "no arguments"
            parts.append(f"- {name}: {contract.description} (fields: {fields})")
            for dependency in contract.dependencies:
                parts.append(f"    requires: {dependency}")

        snippets = safe_retrieve(self._retriever, goal, self._config.retrieval_limit)
        if snippets:
            parts += ["", "Repository context:"]
            for snippet in snippets:
                parts.append(f"{snippet['path']}:\n{snippet.get('text', '')}\n---")

        turns = self._memory.last_turns(HISTORY_TURNS) if self._memory else []
        if turns:
            parts += ["", "Recent conversation:"]
            parts += [f"{turn['role']}: {turn['content']}" for turn in turns]

        if summary:
            parts += ["", "Previous cycle:", summary]

        if feedback:
            parts += ["", "Previous plan was rejected. Fix these problems:"]
            parts += [f"- {item}" for item in feedback]

        parts += ["", f"Task:\n{goal}"]
        return "\n".join(parts)
