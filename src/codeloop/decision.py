# decision.py
# DecisionEngine: SUCCESS, RETRY or BLOCKED after each cycle.
#
# The rule set below always runs. When model decisions are enabled the
# reviewer's verdict may refine it, but a failing test can never be talked
# into anything other than RETRY.

import json

from openai import OpenAIError
from pydantic import ValidationError

from codeloop import prompts
from codeloop.collaborators import Tracer, emit, json_schema_format
from codeloop.models import Decision, Observation, ObservationKind, Plan, StepResult, TestStatus, Verdict
from codeloop.parsing import extract_json


def _has_test(observations: list[Observation], status: TestStatus) -> bool:
    return any(o.kind == ObservationKind.TEST_RESULT and o.status == status for o in observations)


class DecisionEngine:
    def __init__(self, model=None, tracer: Tracer | None = None, use_model: bool = False) -> None:
        self._model = model
        self._tracer = tracer
        self._use_model = use_model and model is not None

    def decide(
        self,
        plan: Plan | None,
        step_results: dict[int, StepResult],
        observations: list[Observation],
    ) -> Decision:
        baseline = self.heuristic(plan, observations)
        if not self._use_model:
            return baseline

        try:
            raw = self._model.query(
                "reviewer",
                self._prompt(plan, step_results, observations),
                response_format=json_schema_format("decision", Decision.model_json_schema()),
            )
            decision = Decision.model_validate(extract_json(raw))
        except (ValueError, ValidationError, OpenAIError) as exc:
            emit(self._tracer, "decision_failed", message=str(exc))
            return baseline

        if _has_test(observations, TestStatus.FAIL) and decision.decision != Verdict.RETRY:
            return baseline
        return decision

    @staticmethod
    def heuristic(plan: Plan | None, observations: list[Observation]) -> Decision:
        if _has_test(observations, TestStatus.FAIL):
            return Decision(decision=Verdict.RETRY, reason="Tests failing", confidence=0.65)
        if plan is None or not plan.success_criteria:
            return Decision(
                decision=Verdict.SUCCESS,
                reason="No success criteria provided; assuming done",
                confidence=0.55,
            )
        if _has_test(observations, TestStatus.PASS):
            return Decision(decision=Verdict.SUCCESS, reason="Tests passed", confidence=0.85)
        return Decision(decision=Verdict.RETRY, reason="Uncertain; refine plan", confidence=0.55)

    @staticmethod
    def _prompt(plan: Plan | None, step_results: dict[int, StepResult], observations: list[Observation]) -> str:
        plan_json = plan.model_dump_json(indent=2) if plan is not None else "{}"
        results_json = json.dumps(
            {str(k): v.model_dump(mode="json") for k, v in step_results.items()}, indent=2, default=str
        )
        observations_json = json.dumps([o.model_dump(mode="json", exclude_none=True) for o in observations], indent=2)
        return (
            f"{prompts.DECISION_SYSTEM}\n\n"
            f"Plan:\n{plan_json}\n\n"
            f"Step results:\n{results_json}\n\n"
            f"Observations:\n{observations_json}"
        )
