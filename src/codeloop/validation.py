# validation.py
# Controller-owned termination checks. None of these consult a model.
#
#   StagnationDetector: circuit breaker against an oracle that repeats itself
#   GoalValidator     : "is the goal met?" from observable facts only
#   SuccessVerifier   : checks a plan's own success criteria against reality

import os
import shutil
import subprocess
from collections import deque

from codeloop.merkle import fingerprint
from codeloop.models import GoalCheck, Observation, ObservationKind, TestStatus
from codeloop.state import AgentState, Artifacts

MAX_HISTORY = 5


# ---------------------------------------------------------------------------
# StagnationDetector
# ---------------------------------------------------------------------------


class StagnationDetector:
    """
    Keeps the last MAX_HISTORY fingerprints of three streams: the working-tree
    diff, the plan structure and the observation pattern. Stagnant as soon as
    the two newest entries of any stream are equal.
    """

    def __init__(self, history: int = MAX_HISTORY) -> None:
        self._diffs: deque[str] = deque(maxlen=history)
        self._plans: deque[str] = deque(maxlen=history)
        self._observations: deque[str] = deque(maxlen=history)

    def record(
        self,
        diff: str | None = None,
        plan_fingerprint: str | None = None,
        observations: list[Observation] | None = None,
    ) -> None:
        self._diffs.append(fingerprint(diff))
        if plan_fingerprint is not None:
            self._plans.append(plan_fingerprint)
        if observations is not None:
            self._observations.append(fingerprint(observation_pattern(observations)))

    def stagnant(self) -> tuple[bool, str]:
        if len(self._diffs) < 2:
            return False, "Insufficient history"
        if _repeated(self._diffs):
            return True, "Same diff repeated"
        if _repeated(self._plans):
            return True, "Same plan repeated"
        if _repeated(self._observations):
            return True, "Same observation pattern repeated"
        return False, "Making progress"

    def reset(self) -> None:
        self._diffs.clear()
        self._plans.clear()
        self._observations.clear()

    @staticmethod
    def same_diff(previous: str | None, current: str | None) -> bool:
        return fingerprint(previous) == fingerprint(current)


def _repeated(stream: deque[str]) -> bool:
    return len(stream) >= 2 and stream[-1] == stream[-2]


def observation_pattern(observations: list[Observation]) -> str:
    """Kind sequence of a cycle, with test status and exit code where present."""
    parts = []
    for obs in observations:
        part = obs.kind.value
        if obs.status is not None:
            part += f":{obs.status.value}"
        if obs.exit_code is not None:
            part += f":{obs.exit_code}"
        parts.append(part)
    return "|".join(parts)


# ---------------------------------------------------------------------------
# GoalValidator
# ---------------------------------------------------------------------------


class GoalValidator:
    """Strict precedence, strongest evidence first. See check()."""

    def __init__(self, repo_path: str, timeout: float = 10.0) -> None:
        self._repo_path = str(repo_path)
        self._timeout = timeout

    def check(self, state: AgentState) -> GoalCheck:
        if self._has_errors(state):
            return GoalCheck(satisfied=False, reason="Errors encountered")
        if state.clarification_asked:
            return GoalCheck(satisfied=False, reason="Clarification needed")
        if _tests_passed(state.observations):
            return GoalCheck(satisfied=True, reason="Tests passed")
        if state.step_results and all(r.success for r in state.step_results.values()):
            return GoalCheck(satisfied=True, reason="All steps completed successfully")
        if state.artifacts.files_written or state.artifacts.patches_applied > 0:
            return GoalCheck(satisfied=True, reason="Files modified as expected")
        if self.has_uncommitted_changes():
            return GoalCheck(satisfied=True, reason="Changes made to repository")
        return GoalCheck(satisfied=False, reason="No observable progress")

    @staticmethod
    def _has_errors(state: AgentState) -> bool:
        if state.errors_in_cycle():
            return True
        # A failing test counts until a later PASS shows recovery.
        for index, obs in enumerate(state.observations):
            if obs.kind == ObservationKind.TEST_RESULT and obs.status == TestStatus.FAIL:
                if not _tests_passed(state.observations[index + 1:]):
                    return True
        return False

    def has_uncommitted_changes(self) -> bool:
        if not os.path.isdir(self._repo_path) or shutil.which("git") is None:
            return False
        try:
            inside = subprocess.run(
                ["git", "rev-parse", "--is-inside-work-tree"],
                cwd=self._repo_path,
                capture_output=True,
                timeout=self._timeout,
            )
            if inside.returncode != 0:
                return False
            # --quiet exits 1 when the tree differs from the index.
            diff = subprocess.run(
                ["git", "diff", "--quiet"],
                cwd=self._repo_path,
                capture_output=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return diff.returncode == 1


def _tests_passed(observations: list[Observation]) -> bool:
    return any(
        obs.kind == ObservationKind.TEST_RESULT and obs.status == TestStatus.PASS
        for obs in observations
    )


# ---------------------------------------------------------------------------
# SuccessVerifier
# ---------------------------------------------------------------------------


class SuccessVerifier:
    """
    Checks plan success criteria that the controller can observe.

    A criterion mentioning tests needs a PASS test result; one mentioning files
    needs at least one written file. Anything else is not machine-checkable and
    passes.
    """

    @staticmethod
    def verify(criteria: list[str], observations: list[Observation], artifacts: Artifacts) -> GoalCheck:
        for criterion in criteria:
            text = criterion.lower()
            if "test" in text:
                if not _tests_passed(observations):
                    return GoalCheck(satisfied=False, reason="Success criteria unmet: tests did not pass")
            elif "file" in text:
                if not artifacts.files_written:
                    return GoalCheck(satisfied=False, reason="Success criteria unmet: no files modified")
        return GoalCheck(satisfied=True, reason="Success criteria met")
