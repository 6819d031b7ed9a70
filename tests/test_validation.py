import shutil
import subprocess
import pytest
from unittest.mock import patch

from codeloop.merkle import EMPTY_FINGERPRINT, PlanCommitment, fingerprint, plan_fingerprint
from codeloop.models import ObservationKind, Plan, Step, TestStatus
from codeloop.state import AgentState, Artifacts
from codeloop.validation import GoalValidator, StagnationDetector, SuccessVerifier, observation_pattern

# ---------------------------------------------------------------------------
# Merkle commitments
# ---------------------------------------------------------------------------

def test_commitment_construction_and_verification():
    step1 = Step(step_id=1, action="fs.read", path="a.txt", reason="look")
    step2 = Step(step_id=2, action="exec.run", command="pytest -q", reason="test")
    step3 = Step(step_id=3, action="git.status")
    commitment = PlanCommitment([step1, step2, step3])

    assert len(commitment) == 3
    assert commitment.matches(0, step1) is True
    assert commitment.matches(2, step3) is True
    assert commitment.matches(1, step1) is False
    assert commitment.matches(5, step1) is False

    mutated = step1.model_copy(update={"path": "/etc/passwd"})
    assert commitment.matches(0, mutated) is False
    # Commentary is not committed.
    assert commitment.matches(0, step1.model_copy(update={"reason": "reworded"})) is True

def test_commitment_root_depends_on_order():
    a = Step(step_id=1, action="fs.read", path="a.txt")
    b = Step(step_id=2, action="fs.read", path="b.txt")
    assert PlanCommitment([a, b]).root != PlanCommitment([b, a]).root
    assert PlanCommitment([a]).root == PlanCommitment.leaf(a)

def test_commitment_needs_steps():
    with pytest.raises(ValueError, match="no steps"):
        PlanCommitment([])

def test_plan_fingerprint_ignores_commentary():
    a = Plan(steps=[Step(step_id=1, action="fs.read", path="a.txt", reason="first look")], confidence=0.9)
    b = Plan(steps=[Step(step_id=1, action="fs.read", path="a.txt", reason="another look")], confidence=0.4)
    c = Plan(steps=[Step(step_id=1, action="fs.read", path="b.txt")])
    assert plan_fingerprint(a) == plan_fingerprint(b)
    assert plan_fingerprint(a) != plan_fingerprint(c)
    assert plan_fingerprint(Plan()) == EMPTY_FINGERPRINT

def test_fingerprint_of_blank_content():
    assert fingerprint(None) == EMPTY_FINGERPRINT
    assert fingerprint("  \n") == EMPTY_FINGERPRINT
    assert fingerprint("diff\n") == fingerprint("  diff")

# ---------------------------------------------------------------------------
# StagnationDetector
# ---------------------------------------------------------------------------

def test_stagnation_needs_two_entries():
    detector = StagnationDetector()
    detector.record(diff="a")
    assert detector.stagnant() == (False, "Insufficient history")

def test_same_diff_twice_is_stagnant():
    detector = StagnationDetector()
    detector.record(diff="--- a/x\n+++ b/x\n")
    detector.record(diff="--- a/x\n+++ b/x\n")
    assert detector.stagnant() == (True, "Same diff repeated")

def test_same_plan_twice_is_stagnant():
    detector = StagnationDetector()
    detector.record(diff="one", plan_fingerprint="p1")
    detector.record(diff="two", plan_fingerprint="p1")
    assert detector.stagnant() == (True, "Same plan repeated")

def test_same_observation_pattern_is_stagnant():
    state = AgentState(goal="goal")
    obs = [state.record_observation(ObservationKind.COMMAND_RAN, exit_code=1)]
    detector = StagnationDetector()
    detector.record(diff="one", plan_fingerprint="p1", observations=obs)
    detector.record(diff="two", plan_fingerprint="p2", observations=obs)
    assert detector.stagnant() == (True, "Same observation pattern repeated")

def test_changing_streams_are_progress():
    detector = StagnationDetector()
    detector.record(diff="one", plan_fingerprint="p1")
    detector.record(diff="two", plan_fingerprint="p2")
    assert detector.stagnant() == (False, "Making progress")
    detector.reset()
    assert detector.stagnant() == (False, "Insufficient history")

def test_history_is_bounded():
    detector = StagnationDetector(history=2)
    for diff in ("a", "b", "c"):
        detector.record(diff=diff)
    assert len(detector._diffs) == 2

def test_same_diff_helper():
    assert StagnationDetector.same_diff("x\n", " x") is True
    assert StagnationDetector.same_diff("x", "y") is False

def test_observation_pattern_includes_status_and_exit_code():
    state = AgentState(goal="goal")
    state.record_observation(ObservationKind.FILE_WRITTEN, path="a.txt")
    state.record_observation(ObservationKind.TEST_RESULT, status=TestStatus.FAIL, exit_code=1)
    assert observation_pattern(state.observations) == "FILE_WRITTEN|TEST_RESULT:FAIL:1"

# ---------------------------------------------------------------------------
# GoalValidator
# ---------------------------------------------------------------------------

@pytest.fixture
def validator(tmp_path):
    return GoalValidator(str(tmp_path))

def test_errors_in_current_cycle_block_the_goal(validator):
    state = AgentState(goal="goal", cycle=2)
    state.record_error("sig", "boom")
    state.record_observation(ObservationKind.TEST_RESULT, status=TestStatus.PASS)
    assert validator.check(state).reason == "Errors encountered"

def test_errors_from_earlier_cycles_do_not_block(validator):
    state = AgentState(goal="goal", cycle=1)
    state.record_error("sig", "boom")
    state.cycle = 2
    state.record_observation(ObservationKind.TEST_RESULT, status=TestStatus.PASS)
    assert validator.check(state).model_dump() == {"satisfied": True, "reason": "Tests passed"}

def test_failing_test_counts_until_a_later_pass(validator):
    state = AgentState(goal="goal", cycle=1)
    state.record_observation(ObservationKind.TEST_RESULT, status=TestStatus.FAIL)
    assert validator.check(state).reason == "Errors encountered"
    state.record_observation(ObservationKind.TEST_RESULT, status=TestStatus.PASS)
    assert validator.check(state).reason == "Tests passed"

def test_clarification_needed(validator):
    state = AgentState(goal="goal", clarification_asked=True)
    assert validator.check(state).model_dump() == {"satisfied": False, "reason": "Clarification needed"}

def test_all_steps_succeeded(validator):
    state = AgentState(goal="goal")
    state.record_step_result(1, True)
    state.record_step_result(2, True)
    assert validator.check(state).reason == "All steps completed successfully"

def test_files_modified(validator):
    state = AgentState(goal="goal")
    state.record_step_result(1, False)
    state.record_file_written("a.txt")
    assert validator.check(state).model_dump() == {"satisfied": True, "reason": "Files modified as expected"}

def test_repository_changes_are_progress(validator):
    with patch.object(GoalValidator, "has_uncommitted_changes", return_value=True):
        assert validator.check(AgentState(goal="goal")).reason == "Changes made to repository"

def test_no_progress(validator):
    with patch.object(GoalValidator, "has_uncommitted_changes", return_value=False):
        assert validator.check(AgentState(goal="goal")).model_dump() == {
            "satisfied": False,
            "reason": "No observable progress",
        }

def test_uncommitted_changes_outside_repository(validator):
    assert validator.has_uncommitted_changes() is False

@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_uncommitted_changes_in_repository(tmp_path):
    def git(*args):
        subprocess.run(
            ["git", "-c", "user.email=t@example.com", "-c", "user.name=t", *args],
            cwd=tmp_path, check=True, capture_output=True,
        )
    git("init", "-q")
    (tmp_path / "a.txt").write_text("one\n")
    git("add", "a.txt")
    git("commit", "-q", "-m", "init")
    validator = GoalValidator(str(tmp_path))
    assert validator.has_uncommitted_changes() is False
    (tmp_path / "a.txt").write_text("two\n")
    assert validator.has_uncommitted_changes() is True

# ---------------------------------------------------------------------------
# SuccessVerifier
# ---------------------------------------------------------------------------

def test_success_criteria_about_tests_need_a_pass():
    state = AgentState(goal="goal")
    result = SuccessVerifier.verify(["All tests pass"], state.observations, state.artifacts)
    assert result.model_dump() == {"satisfied": False, "reason": "Success criteria unmet: tests did not pass"}
    state.record_observation(ObservationKind.TEST_RESULT, status=TestStatus.PASS)
    assert SuccessVerifier.verify(["All tests pass"], state.observations, state.artifacts).satisfied is True

def test_success_criteria_about_files_need_a_write():
    result = SuccessVerifier.verify(["lib/x.rb file exists"], [], Artifacts())
    assert result.reason == "Success criteria unmet: no files modified"
    assert SuccessVerifier.verify(["lib/x.rb file exists"], [], Artifacts(files_written={"lib/x.rb"})).satisfied

def test_unobservable_criteria_pass():
    assert SuccessVerifier.verify(["code is readable"], [], Artifacts()).reason == "Success criteria met"
