import json
import pytest
from unittest.mock import MagicMock, patch

from openai import OpenAIError

from codeloop import prompts
from codeloop.collaborators import RecordingTracer
from codeloop.config import AgentConfig
from codeloop.diffs import DirectPatchApplier
from codeloop.errors import DependencyUnmet, PathNotAllowed, PlanRejected, SchemaViolation, UnknownTool
from codeloop.models import Intent, IntentResult, ObservationKind, Phase, Plan, Step, TestStatus
from codeloop.orchestrator import Orchestrator, describe
from codeloop.state import AgentState
from codeloop.tool_bus import ToolBus
from codeloop.tools import ToolRegistry

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_orchestrator(config, model=None, planner=None, intent=Intent.CODE_EDIT, tracer=None):
    """Orchestrator with a real bus and scripted planner / classifier."""
    tracer = tracer or RecordingTracer()
    if model is None:
        model = MagicMock()
        model.query.return_value = ""
    registry = ToolRegistry.default()
    bus = ToolBus(
        config,
        registry,
        applier=DirectPatchApplier(str(config.repo_path)),
        tracer=tracer,
    )
    classifier = MagicMock()
    classifier.classify.return_value = IntentResult(intent=intent, confidence=0.9)
    return Orchestrator(
        config,
        model,
        registry=registry,
        bus=bus,
        planner=planner or MagicMock(),
        classifier=classifier,
        tracer=tracer,
    )

def make_plan(*steps, confidence=0.9, criteria=None):
    return Plan(goal="goal", steps=list(steps), confidence=confidence, success_criteria=criteria or [])

def scripted_planner(*plans):
    planner = MagicMock()
    planner.plan.side_effect = list(plans)
    return planner

def kinds(result):
    return [obs.kind for obs in result.state.observations]

# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------

def test_reading_missing_file_is_an_observation_not_a_crash(tmp_path):
    config = AgentConfig(repo_path=tmp_path, max_cycles=1)
    planner = scripted_planner(make_plan(Step(step_id=1, action="fs.read", path="missing.rb")))
    orchestrator = make_orchestrator(config, planner=planner)

    result = orchestrator.run("Explain missing.rb and then fix it")

    assert ObservationKind.FILE_MISSING in kinds(result)
    assert result.state.step_results[1].success is False
    assert result.state.errors == []
    assert result.phase == Phase.HALTED
    assert result.reason == "Maximum cycles reached: No observable progress"

def test_create_new_file(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    model = MagicMock()
    model.query.return_value = "Created lib/x.rb."
    planner = scripted_planner(
        make_plan(Step(step_id=1, action="fs.create", path="lib/x.rb", content="puts 1\n", reason="new file"))
    )
    orchestrator = make_orchestrator(config, model=model, planner=planner)

    result = orchestrator.run("Create lib/x.rb that prints 1")

    assert (tmp_path / "lib" / "x.rb").read_text() == "puts 1\n"
    assert result.phase == Phase.DONE
    assert result.reason == "Files modified as expected"
    assert result.answer == "Created lib/x.rb."
    assert "lib/x.rb" in result.state.artifacts.files_written
    assert result.state.artifacts.patches_applied == 1
    tests = result.state.observations_of(ObservationKind.TEST_RESULT)
    assert [t.status for t in tests] == [TestStatus.SKIP]

def test_denied_command_never_spawns_a_process(tmp_path):
    config = AgentConfig(repo_path=tmp_path, max_cycles=1, command_allowlist=["pytest"])
    planner = scripted_planner(make_plan(Step(step_id=1, action="exec.run", command="rm -rf /")))
    orchestrator = make_orchestrator(config, planner=planner)

    with patch("codeloop.tool_bus.subprocess.run") as run:
        result = orchestrator.run("Clean up the disk")

    run.assert_not_called()
    assert result.state.tool_rejections == 1
    rejected = result.state.observations_of(ObservationKind.TOOL_REJECTED)
    assert len(rejected) == 1
    assert "not allowed" in rejected[0].reason
    assert result.phase == Phase.HALTED

def test_failing_tests_retry_then_succeed(tmp_path):
    config = AgentConfig(
        repo_path=tmp_path,
        max_cycles=3,
        command_allowlist=["cat"],
        test_command="cat marker.txt",
    )
    tracer = RecordingTracer()
    planner = scripted_planner(
        make_plan(Step(step_id=1, action="fs.create", path="a.txt", content="a\n"), criteria=["tests pass"]),
        make_plan(Step(step_id=1, action="fs.create", path="marker.txt", content="ok\n"), criteria=["tests pass"]),
    )
    orchestrator = make_orchestrator(config, planner=planner, tracer=tracer)

    result = orchestrator.run("Make the marker check pass")

    decisions = [payload["decision"] for name, payload in tracer.events if name == "decision"]
    assert decisions == ["RETRY", "SUCCESS"]
    statuses = [o.status for o in result.state.observations_of(ObservationKind.TEST_RESULT)]
    assert statuses == [TestStatus.FAIL, TestStatus.PASS]
    assert result.phase == Phase.DONE
    assert result.reason == "Tests passed"
    assert result.state.cycle == 2

def test_edit_existing_file_through_generated_diff(tmp_path):
    (tmp_path / "app.py").write_text("x = 1\n")
    config = AgentConfig(repo_path=tmp_path)

    def respond(role, prompt, response_format=None):
        if "ORIGINAL (full file contents)" in prompt:
            return "```diff\n--- a/app.py\n+++ b/app.py\n@@ -1,1 +1,2 @@\n+# Main module\n x = 1\n```"
        return "Added the header."

    model = MagicMock()
    model.query.side_effect = respond
    planner = scripted_planner(
        make_plan(
            Step(step_id=1, action="fs.read", path="app.py"),
            Step(step_id=2, action="fs.write", path="app.py", depends_on=[1],
                 reason="add header comment at top 'Main module'"),
        )
    )
    orchestrator = make_orchestrator(config, model=model, planner=planner)

    result = orchestrator.run("Add a header comment to app.py")

    assert (tmp_path / "app.py").read_text() == "# Main module\nx = 1\n"
    assert result.phase == Phase.DONE
    assert result.reason == "All steps completed successfully"
    assert ObservationKind.PATCH_APPLIED in kinds(result)

def test_model_failure_during_edit_fails_the_step(tmp_path):
    (tmp_path / "a.py").write_text("x = 1\n")
    config = AgentConfig(repo_path=tmp_path, max_cycles=1)
    model = MagicMock()
    model.query.side_effect = OpenAIError("connection reset")
    planner = scripted_planner(
        make_plan(
            Step(step_id=1, action="fs.read", path="a.py"),
            Step(step_id=2, action="fs.write", path="a.py", depends_on=[1], reason="rename x"),
        )
    )
    orchestrator = make_orchestrator(config, model=model, planner=planner)

    result = orchestrator.run("Rename x in a.py")

    assert result.phase == Phase.HALTED
    assert ObservationKind.ACTION_FAILED in kinds(result)
    failed = result.state.observations_of(ObservationKind.ACTION_FAILED)
    assert "connection reset" in failed[0].reason
    assert result.state.step_results[2].success is False
    assert (tmp_path / "a.py").read_text() == "x = 1\n"

def test_create_empty_file(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    model = MagicMock()
    model.query.return_value = "Created the package."
    planner = scripted_planner(
        make_plan(Step(step_id=1, action="fs.create", path="pkg/__init__.py", content=""))
    )
    orchestrator = make_orchestrator(config, model=model, planner=planner)

    result = orchestrator.run("Make pkg a package")

    assert (tmp_path / "pkg" / "__init__.py").read_text() == ""
    assert result.phase == Phase.DONE
    assert result.reason == "Files modified as expected"
    assert ObservationKind.FILE_WRITTEN in kinds(result)

def test_direct_answer_survives_model_failure(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    model = MagicMock()
    model.query.side_effect = OpenAIError("rate limited")
    tracer = RecordingTracer()
    orchestrator = make_orchestrator(config, model=model, intent=Intent.EXPLANATION, tracer=tracer)

    result = orchestrator.run("What does this repository do?")

    assert result.phase == Phase.DONE
    assert result.answer == ""
    assert ("answer_failed", {"message": "rate limited"}) in tracer.events

def test_full_stack_with_scripted_model(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    plan_json = json.dumps({
        "goal": "create lib/x.rb",
        "steps": [{"step_id": 1, "action": "fs.create", "path": "lib/x.rb", "content": "puts 1\n", "reason": "new"}],
        "success_criteria": [],
        "confidence": 90,
    })

    def respond(role, prompt, response_format=None):
        if role == "planner":
            return f"```json\n{plan_json}\n```"
        if role == "reviewer":
            return '{"approved": true, "issues": []}'
        if response_format is not None:
            return '{"intent": "CODE_EDIT", "confidence": 0.9}'
        return "Done."

    model = MagicMock()
    model.query.side_effect = respond
    orchestrator = Orchestrator(
        config,
        model,
        bus=ToolBus(config, ToolRegistry.default(), applier=DirectPatchApplier(str(tmp_path))),
    )

    result = orchestrator.run("Create lib/x.rb that prints 1")

    assert result.phase == Phase.DONE
    assert result.state.intent == Intent.CODE_EDIT
    assert result.state.plan.confidence == pytest.approx(0.9)
    assert (tmp_path / "lib" / "x.rb").read_text() == "puts 1\n"

# ---------------------------------------------------------------------------
# Intent routing
# ---------------------------------------------------------------------------

def test_explanation_is_answered_without_tools(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    model = MagicMock()
    model.query.return_value = "It parses configuration files."
    planner = MagicMock()
    orchestrator = make_orchestrator(config, model=model, planner=planner, intent=Intent.EXPLANATION)

    result = orchestrator.run("What does this repo do?")

    planner.plan.assert_not_called()
    assert model.query.call_args.args[0] == "developer"
    assert result.phase == Phase.DONE
    assert result.answer == "It parses configuration files."
    assert result.reason == "Answered directly (EXPLANATION)"
    assert result.state.observations == []

def test_reject_intent_returns_fixed_refusal(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    model = MagicMock()
    orchestrator = make_orchestrator(config, model=model, intent=Intent.REJECT)

    result = orchestrator.run("")

    model.query.assert_not_called()
    assert result.answer == prompts.REJECT_ANSWER
    assert result.reason == "Request rejected"

def test_empty_plan_finishes_without_actions(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    model = MagicMock()
    model.query.return_value = "Nothing to change."
    orchestrator = make_orchestrator(config, model=model, planner=scripted_planner(Plan(goal="goal")))

    result = orchestrator.run("Tidy up")

    assert result.phase == Phase.DONE
    assert result.reason == "No actions needed"
    assert result.answer == "Nothing to change."

def test_interrupt_halts_and_keeps_state(tmp_path):
    config = AgentConfig(repo_path=tmp_path)
    planner = MagicMock()
    planner.plan.side_effect = KeyboardInterrupt
    orchestrator = make_orchestrator(config, planner=planner)

    result = orchestrator.run("Add a file")

    assert result.phase == Phase.HALTED
    assert result.reason == "interrupted"
    assert result.state.cycle == 1

# ---------------------------------------------------------------------------
# Hard stops
# ---------------------------------------------------------------------------

def test_two_tool_rejections_halt(tmp_path):
    config = AgentConfig(repo_path=tmp_path, max_cycles=5, command_allowlist=["pytest"])
    planner = scripted_planner(
        make_plan(Step(step_id=1, action="exec.run", command="rm -rf /")),
        make_plan(Step(step_id=1, action="exec.run", command="sudo ls")),
    )
    orchestrator = make_orchestrator(config, planner=planner)

    with patch("codeloop.tool_bus.subprocess.run") as run:
        result = orchestrator.run("Clean up")

    run.assert_not_called()
    assert result.phase == Phase.HALTED
    assert result.reason == "Too many tool rejections (2)"

def test_repeated_plan_without_progress_halts(tmp_path):
    (tmp_path / "README.md").write_text("hello\n")
    config = AgentConfig(repo_path=tmp_path, max_cycles=5)
    planner = MagicMock()
    planner.plan.return_value = make_plan(
        Step(step_id=1, action="fs.read", path="README.md"), criteria=["all tests pass"]
    )
    orchestrator = make_orchestrator(config, planner=planner)

    result = orchestrator.run("Make the tests pass")

    rejected = result.state.observations_of(ObservationKind.PLAN_REJECTED)
    assert len(rejected) == 2
    assert "plan repeated without progress" in rejected[0].reason
    assert result.phase == Phase.HALTED
    assert result.reason.startswith("Repeated error:")
    # Rejection feedback reaches the next planning call.
    assert "plan repeated without progress" in planner.plan.call_args_list[2].args[2][0]

def test_same_empty_diff_twice_is_stagnation(tmp_path):
    config = AgentConfig(repo_path=tmp_path, max_cycles=5, command_allowlist=["echo"])
    tracer = RecordingTracer()
    planner = scripted_planner(
        make_plan(Step(step_id=1, action="exec.run", command="echo hi"), criteria=["all tests pass"]),
        make_plan(Step(step_id=1, action="exec.run", command="echo hello"), criteria=["all tests pass"]),
    )
    orchestrator = make_orchestrator(config, planner=planner, tracer=tracer)

    result = orchestrator.run("Make the tests pass")

    assert result.phase == Phase.HALTED
    assert result.reason == "Stagnation: Same diff repeated"
    assert "goal_stagnation" in tracer.names()

# ---------------------------------------------------------------------------
# Plan validation
# ---------------------------------------------------------------------------

@pytest.fixture
def validator(tmp_path):
    (tmp_path / "app.py").write_text("x = 1\n")
    return make_orchestrator(AgentConfig(repo_path=tmp_path))

@pytest.fixture
def first_cycle():
    return AgentState(goal="goal", cycle=1)

def test_low_confidence_mutation_is_rejected(validator, first_cycle):
    plan = make_plan(Step(step_id=1, action="fs.create", path="new.txt", content="x\n"), confidence=0.4)
    with pytest.raises(PlanRejected, match="confidence"):
        validator.validate_plan(first_cycle, plan)

def test_low_confidence_read_only_plan_is_accepted(validator, first_cycle):
    plan = make_plan(Step(step_id=1, action="fs.read", path="app.py"), confidence=0.3)
    validator.validate_plan(first_cycle, plan)

def test_low_confidence_command_plan_is_accepted(validator, first_cycle):
    plan = make_plan(Step(step_id=1, action="exec.run", command="pytest -q"), confidence=0.3)
    validator.validate_plan(first_cycle, plan)

def test_write_without_read_dependency_is_rejected(validator, first_cycle):
    plan = make_plan(Step(step_id=1, action="fs.write", path="app.py", reason="edit"))
    with pytest.raises(DependencyUnmet):
        validator.validate_plan(first_cycle, plan)

def test_write_depending_on_read_of_other_path_is_rejected(validator, first_cycle):
    plan = make_plan(
        Step(step_id=1, action="fs.read", path="other.py"),
        Step(step_id=2, action="fs.write", path="app.py", depends_on=[1]),
    )
    with pytest.raises(DependencyUnmet):
        validator.validate_plan(first_cycle, plan)

def test_write_with_read_dependency_is_accepted(validator, first_cycle):
    plan = make_plan(
        Step(step_id=1, action="fs.read", path="./app.py"),
        Step(step_id=2, action="fs.write", path="app.py", depends_on=[1]),
    )
    validator.validate_plan(first_cycle, plan)

def test_write_to_missing_file_must_use_create(validator, first_cycle):
    plan = make_plan(
        Step(step_id=1, action="fs.read", path="nope.py"),
        Step(step_id=2, action="fs.write", path="nope.py", depends_on=[1]),
    )
    with pytest.raises(PlanRejected, match="use fs.create"):
        validator.validate_plan(first_cycle, plan)

def test_create_over_existing_file_is_rejected(validator, first_cycle):
    plan = make_plan(Step(step_id=1, action="fs.create", path="app.py", content="y = 2\n"))
    with pytest.raises(PlanRejected, match="already exists"):
        validator.validate_plan(first_cycle, plan)

def test_internal_and_unknown_tools_are_rejected(validator, first_cycle):
    for action in ("fs.write_diff", "shell.exec"):
        plan = make_plan(Step(step_id=1, action=action, path="app.py"))
        with pytest.raises(UnknownTool):
            validator.validate_plan(first_cycle, plan)

def test_missing_fields_are_schema_violations(validator, first_cycle):
    with pytest.raises(SchemaViolation):
        validator.validate_plan(first_cycle, make_plan(Step(step_id=1, action="exec.run")))
    with pytest.raises(SchemaViolation):
        validator.validate_plan(first_cycle, make_plan(Step(step_id=1, action="fs.create", path="b.py")))

def test_paths_outside_sandbox_are_rejected(validator, first_cycle):
    plan = make_plan(Step(step_id=1, action="fs.read", path="../etc/passwd"))
    with pytest.raises(PathNotAllowed):
        validator.validate_plan(first_cycle, plan)

def test_repeated_reads_only_rejected_in_first_cycle(validator, first_cycle):
    plan = make_plan(
        Step(step_id=1, action="fs.read", path="app.py"),
        Step(step_id=2, action="fs.read", path="app.py"),
    )
    with pytest.raises(PlanRejected, match="repeated"):
        validator.validate_plan(first_cycle, plan)
    validator.validate_plan(AgentState(goal="goal", cycle=2), plan)

# ---------------------------------------------------------------------------
# Reduction helpers
# ---------------------------------------------------------------------------

def test_describe_observation():
    state = AgentState(goal="goal")
    obs = state.record_observation(
        ObservationKind.TEST_RESULT, status=TestStatus.FAIL, exit_code=1, reason="pytest"
    )
    assert describe(obs) == "- TEST_RESULT status=FAIL exit=1 reason=pytest"
