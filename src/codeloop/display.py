# display.py
# All terminal output for the agent.
#
# This module owns presentation entirely. The loop never formats strings: it
# emits trace events, and ConsoleTracer hands them to trace_event() here.
# Swap this file to change the entire UI.
#
# Colour language:
#   cyan   : phases and routing
#   blue   : model-facing events (intent, plans, reviews)
#   yellow : checkpoints (validation, decisions, tests)
#   green  : success / confirmed
#   red    : rejections, failures, halts
#   magenta: tool calls

import json
from typing import Any, Callable

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: Any, max_len: int = 120) -> str:
    value = str(value)
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def banner(repo_path: str, planner_model: str, developer_model: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]codeloop[/bold cyan]\n"
            "[dim]Plan → execute → observe → decide, under a sandbox[/dim]\n\n"
            f"[dim]Repository     :[/dim] [white]{repo_path}[/white]\n"
            f"[dim]Planner model  :[/dim] [white]{planner_model}[/white]\n"
            f"[dim]Developer model:[/dim] [white]{developer_model}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def task_received(goal: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{goal}[/white]",
            title=_label("TASK", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def intent(intent: str, confidence: float) -> None:
    console.print()
    console.print(
        _label("INTENT", "blue"),
        f"[blue] {intent}[/blue] [dim]({confidence:.0%})[/dim]",
    )


def cycle_start(cycle: int, max_cycles: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]CYCLE {cycle}/{max_cycles}[/cyan]", style="cyan"))


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_table(plan: dict[str, Any], title: str, color: str) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style=color,
        show_header=True,
        header_style=f"bold {color}",
        padding=(0, 1),
    )
    table.add_column("ID", justify="center", width=4)
    table.add_column("Action", style="bold white", width=16)
    table.add_column("Target", style="dim white", width=32)
    table.add_column("Depends", justify="center", width=8)
    table.add_column("Reason", style="white")

    for step in plan.get("steps", []):
        target = step.get("path") or step.get("command") or ""
        table.add_row(
            str(step.get("step_id")),
            str(step.get("action")),
            _mono(target, 30),
            ",".join(str(d) for d in step.get("depends_on", [])) or "-",
            _mono(step.get("reason", ""), 80),
        )

    console.print(
        Panel(
            table,
            title=_label(title, color),
            subtitle=f"[dim]confidence {float(plan.get('confidence', 0.0)):.0%} · {_mono(plan.get('goal', ''), 60)}[/dim]",
            border_style=color,
            padding=(0, 1),
        )
    )


def plan_review(attempt: int, approved: bool, issues: list[str]) -> None:
    if approved:
        console.print(f"  [bold green]✓ Review {attempt} approved[/bold green]")
        return
    console.print(f"  [bold red]✗ Review {attempt} requested changes[/bold red]")
    for issue in issues:
        console.print(f"    [dim]- {_mono(issue, 140)}[/dim]")


def plan_rejected(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]Plan rejected.[/bold red]\n\n[white]{reason}[/white]",
            title=_label("PLAN VALIDATION: FAIL ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def step_start(step_id: int, action: str, reason: str) -> None:
    console.print()
    console.print(f"[bold cyan]  STEP {step_id}[/bold cyan]  [bold white]{action}[/bold white]  [dim]{_mono(reason, 100)}[/dim]")


def tool_call(name: str, payload: dict[str, Any]) -> None:
    console.print(f"  [magenta]↳ {name}[/magenta]  [dim]{_mono(json.dumps(payload, default=str), 140)}[/dim]")


def step_done(step_id: int, success: bool) -> None:
    if success:
        console.print(f"  [bold green]✓ step {step_id} done[/bold green]")
    else:
        console.print(f"  [yellow]• step {step_id} finished without result[/yellow]")


def step_failed(step_id: int, error: str, allowed: bool = False) -> None:
    if allowed:
        console.print(f"  [yellow]✗ step {step_id} failed (allowed):[/yellow] [dim]{_mono(error, 140)}[/dim]")
        return
    console.print(f"  [bold red]✗ step {step_id} failed:[/bold red] [white]{_mono(error, 140)}[/white]")


def tool_rejected(step_id: int, action: str, reason: str) -> None:
    console.print(
        Panel(
            f"[bold red]Step {step_id} ([white]{action}[/white]) rejected.[/bold red]\n[dim]{reason}[/dim]",
            title=_label("TOOL REJECTED ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Observation, reduction, decision
# ---------------------------------------------------------------------------


def tests(status: str, exit_code: int) -> None:
    color = {"PASS": "green", "FAIL": "red"}.get(status, "yellow")
    console.print()
    console.print(_label("TESTS", color), f"[{color}] {status}[/{color}] [dim](exit {exit_code})[/dim]")


def reduction(summary: str) -> None:
    console.print()
    console.print(Panel(f"[dim]{summary}[/dim]", title="[dim]CYCLE SUMMARY[/dim]", border_style="dim", padding=(0, 1)))


def decision(decision: str, reason: str, confidence: float) -> None:
    color = {"SUCCESS": "green", "RETRY": "yellow", "BLOCKED": "red"}.get(decision, "yellow")
    console.print(
        _label("DECISION", color),
        f"[{color}] {decision}[/{color}] [white]{reason}[/white] [dim]({confidence:.0%})[/dim]",
    )


def goal_validation(satisfied: bool, reason: str) -> None:
    mark = "[bold green]✓[/bold green]" if satisfied else "[bold red]✗[/bold red]"
    console.print(f"  {mark} [white]Goal: {reason}[/white]")


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str, reason: str = "") -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{result or '(no answer)'}[/white]",
            title=_label("RESULT", "green"),
            subtitle=f"[dim]{reason}[/dim]" if reason else None,
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Trace routing
# ---------------------------------------------------------------------------

_RENDERERS: dict[str, Callable[[dict[str, Any]], None]] = {
    "task_start": lambda p: task_received(p.get("goal", "")),
    "intent": lambda p: intent(p.get("intent", "?"), p.get("confidence", 0.0)),
    "cycle_start": lambda p: cycle_start(p.get("cycle", 0), p.get("max_cycles", 0)),
    "plan_proposed": lambda p: plan_table(p.get("plan", {}), "PLAN PROPOSED", "blue"),
    "plan_review": lambda p: plan_review(p.get("attempt", 0), p.get("approved", False), p.get("issues", [])),
    "plan_accepted": lambda p: console.print("  [bold green]✓ Plan accepted[/bold green]"),
    "plan_rejected": lambda p: plan_rejected(p.get("reason", "")),
    "step_start": lambda p: step_start(p.get("step_id", 0), p.get("action", ""), p.get("reason", "")),
    "step_done": lambda p: step_done(p.get("step_id", 0), p.get("success", True)),
    "step_failed": lambda p: step_failed(p.get("step_id", 0), p.get("error", "")),
    "step_failure_allowed": lambda p: step_failed(p.get("step_id", 0), p.get("error", ""), allowed=True),
    "tool_rejected": lambda p: tool_rejected(p.get("step_id", 0), p.get("action", ""), p.get("reason", "")),
    "tests": lambda p: tests(p.get("status", "SKIP"), p.get("exit_code", 0)),
    "reduction": lambda p: reduction(p.get("summary", "")),
    "decision": lambda p: decision(p.get("decision", ""), p.get("reason", ""), p.get("confidence", 0.0)),
    "goal_validation": lambda p: goal_validation(p.get("satisfied", False), p.get("reason", "")),
}

# Tool-level events rendered as a single magenta line.
_TOOL_EVENTS = frozenset(
    {"fs_read", "fs_write_diff", "fs_delete", "exec_run", "git_status", "git_diff", "diagnostics_error_summary"}
)


def trace_event(name: str, payload: dict[str, Any]) -> None:
    renderer = _RENDERERS.get(name)
    if renderer is not None:
        renderer(payload)
    elif name in _TOOL_EVENTS:
        tool_call(name, payload)
    elif name in ("command_denied", "diff_apply_failed", "goal_stagnation"):
        console.print(f"  [red]{name}[/red]  [dim]{_mono(json.dumps(payload, default=str), 160)}[/dim]")
