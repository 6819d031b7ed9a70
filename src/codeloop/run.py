# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# Swap model strings for any OpenRouter-supported model, via CODELOOP_*_MODEL
# environment variables or a .env file.
# https://openrouter.ai/models

import argparse
import sys

from codeloop import display
from codeloop.collaborators import ConsoleTracer, OpenAIModelClient
from codeloop.config import load_config
from codeloop.models import Phase
from codeloop.orchestrator import Orchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codeloop", description="Run a coding task against a repository.")
    parser.add_argument("task", nargs="*", help="Task text. Omit to read tasks from stdin, one per line.")
    parser.add_argument("--repo", default=None, help="Sandbox root (default: current directory).")
    parser.add_argument("--allow", action="append", default=None, metavar="PREFIX",
                        help="Allow commands starting with PREFIX. Repeatable.")
    parser.add_argument("--test-command", default=None, help="Command run after each cycle that changed files.")
    parser.add_argument("--max-cycles", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true", help="Validate and report, never touch files.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.allow:
        overrides["command_allowlist"] = args.allow
    if args.test_command:
        overrides["test_command"] = args.test_command
    if args.max_cycles is not None:
        overrides["max_cycles"] = args.max_cycles
    if args.dry_run:
        overrides["dry_run"] = True
    config = load_config(args.repo, **overrides)

    orchestrator = Orchestrator(config, OpenAIModelClient(config), tracer=ConsoleTracer())
    display.banner(str(config.repo_path), config.planner_model, config.developer_model)

    tasks = [" ".join(args.task)] if args.task else (line.strip() for line in sys.stdin)
    status = 0
    for task in tasks:
        if not task:
            continue
        result = orchestrator.run(task)
        if result.phase == Phase.HALTED:
            display.halt(result.reason)
            status = 1
        else:
            display.final_result(result.answer, result.reason)
    return status


if __name__ == "__main__":
    sys.exit(main())
