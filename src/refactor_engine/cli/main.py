"""CLI entry point for the refactor engine."""
import argparse
from dotenv import load_dotenv
import json
import logging
import sys
import traceback
from pathlib import Path

from refactor_engine.agents.exceptions import AgentError
from refactor_engine.config import EngineConfig, load_config
from refactor_engine.models import Phase, ProtocolDocument, RefactorRequest, RequestConstraints
from refactor_engine.orchestrator.exceptions import OrchestratorError
from refactor_engine.patching.exceptions import PatchError
from refactor_engine.protocol.exceptions import MalformedAnswer

load_dotenv()

# Exit codes
EXIT_SUCCESS = 0
EXIT_INVALID_INPUT = 1
EXIT_AGENT_ERROR = 2
EXIT_ORCHESTRATOR_ERROR = 3
EXIT_GRAPH_ABORT = 4
EXIT_UNEXPECTED = 5
EXIT_NEEDS_CLARIFICATION = 6
EXIT_KEYBOARD_INTERRUPT = 130

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

# Abort detection prefix; must match abort_summary output in recovery.py
ABORT_PREFIX = "ABORT:"

# Safe keys allowed in config output (no secrets)
_SAFE_CONFIG_KEYS = frozenset({
    "goal", "repo_path", "scope", "constraints", "max_iterations",
    "module_system", "replan_on_conflict", "command_timeout_seconds",
    "plan_timeout_seconds", "validation_commands", "model", "llm_provider",
    "llm_fallback_provider", "allow_llm_fallback", "proposal_file",
    "config_file", "verbose", "dry_run", "output_json",
})

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="refactor-engine",
        description="Plan, apply, validate and roll back refactors of JS/TS codebases",
    )
    parser.add_argument("goal", type=str, help="Natural-language refactor request")
    parser.add_argument("repo_path", type=str, help="Path to the repository root")
    parser.add_argument(
        "--scope",
        action="append",
        default=[],
        metavar="GLOB",
        help="Relative glob limiting the files in scope (repeatable)",
    )
    parser.add_argument(
        "--allow-new-dependencies",
        action="store_true",
        help="Allow the patch to add package dependencies",
    )
    parser.add_argument(
        "--allow-behavior-change",
        action="store_true",
        help="Do not require the refactor to preserve behaviour",
    )
    parser.add_argument(
        "--allow-breaking",
        action="store_true",
        help="Allow changes to the exported API surface",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="",
        help="Path to refactor-engine.toml (default: search from repo_path upwards)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum planning attempts before aborting (default: config or 3)",
    )
    parser.add_argument(
        "--module-system",
        type=str,
        default=None,
        choices=("esm", "cjs"),
        help="Module system used to detect the exported API surface",
    )
    parser.add_argument(
        "--command",
        action="append",
        default=[],
        metavar="CATEGORY:COMMAND",
        help=(
            "Validation command, e.g. 'typecheck:npx tsc --noEmit' "
            "(repeatable; 'category!:...' stops the plan on failure)"
        ),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-command timeout in seconds (default: config or 120)",
    )
    parser.add_argument(
        "--proposal-file",
        type=str,
        default="",
        help="Replay a pre-written nine-section document instead of calling an LLM",
    )
    parser.add_argument(
        "--answer",
        action="append",
        default=[],
        help="Clarification answer used when the request blocks (repeatable)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help=f"Model ID to use (default: config or {DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--llm-provider",
        type=str,
        default=None,
        choices=("auto", "anthropic", "openai"),
        help="LLM provider for the planner: auto (default), anthropic, or openai",
    )
    parser.add_argument(
        "--llm-fallback-provider",
        type=str,
        default="",
        choices=("", "anthropic", "openai"),
        help="Optional explicit fallback provider when the primary provider fails",
    )
    parser.add_argument(
        "--allow-llm-fallback",
        action="store_true",
        help="Allow fallback to the alternate provider when the primary provider fails",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--dry-run", action="store_true", help="Print config and exit without running"
    )
    parser.add_argument(
        "--output-json", action="store_true", help="Output results as JSON"
    )
    return parser


def validate_repo_path(raw_path: str) -> str:
    """Validate and resolve the repository path.

    Raises:
        SystemExit: If path is not a valid directory.
    """
    resolved = Path(raw_path).resolve()
    if not resolved.is_dir():
        print(f"Error: '{raw_path}' is not a valid directory.", file=sys.stderr)
        raise SystemExit(EXIT_INVALID_INPUT)
    return str(resolved)


def configure_logging(verbose: bool, level: str = "INFO") -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def resolve_config(args: argparse.Namespace, repo_path: str) -> EngineConfig:
    """Load file/env configuration and apply CLI overrides on top.

    Raises:
        FileNotFoundError: If ``--config`` names a missing file.
        ValueError: If the merged configuration is invalid.
    """
    base = load_config(config_path=args.config or None, search_from=repo_path)
    data = base.model_dump()
    overrides = {
        "max_iterations": args.max_iterations,
        "module_system": args.module_system,
        "command_timeout_seconds": args.timeout,
    }
    for key, value in overrides.items():
        if value is not None:
            data[key] = value
    if args.command:
        data["validation_commands"] = tuple(args.command)
    llm = data["llm"]
    if args.model:
        llm["model"] = args.model
    if args.llm_provider:
        llm["provider"] = args.llm_provider
    if args.llm_fallback_provider:
        llm["fallback_provider"] = args.llm_fallback_provider
    if args.allow_llm_fallback:
        llm["allow_fallback"] = True
    return EngineConfig.model_validate(data)


def build_request(args: argparse.Namespace, defaults: RequestConstraints) -> RefactorRequest:
    """Build the immutable request; flags only ever relax the configured constraints.

    Raises:
        ValueError: If the goal is blank.
    """
    constraints = RequestConstraints(
        no_new_dependencies=defaults.no_new_dependencies and not args.allow_new_dependencies,
        behavior_preserving=defaults.behavior_preserving and not args.allow_behavior_change,
        allow_breaking=defaults.allow_breaking or args.allow_breaking,
    )
    return RefactorRequest(goal=args.goal, scope=tuple(args.scope), constraints=constraints)


def create_planner(args: argparse.Namespace, config: EngineConfig):
    """Create the planning collaborator.

    LLM client imports are deferred to avoid heavy startup cost for --help,
    --dry-run and --proposal-file paths.
    """
    if args.proposal_file:
        from refactor_engine.agents.planner import ProtocolFilePlanner

        return ProtocolFilePlanner(args.proposal_file)

    # Lazy import: avoid loading anthropic/openai at module level
    from refactor_engine.agents.planner import LLMPatchPlanner

    return LLMPatchPlanner(
        model=config.llm.model,
        llm_provider=config.llm.provider,
        llm_fallback_provider=config.llm.fallback_provider,
        allow_fallback=config.llm.allow_fallback,
        allow_human_fallback=sys.stdin.isatty(),
    )


def prompt_answer() -> str:
    """Read a clarification answer from the terminal.

    A bare line is taken as the free-text slot. Lines starting with '-' after
    it select files. A blank line finishes the answer; CANCEL aborts.
    """
    print(
        "\nClarification needed. Type your answer (list files as '- path' "
        "lines, blank line to finish, CANCEL to abort):",
        file=sys.stderr,
    )
    lines: list[str] = []
    while True:
        try:
            line = input("> " if not lines else ". ")
        except EOFError:
            break
        if not line.strip():
            break
        lines.append(line)
    if not lines:
        return ""
    first = lines[0].strip()
    if first.upper() == "CANCEL" or first.upper().startswith("ANSWER:"):
        return "\n".join(lines)
    files = [line for line in lines[1:] if line.lstrip().startswith("-")]
    text = [f"ANSWER: {first}"]
    if files:
        text.append("FILES:")
        text.extend(files)
    return "\n".join(text)


def resolve_clarifications(engine, document: ProtocolDocument, args: argparse.Namespace) -> ProtocolDocument:
    """Answer clarification questions until the request leaves BlockedOnClarification.

    Answers come from ``--answer`` first, then from the terminal when stdin is
    a tty. Without either the request stays blocked.
    """
    scripted = list(args.answer)
    interactive = sys.stdin.isatty() and not args.output_json
    while engine.phase == Phase.BLOCKED_ON_CLARIFICATION:
        if scripted:
            text = scripted.pop(0)
        elif interactive:
            print(document.notes or "", file=sys.stderr)
            text = prompt_answer()
        else:
            break
        try:
            document = engine.answer(text)
        except MalformedAnswer as exc:
            print(f"Invalid answer: {exc}", file=sys.stderr)
            if not interactive:
                break
    return document


def format_result_json(result: dict) -> str:
    """Serialize result dict to JSON string.

    Calls .model_dump() on Pydantic model values. Falls back to str()
    for non-serializable types (enums, Path, etc.) via default=str.
    """

    def _serialize(obj):
        if obj is None:
            return None
        if hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        if isinstance(obj, list):
            return [_serialize(item) for item in obj]
        return obj

    prepared = {k: _serialize(v) for k, v in result.items()}
    return json.dumps(prepared, indent=2, default=str)


def result_summary(engine, document: ProtocolDocument) -> dict:
    state = engine.state or {}
    phase = state.get("phase")
    return {
        "phase": phase.value if phase is not None else None,
        "planning_count": state.get("planning_count", 0),
        "transitions": state.get("transitions", []),
        "errors": state.get("errors", []),
        "history": state.get("history", []),
        "document": document,
    }


def determine_exit_code(result: dict) -> int:
    """Determine the exit code from the result summary."""
    if result.get("phase") == Phase.BLOCKED_ON_CLARIFICATION.value:
        return EXIT_NEEDS_CLARIFICATION
    errors = result.get("errors", [])
    for err in errors:
        if str(err).startswith(ABORT_PREFIX):
            return EXIT_GRAPH_ABORT
    if result.get("phase") == Phase.FINALIZED.value:
        return EXIT_SUCCESS
    return EXIT_ORCHESTRATOR_ERROR


def print_config_human(config: dict) -> None:
    """Print configuration in human-readable format.

    Only prints keys in the safe allowlist to prevent secret leakage.
    """
    print("\nConfiguration:")
    print(f"{'='*40}")
    for key, value in config.items():
        if key in _SAFE_CONFIG_KEYS:
            print(f"  {key}: {value}")
    print(f"{'='*40}")


def _handle_error(label: str, exc: BaseException, verbose: bool, exit_code: int) -> int:
    """Print error message to stderr and return the exit code."""
    print(f"{label}: {exc}", file=sys.stderr)
    if verbose:
        traceback.print_exc(file=sys.stderr)
    return exit_code


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code integer.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        repo_path = validate_repo_path(args.repo_path)
    except SystemExit as exc:
        return exc.code

    try:
        engine_config = resolve_config(args, repo_path)
        request = build_request(args, engine_config.constraints)
    except (OSError, ValueError) as exc:
        return _handle_error("Invalid configuration", exc, args.verbose, EXIT_INVALID_INPUT)

    configure_logging(args.verbose, engine_config.log_level)

    config = {
        "goal": request.goal,
        "repo_path": repo_path,
        "scope": list(request.scope),
        "constraints": request.constraints.model_dump(),
        "max_iterations": engine_config.max_iterations,
        "module_system": engine_config.module_system,
        "replan_on_conflict": engine_config.replan_on_conflict,
        "command_timeout_seconds": engine_config.command_timeout_seconds,
        "plan_timeout_seconds": engine_config.plan_timeout_seconds,
        "validation_commands": list(engine_config.validation_commands),
        "model": engine_config.llm.model,
        "llm_provider": engine_config.llm.provider,
        "llm_fallback_provider": engine_config.llm.fallback_provider,
        "allow_llm_fallback": engine_config.llm.allow_fallback,
        "proposal_file": args.proposal_file,
        "config_file": args.config,
        "verbose": args.verbose,
        "dry_run": args.dry_run,
        "output_json": args.output_json,
    }

    if args.dry_run:
        if args.output_json:
            print(json.dumps(config, indent=2))
        else:
            print_config_human(config)
        return EXIT_SUCCESS

    engine = None
    try:
        planner = create_planner(args, engine_config)

        from refactor_engine.orchestrator.engine import RefactorEngine

        engine = RefactorEngine(repo_path, planner=planner, config=engine_config)
        document = engine.submit(request)
        document = resolve_clarifications(engine, document, args)
        result = result_summary(engine, document)

        if args.output_json:
            print(format_result_json(result))
        else:
            print(document.to_text())

        return determine_exit_code(result)

    except AgentError as exc:
        return _handle_error("Agent error", exc, args.verbose, EXIT_AGENT_ERROR)

    except (OrchestratorError, PatchError) as exc:
        return _handle_error("Orchestrator error", exc, args.verbose, EXIT_ORCHESTRATOR_ERROR)

    except KeyboardInterrupt:
        if engine is not None and engine.phase == Phase.BLOCKED_ON_CLARIFICATION:
            print(engine.cancel().to_text())
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_KEYBOARD_INTERRUPT

    except Exception as exc:
        return _handle_error("Unexpected error", exc, args.verbose, EXIT_UNEXPECTED)


if __name__ == "__main__":
    sys.exit(main())
