"""Validation Runner agent: executes external check commands in order."""

import json
import logging
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Any

from refactor_engine.agents.exceptions import ValidationBusyError, ValidationRunnerError
from refactor_engine.models.report_models import (
    ValidationCategory,
    ValidationCommand,
    ValidationPlan,
    ValidationResult,
    ValidationStatus,
)
from refactor_engine.patching.exceptions import WorkspaceError
from refactor_engine.patching.workspace import Workspace

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120
TIMEOUT_EXIT_CODE = -1
COMMAND_NOT_FOUND_EXIT_CODE = 127
NOT_EXECUTABLE_EXIT_CODE = 126


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ValidationRunner:
    """Runs a ValidationPlan command by command and captures the outcome.

    Every command runs even after failures, unless a failing command is
    flagged ``fatal``. A run is single-flight: starting a second run while
    one is active raises ValidationBusyError.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        plan_timeout_seconds: float | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.plan_timeout_seconds = plan_timeout_seconds
        self._cancel_event = threading.Event()
        self._run_lock = threading.Lock()

    def cancel(self) -> None:
        """Stop the current run after the command in progress finishes."""
        self._cancel_event.set()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(
        self,
        plan: ValidationPlan,
        cwd: str | Path,
        watch_paths: list[str] | None = None,
        workspace: Workspace | None = None,
    ) -> list[ValidationResult]:
        """Execute every command of ``plan`` in declared order.

        Args:
            plan: Ordered validation commands.
            cwd: Working directory for the commands (the repository root).
            watch_paths: Relative paths whose post-command contents are
                captured in each result's ``tree_after``.
            workspace: Workspace used to read ``watch_paths``.

        Returns:
            One ValidationResult per command, in plan order.

        Raises:
            ValidationBusyError: If another run is in flight.
        """
        if not self._run_lock.acquire(blocking=False):
            raise ValidationBusyError("A validation run is already in progress")
        try:
            self._cancel_event.clear()
            deadline = (
                time.monotonic() + self.plan_timeout_seconds
                if self.plan_timeout_seconds is not None
                else None
            )
            watch = list(watch_paths or [])
            results: list[ValidationResult] = []
            halt: tuple[ValidationStatus, str] | None = None

            for command in plan.commands:
                if halt is None and self._cancel_event.is_set():
                    halt = (ValidationStatus.CANCELLED, "cancelled by caller")
                timeout = command.timeout_seconds or self.timeout_seconds
                if halt is None and deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        halt = (ValidationStatus.TIMEOUT, "validation plan deadline exceeded")
                    else:
                        timeout = min(timeout, remaining)

                if halt is not None:
                    status, note = halt
                    results.append(ValidationResult(command=command, status=status, note=note))
                    continue

                result = self._run_command(command, cwd, timeout, watch, workspace)
                results.append(result)
                logger.info(
                    "validation %s %r -> %s (%.2fs)",
                    command.category.value,
                    command.command,
                    result.status.value,
                    result.duration_seconds,
                )
                if command.fatal and not result.passed:
                    halt = (ValidationStatus.SKIPPED, f"skipped after fatal failure of {command.command!r}")

            return results
        finally:
            self._run_lock.release()

    def _run_command(
        self,
        command: ValidationCommand,
        cwd: str | Path,
        timeout: float,
        watch_paths: list[str],
        workspace: Workspace | None,
    ) -> ValidationResult:
        """subprocess.run with capture_output=True, text=True and a timeout.

        Catches subprocess.TimeoutExpired -> status timeout, exit_code -1.
        A missing executable is reported as a failure with exit code 127,
        any other OSError (e.g. a non-executable file) with exit code 126.
        Output that is not valid UTF-8 is decoded with replacement characters.
        """
        try:
            argv = shlex.split(command.command)
        except ValueError as exc:
            return ValidationResult(
                command=command, status=ValidationStatus.FAILED, stderr=f"Invalid command: {exc}"
            )
        if not argv:
            return ValidationResult(
                command=command, status=ValidationStatus.FAILED, stderr="Empty command"
            )

        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                cwd=str(cwd),
            )
            status = (
                ValidationStatus.PASSED
                if command.is_success(completed.returncode)
                else ValidationStatus.FAILED
            )
            exit_code = completed.returncode
            stdout, stderr, note = completed.stdout, completed.stderr, None
        except subprocess.TimeoutExpired as exc:
            status = ValidationStatus.TIMEOUT
            exit_code = TIMEOUT_EXIT_CODE
            stdout, stderr = _coerce_text(exc.stdout), _coerce_text(exc.stderr)
            note = f"Command timed out after {timeout:g}s"
        except FileNotFoundError as exc:
            status = ValidationStatus.FAILED
            exit_code = COMMAND_NOT_FOUND_EXIT_CODE
            stdout, stderr, note = "", str(exc), "command not found"
        except OSError as exc:
            status = ValidationStatus.FAILED
            exit_code = NOT_EXECUTABLE_EXIT_CODE
            stdout, stderr, note = "", str(exc), "command could not be executed"

        tree_after: dict[str, str | None] = {}
        if workspace is not None and watch_paths:
            try:
                tree_after = workspace.read_paths(watch_paths)
            except WorkspaceError as exc:
                logger.warning("cannot capture files after %r: %s", command.command, exc)
                status = ValidationStatus.FAILED
                note = f"cannot read touched files afterwards: {exc}"

        return ValidationResult(
            command=command,
            status=status,
            exit_code=exit_code,
            stdout=_coerce_text(stdout),
            stderr=_coerce_text(stderr),
            duration_seconds=round(time.monotonic() - started, 3),
            note=note,
            tree_after=tree_after,
        )


def parse_command_spec(spec: str) -> ValidationCommand:
    """Parse ``"category:command"`` (optionally ``"category!:command"`` for fatal).

    Raises:
        ValidationRunnerError: If the category is unknown or the command empty.
    """
    category, sep, command = spec.partition(":")
    if not sep or not command.strip():
        raise ValidationRunnerError(
            f"Invalid command spec {spec!r}; expected 'category:command'"
        )
    fatal = category.endswith("!")
    category = category.rstrip("!").strip().lower()
    try:
        parsed_category = ValidationCategory(category)
    except ValueError as exc:
        raise ValidationRunnerError(f"Unknown validation category: {category!r}") from exc
    return ValidationCommand(command=command.strip(), category=parsed_category, fatal=fatal)


def detect_validation_plan(repo_path: str | Path) -> ValidationPlan:
    """Derive a default plan from package.json scripts and tsconfig.json.

    Order: format, typecheck, lint, test. Missing scripts are left out.
    """
    root = Path(repo_path)
    scripts: dict[str, str] = {}
    package_json_path = root / "package.json"
    if package_json_path.exists():
        try:
            with open(package_json_path, "r", encoding="utf-8") as f:
                scripts = json.load(f).get("scripts", {}) or {}
        except (json.JSONDecodeError, OSError, AttributeError):
            scripts = {}

    commands: list[ValidationCommand] = []
    if scripts.get("format"):
        commands.append(ValidationCommand(command="npm run format", category=ValidationCategory.FORMAT))
    if scripts.get("typecheck"):
        commands.append(
            ValidationCommand(command="npm run typecheck", category=ValidationCategory.TYPECHECK)
        )
    elif (root / "tsconfig.json").exists():
        commands.append(
            ValidationCommand(command="npx tsc --noEmit", category=ValidationCategory.TYPECHECK)
        )
    if scripts.get("lint"):
        commands.append(ValidationCommand(command="npm run lint", category=ValidationCategory.LINT))
    test_script = scripts.get("test", "")
    if "vitest" in test_script:
        commands.append(ValidationCommand(command="npx vitest run", category=ValidationCategory.TEST))
    elif test_script:
        commands.append(ValidationCommand(command="npm test", category=ValidationCategory.TEST))
    return ValidationPlan(commands=tuple(commands))
