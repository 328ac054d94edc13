"""Unit tests for the CLI module (refactor_engine.cli.main)."""

from __future__ import annotations

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from refactor_engine.agents.exceptions import AgentError
from refactor_engine.cli.main import (
    ABORT_PREFIX,
    EXIT_AGENT_ERROR,
    EXIT_GRAPH_ABORT,
    EXIT_INVALID_INPUT,
    EXIT_KEYBOARD_INTERRUPT,
    EXIT_NEEDS_CLARIFICATION,
    EXIT_ORCHESTRATOR_ERROR,
    EXIT_SUCCESS,
    EXIT_UNEXPECTED,
    build_parser,
    build_request,
    determine_exit_code,
    format_result_json,
    main,
    prompt_answer,
    validate_repo_path,
)
from refactor_engine.models import PatchSet, Phase, RequestConstraints, RiskAssessment, RiskLevel
from refactor_engine.orchestrator.exceptions import GraphBuildError
from refactor_engine.patching.unified_diff import generate_file_diff
from refactor_engine.protocol import render_patch_set

from conftest import DATE_UTILS_TS, read_files

RENAMED = DATE_UTILS_TS.replace("pad(", "padTwo(")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def completed(returncode: int) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr="")


@pytest.fixture()
def proposal_file(tmp_path_factory):
    """A nine-section document renaming pad to padTwo in src/dateUtils.ts."""
    diff = generate_file_diff("src/dateUtils.ts", DATE_UTILS_TS, RENAMED)
    text = render_patch_set(PatchSet(file_diffs=(diff,)))
    path = tmp_path_factory.mktemp("proposals") / "rename.md"
    path.write_text(text.replace("## PLAN\nNone", "## PLAN\nRename pad to padTwo", 1), encoding="utf-8")
    return str(path)


@pytest.fixture()
def no_tty():
    with patch("refactor_engine.cli.main.sys.stdin") as stdin:
        stdin.isatty.return_value = False
        yield stdin


def run_args(repo, proposal, *extra):
    return [
        "Rename pad to padTwo in dateUtils",
        str(repo),
        "--proposal-file", proposal,
        "--command", "typecheck:npx tsc --noEmit",
        "--command", "test:npx vitest run",
        *extra,
    ]


# ---------------------------------------------------------------------------
# TestBuildParser
# ---------------------------------------------------------------------------
class TestBuildParser:
    def test_parser_positional_args(self):
        args = build_parser().parse_args(["rename helpers", "/tmp"])
        assert args.goal == "rename helpers"
        assert args.repo_path == "/tmp"

    def test_parser_repeatable_flags(self):
        args = build_parser().parse_args([
            "g", "/tmp",
            "--scope", "src/*.ts",
            "--scope", "lib/*.js",
            "--command", "lint:npm run lint",
            "--answer", "ANSWER: yes",
            "--max-iterations", "5",
            "--module-system", "cjs",
            "--timeout", "30",
            "--llm-provider", "openai",
            "--allow-breaking",
            "--output-json",
        ])
        assert args.scope == ["src/*.ts", "lib/*.js"]
        assert args.command == ["lint:npm run lint"]
        assert args.answer == ["ANSWER: yes"]
        assert args.max_iterations == 5
        assert args.module_system == "cjs"
        assert args.timeout == 30
        assert args.llm_provider == "openai"
        assert args.allow_breaking is True
        assert args.output_json is True

    def test_parser_defaults_defer_to_config(self):
        args = build_parser().parse_args(["g", "/tmp"])
        assert args.max_iterations is None
        assert args.timeout is None
        assert args.model is None
        assert args.llm_provider is None
        assert args.scope == []
        assert args.dry_run is False

    def test_parser_rejects_unknown_module_system(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["g", "/tmp", "--module-system", "amd"])

    def test_parser_no_api_key_flags(self):
        args = build_parser().parse_args(["g", "/tmp"])
        assert not hasattr(args, "api_key")
        assert not hasattr(args, "openai_key")


# ---------------------------------------------------------------------------
# TestValidateRepoPath
# ---------------------------------------------------------------------------
class TestValidateRepoPath:
    def test_validate_valid_dir(self, tmp_path):
        assert validate_repo_path(str(tmp_path)) == str(tmp_path.resolve())

    def test_validate_nonexistent(self):
        with pytest.raises(SystemExit) as exc_info:
            validate_repo_path("/nonexistent/path/xyz_abc_123")
        assert exc_info.value.code == EXIT_INVALID_INPUT

    def test_validate_file_not_dir(self, tmp_path):
        f = tmp_path / "afile.txt"
        f.write_text("hello")
        with pytest.raises(SystemExit) as exc_info:
            validate_repo_path(str(f))
        assert exc_info.value.code == EXIT_INVALID_INPUT


# ---------------------------------------------------------------------------
# TestBuildRequest
# ---------------------------------------------------------------------------
class TestBuildRequest:
    def test_flags_relax_constraints(self):
        args = build_parser().parse_args([
            "g", "/tmp", "--scope", "src/a.ts",
            "--allow-new-dependencies", "--allow-behavior-change", "--allow-breaking",
        ])
        request = build_request(args, RequestConstraints())
        assert request.scope == ("src/a.ts",)
        assert request.constraints == RequestConstraints(
            no_new_dependencies=False, behavior_preserving=False, allow_breaking=True
        )

    def test_missing_flags_keep_configured_constraints(self):
        args = build_parser().parse_args(["g", "/tmp"])
        configured = RequestConstraints(allow_breaking=True, behavior_preserving=False)
        assert build_request(args, configured).constraints == configured

    def test_blank_goal_is_rejected(self):
        args = build_parser().parse_args(["   ", "/tmp"])
        with pytest.raises(ValueError):
            build_request(args, RequestConstraints())


# ---------------------------------------------------------------------------
# TestDryRun
# ---------------------------------------------------------------------------
class TestDryRun:
    def test_dry_run_exits_zero(self, tmp_path):
        assert main(["rename", str(tmp_path), "--dry-run"]) == EXIT_SUCCESS

    def test_dry_run_json_reflects_overrides(self, tmp_path, capsys):
        rc = main([
            "rename", str(tmp_path), "--dry-run", "--output-json",
            "--max-iterations", "99", "--command", "test:npm test", "--allow-breaking",
        ])
        assert rc == EXIT_SUCCESS
        data = json.loads(capsys.readouterr().out)
        assert data["max_iterations"] == 10
        assert data["validation_commands"] == ["test:npm test"]
        assert data["constraints"]["allow_breaking"] is True
        assert "api_key" not in data

    def test_dry_run_human_output(self, tmp_path, capsys):
        main(["rename", str(tmp_path), "--dry-run", "--scope", "src/*.ts"])
        out = capsys.readouterr().out
        assert "Configuration:" in out
        assert "  scope: ['src/*.ts']" in out


# ---------------------------------------------------------------------------
# TestOutputFormatting
# ---------------------------------------------------------------------------
class TestOutputFormatting:
    def test_format_result_json_serializes_models(self):
        risk = RiskAssessment(level=RiskLevel.LOW, justification="internal-only changes")
        parsed = json.loads(format_result_json({"phase": "finalized", "history": [risk], "document": None}))
        assert parsed["history"][0]["level"] == "low"
        assert parsed["document"] is None

    def test_determine_exit_code_success(self):
        assert determine_exit_code({"phase": Phase.FINALIZED.value, "errors": []}) == EXIT_SUCCESS

    def test_determine_exit_code_blocked(self):
        result = {"phase": Phase.BLOCKED_ON_CLARIFICATION.value, "errors": []}
        assert determine_exit_code(result) == EXIT_NEEDS_CLARIFICATION

    def test_determine_exit_code_abort(self):
        result = {"phase": Phase.ABORTED.value, "errors": [f"{ABORT_PREFIX} iteration budget exhausted"]}
        assert determine_exit_code(result) == EXIT_GRAPH_ABORT

    def test_determine_exit_code_no_false_abort(self):
        result = {"phase": Phase.ABORTED.value, "errors": ["cannot abort the rollback"]}
        assert determine_exit_code(result) == EXIT_ORCHESTRATOR_ERROR


# ---------------------------------------------------------------------------
# TestPromptAnswer
# ---------------------------------------------------------------------------
class TestPromptAnswer:
    def test_bare_lines_become_answer_and_files(self):
        with patch("builtins.input", side_effect=["only the date helpers", "- src/dateUtils.ts", ""]):
            assert prompt_answer() == "ANSWER: only the date helpers\nFILES:\n- src/dateUtils.ts"

    def test_cancel_is_passed_through(self):
        with patch("builtins.input", side_effect=["CANCEL", ""]):
            assert prompt_answer() == "CANCEL"

    def test_eof_without_input(self):
        with patch("builtins.input", side_effect=EOFError):
            assert prompt_answer() == ""


# ---------------------------------------------------------------------------
# TestMainRun
# ---------------------------------------------------------------------------
class TestMainRun:
    def test_proposal_file_run_finalizes(self, ts_repo, proposal_file, no_tty, capsys):
        with patch("subprocess.run", return_value=completed(0)) as mock_run:
            rc = main(run_args(ts_repo, proposal_file, "--scope", "src/dateUtils.ts"))

        assert rc == EXIT_SUCCESS
        assert mock_run.call_count == 2
        assert "## PLAN\nRename pad to padTwo" in capsys.readouterr().out
        assert read_files(ts_repo, ["src/dateUtils.ts"])["src/dateUtils.ts"] == RENAMED

    def test_failing_tests_abort_and_restore(self, ts_repo, proposal_file, no_tty, capsys):
        with patch("subprocess.run", side_effect=[completed(0), completed(1)]):
            rc = main(run_args(ts_repo, proposal_file, "--scope", "src/dateUtils.ts", "--max-iterations", "1"))

        assert rc == EXIT_GRAPH_ABORT
        assert read_files(ts_repo, ["src/dateUtils.ts"])["src/dateUtils.ts"] == DATE_UTILS_TS
        assert "# already applied by the engine" in capsys.readouterr().out

    def test_ambiguous_scope_without_answers_stays_blocked(self, ts_repo, proposal_file, no_tty, capsys):
        with patch("subprocess.run", return_value=completed(0)) as mock_run:
            rc = main(run_args(ts_repo, proposal_file, "--scope", "src/*.ts", "--output-json"))

        assert rc == EXIT_NEEDS_CLARIFICATION
        mock_run.assert_not_called()
        data = json.loads(capsys.readouterr().out)
        assert data["phase"] == "blocked_on_clarification"
        assert "candidate: src/formatters.ts" in data["document"]["notes"]

    def test_scripted_answer_resolves_clarification(self, ts_repo, proposal_file, no_tty):
        answer = "ANSWER: just the date helpers\nFILES:\n- src/dateUtils.ts"
        with patch("subprocess.run", return_value=completed(0)):
            rc = main(run_args(ts_repo, proposal_file, "--scope", "src/*.ts", "--answer", answer))

        assert rc == EXIT_SUCCESS
        assert read_files(ts_repo, ["src/dateUtils.ts"])["src/dateUtils.ts"] == RENAMED

    def test_malformed_scripted_answer_leaves_request_blocked(self, ts_repo, proposal_file, no_tty, capsys):
        rc = main(run_args(ts_repo, proposal_file, "--scope", "src/*.ts", "--answer", "FILES:\n- src/a.ts"))

        assert rc == EXIT_NEEDS_CLARIFICATION
        assert "Invalid answer" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# TestErrorHandling
# ---------------------------------------------------------------------------
class TestErrorHandling:
    def test_main_nonexistent_repo(self):
        assert main(["rename", "/nonexistent/path/xyz"]) == EXIT_INVALID_INPUT

    def test_main_missing_config_file(self, tmp_path):
        rc = main(["rename", str(tmp_path), "--config", str(tmp_path / "missing.toml")])
        assert rc == EXIT_INVALID_INPUT

    def test_main_invalid_timeout(self, tmp_path):
        assert main(["rename", str(tmp_path), "--timeout", "0"]) == EXIT_INVALID_INPUT

    @patch("refactor_engine.cli.main.create_planner", side_effect=AgentError("boom"))
    def test_main_agent_error(self, _mock, tmp_path):
        assert main(["rename", str(tmp_path)]) == EXIT_AGENT_ERROR

    @patch("refactor_engine.orchestrator.engine.build_graph", side_effect=GraphBuildError("boom"))
    @patch("refactor_engine.cli.main.create_planner")
    def test_main_graph_build_error(self, mock_create, _mock_build, tmp_path):
        mock_create.return_value = MagicMock()
        assert main(["rename", str(tmp_path)]) == EXIT_ORCHESTRATOR_ERROR

    @patch("refactor_engine.orchestrator.engine.build_graph", side_effect=KeyboardInterrupt)
    @patch("refactor_engine.cli.main.create_planner")
    def test_main_keyboard_interrupt(self, mock_create, _mock_build, tmp_path):
        mock_create.return_value = MagicMock()
        assert main(["rename", str(tmp_path)]) == EXIT_KEYBOARD_INTERRUPT

    @patch("refactor_engine.orchestrator.engine.build_graph", side_effect=RuntimeError("oops"))
    @patch("refactor_engine.cli.main.create_planner")
    def test_main_unexpected_error(self, mock_create, _mock_build, tmp_path):
        mock_create.return_value = MagicMock()
        assert main(["rename", str(tmp_path)]) == EXIT_UNEXPECTED
