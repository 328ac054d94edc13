"""Planner collaborators that turn a refactor request into a proposed PatchSet."""

import logging
import os
import re
from pathlib import Path
from typing import Literal, Protocol

from anthropic import Anthropic
import openai
from pydantic import BaseModel, ConfigDict, Field

from refactor_engine.agents.exceptions import (
    AgentError,
    DirectiveValidationError,
    PlanningError,
)
from refactor_engine.models import FileTree, PatchSet, RefactorRequest
from refactor_engine.patching.exceptions import ParseError
from refactor_engine.protocol.parser import document_patch_set, parse_document

logger = logging.getLogger(__name__)

MAX_GOAL_LENGTH = 2000
MAX_FILE_CHARS_IN_PROMPT = 20000
MAX_FAILURE_LINES_IN_PROMPT = 80
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
MAX_TOKENS = 8192

# Prompt injection patterns - case-insensitive substring matches
_INJECTION_SUBSTRINGS = [
    "ignore previous",
    "ignore above",
    "ignore all",
    "disregard previous",
    "disregard above",
    "forget previous",
    "forget your",
    "system prompt",
    "you are now",
    "new instructions",
    "override instructions",
    "pretend you",
    "jailbreak",
]

# Structural injection markers
_INJECTION_REGEXES = [
    re.compile(r"<\|"),
    re.compile(r"\|>"),
    re.compile(r"\[/?INST\]", re.IGNORECASE),
    re.compile(r"<</?SYS>>", re.IGNORECASE),
    re.compile(r"```\s*system", re.IGNORECASE),
]
_FENCE_RE = re.compile(r"^```[\w-]*\n(.*?)\n```\s*$", re.DOTALL)


class PlanRequest(BaseModel):
    """Everything a planner sees for one Planning entry."""

    model_config = ConfigDict(frozen=True)

    request: RefactorRequest
    iteration: int
    target_paths: tuple[str, ...] = ()
    files: FileTree = Field(default_factory=FileTree)  # Pre-request contents of the targets
    failure_context: tuple[str, ...] = ()
    clarifications: tuple[str, ...] = ()  # Free-text answers to earlier questions
    module_system: Literal["esm", "cjs"] = "esm"


class Proposal(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_text: str
    patch_set: PatchSet


class Planner(Protocol):
    def propose(self, plan_request: PlanRequest) -> Proposal: ...


def validate_goal(goal: str) -> None:
    """Reject empty, oversized or injection-bearing goals.

    Raises:
        DirectiveValidationError: If the goal is invalid or potentially malicious.
    """
    if not goal or not goal.strip():
        raise DirectiveValidationError("Goal cannot be empty or whitespace-only")
    if len(goal) > MAX_GOAL_LENGTH:
        raise DirectiveValidationError(
            f"Goal exceeds maximum length of {MAX_GOAL_LENGTH} characters"
        )
    lowered = goal.lower()
    for pattern in _INJECTION_SUBSTRINGS:
        if pattern in lowered:
            raise DirectiveValidationError(
                f"Goal contains potentially malicious pattern: '{pattern}'"
            )
    for regex in _INJECTION_REGEXES:
        if regex.search(goal):
            raise DirectiveValidationError("Goal contains potentially malicious markup")


def proposal_from_text(text: str) -> Proposal:
    """Build a Proposal from a nine-section protocol document.

    Raises:
        PlanningError: If the document or its patch sections do not parse.
    """
    stripped = text.strip()
    fenced = _FENCE_RE.match(stripped)
    if fenced:
        stripped = fenced.group(1)
    try:
        document = parse_document(stripped)
        patch_set = document_patch_set(document)
    except ParseError as exc:
        raise PlanningError(f"Unusable planner output: {exc}") from exc
    if patch_set.is_empty():
        raise PlanningError("Planner output contains no DIFFS, NEW_FILES or DELETED_FILES")
    return Proposal(plan_text=document.plan or "", patch_set=patch_set)


class ProtocolFilePlanner:
    """Replays a pre-written protocol document as the proposal for every iteration."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def propose(self, plan_request: PlanRequest) -> Proposal:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PlanningError(f"Cannot read proposal file {self.path}: {exc}") from exc
        return proposal_from_text(text)


class LLMPatchPlanner:
    """Asks an LLM for a patch answered in the nine-section protocol."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        llm_provider: str = "auto",
        llm_fallback_provider: str | None = None,
        allow_fallback: bool = False,
        allow_human_fallback: bool = False,
    ):
        """Initialize the planner.

        Args:
            api_key: Anthropic API key (falls back to ANTHROPIC_API_KEY env var)
            model: Model ID to use for planning

        Raises:
            AgentError: If no API key is found
        """
        self.model = model
        self.api_key: str | None = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
        self._anthropic_client: Anthropic | None = None
        self._openai_client: openai.OpenAI | None = None
        if self.api_key:
            self._anthropic_client = Anthropic(api_key=self.api_key)
        if self.openai_api_key:
            self._openai_client = openai.OpenAI(api_key=self.openai_api_key)
        if not (self._anthropic_client or self._openai_client):
            raise AgentError(
                "No Anthropic or OpenAI API key found. "
                "Provide via parameters, ANTHROPIC_API_KEY or OPENAI_API_KEY env vars."
            )
        self.set_provider_config(
            llm_provider=llm_provider,
            llm_fallback_provider=llm_fallback_provider,
            allow_fallback=allow_fallback,
            allow_human_fallback=allow_human_fallback,
        )

    def _normalize_provider(self, value: str) -> Literal["anthropic", "openai", "auto"]:
        if value not in {"auto", "anthropic", "openai"}:
            raise PlanningError(f"Unsupported provider: {value}")
        return value

    def set_provider_config(
        self,
        llm_provider: str = "auto",
        llm_fallback_provider: str | None = None,
        allow_fallback: bool = False,
        allow_human_fallback: bool = False,
    ) -> None:
        self.llm_provider = self._normalize_provider(llm_provider)
        self.llm_fallback_provider = (
            self._normalize_provider(llm_fallback_provider) if llm_fallback_provider else None
        )
        self.allow_fallback = bool(allow_fallback)
        self.allow_human_fallback = bool(allow_human_fallback)

        if self.llm_provider == "anthropic" and self._anthropic_client is None:
            raise PlanningError("No Anthropic API key found for --llm-provider=anthropic.")
        if self.llm_provider == "openai" and self._openai_client is None:
            raise PlanningError("No OpenAI API key found for --llm-provider=openai.")
        if self.allow_fallback and self.llm_fallback_provider:
            if self.llm_fallback_provider == "anthropic" and self._anthropic_client is None:
                raise PlanningError(
                    "Fallback provider requested as anthropic but ANTHROPIC_API_KEY is not set."
                )
            if self.llm_fallback_provider == "openai" and self._openai_client is None:
                raise PlanningError(
                    "Fallback provider requested as openai but OPENAI_API_KEY is not set."
                )

    def _primary_provider(self) -> Literal["anthropic", "openai"]:
        if self.llm_provider == "auto":
            return "anthropic" if self._anthropic_client is not None else "openai"
        return self.llm_provider

    def _resolve_model(self, provider: str) -> str:
        if provider == "openai" and self.model.startswith("claude-"):
            return DEFAULT_OPENAI_MODEL
        return self.model

    def _provider_chain(self) -> list[str]:
        chain: list[str] = [self._primary_provider()]
        if self.allow_fallback and self.llm_fallback_provider:
            if self.llm_fallback_provider != chain[0]:
                chain.append(self.llm_fallback_provider)
        return chain

    def _prompt_fallback(self, error: Exception, fallback_provider: str) -> bool:
        if not self.allow_human_fallback:
            return False
        try:
            prompt = (
                f"Planner call failed with {type(error).__name__}: {error} "
                f"\nUse fallback provider '{fallback_provider}'? [y/N]: "
            )
            return input(prompt).strip().lower() in {"y", "yes"}
        except EOFError:
            return False

    def _complete(self, provider: str, prompt: str) -> str:
        if provider == "anthropic":
            if not self._anthropic_client:
                raise PlanningError("Anthropic client unavailable")
            response = self._anthropic_client.messages.create(
                model=self._resolve_model("anthropic"),
                max_tokens=MAX_TOKENS,
                messages=[{"role": "user", "content": prompt}],
            )
            return "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            )
        if not self._openai_client:
            raise PlanningError("OpenAI client unavailable")
        response = self._openai_client.chat.completions.create(
            model=self._resolve_model("openai"),
            max_tokens=MAX_TOKENS,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.choices[0].message.content or ""

    def propose(self, plan_request: PlanRequest) -> Proposal:
        """Produce a plan and PatchSet for one Planning entry.

        Raises:
            DirectiveValidationError: If the goal is invalid or malicious.
            PlanningError: If every provider fails or the reply is unusable.
        """
        validate_goal(plan_request.request.goal)
        prompt = self._build_prompt(plan_request)

        text: str | None = None
        providers = self._provider_chain()
        last_error: Exception | None = None
        for index, provider in enumerate(providers):
            try:
                text = self._complete(provider, prompt)
                logger.debug("Planner reply from %s (%d chars)", provider, len(text))
                break
            except Exception as error:
                last_error = error
                logger.warning("Planner call via %s failed: %s", provider, error)
                if index >= len(providers) - 1:
                    break
                # Fallback is automatic unless a human is around to confirm it
                if self.allow_human_fallback and not self._prompt_fallback(
                    error, providers[index + 1]
                ):
                    break

        if text is None:
            raise PlanningError(f"Failed to call planner LLM: {last_error}") from last_error
        return proposal_from_text(text)

    def _build_prompt(self, plan_request: PlanRequest) -> str:
        request = plan_request.request
        constraints = request.constraints
        file_blocks: list[str] = []
        budget = MAX_FILE_CHARS_IN_PROMPT
        for path in plan_request.target_paths:
            content = plan_request.files.read(path)
            if content is None:
                continue
            excerpt = content[:budget]
            budget -= len(excerpt)
            file_blocks.append(f"=== {path} ===\n{excerpt}")
            if budget <= 0:
                file_blocks.append("... further files omitted")
                break

        failure = ""
        if plan_request.failure_context:
            lines = list(plan_request.failure_context)[-MAX_FAILURE_LINES_IN_PROMPT:]
            failure = (
                "\nThe previous attempt was reverted. Its failures were:\n"
                + "\n".join(lines)
                + "\nProduce a new patch against the original files below.\n"
            )

        answers = ""
        if plan_request.clarifications:
            answers = "\nClarifications from the requester:\n" + "\n".join(
                f"- {answer}" for answer in plan_request.clarifications
            )

        return f"""You are a refactoring engine for a JavaScript/TypeScript codebase \
({plan_request.module_system.upper()} modules).

Goal: {request.goal}

Constraints:
- noNewDependencies: {str(constraints.no_new_dependencies).lower()}
- behaviorPreserving: {str(constraints.behavior_preserving).lower()}
- allowBreaking: {str(constraints.allow_breaking).lower()}
{answers}

Attempt {plan_request.iteration}.{failure}

Current files:
{chr(10).join(file_blocks) or "(none)"}

Answer with exactly these nine sections, in order, each introduced by a line
'## NAME' and containing the literal None when empty:
PLAN, RISKS, DIFFS, NEW_FILES, DELETED_FILES, COMMANDS, TESTS, NOTES, ROLLBACK.
DIFFS holds unified diffs ('--- path', '+++ path', '@@ -a,b +c,d @@') against the
files above with exact context lines. NEW_FILES holds blocks
'=== FILE: path ===' ... '=== END FILE ===' in which every content line starts
with '|'. DELETED_FILES lists one path per line. Start any other line that
begins with '## ' with a backslash.
"""
