"""Risk Classifier agent: rule-based severity labels for PatchSets."""

import re
from dataclasses import dataclass

from refactor_engine.models.diff_models import FileDiff, FileTree, PatchSet
from refactor_engine.models.report_models import FileRisk, RiskAssessment, RiskLevel
from refactor_engine.models.request_models import RequestConstraints
from refactor_engine.patching.applier import apply_file_diff
from refactor_engine.patching.exceptions import PatchError
from refactor_engine.utils.api_surface import (
    ModuleSystem,
    extract_api_surface,
    extract_declarations,
    is_supported,
)

CONCURRENCY_RE = re.compile(
    r"Promise\.(?:all|allSettled|race|any)\b"
    r"|\bnew\s+(?:Worker|SharedWorker|MessageChannel)\b"
    r"|\bworker_threads\b|\bSharedArrayBuffer\b|\bAtomics\."
    r"|\b(?:Readable|Writable|Transform|Duplex)(?:Stream)?\b"
    r"|\bcreate(?:Read|Write)Stream\b|\.pipe(?:line|To|Through)?\("
    r"|\bfor\s+await\b|\basync\s*\*"
    r"|\b(?:setInterval|queueMicrotask)\(|\bprocess\.nextTick\("
    r"|\b(?:Mutex|Semaphore)\b"
    r"|\basyncio\.(?:gather|create_task|Lock|Queue)\b|\bthreading\."
)
ASYNC_RE = re.compile(r"\bawait\b|\basync\b|\.then\(|\bnew\s+Promise\(")
EXPORT_LINE_RE = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?:function\*?|class|const|let|var|interface|type|enum)\s+([A-Za-z_$][\w$]*)(.*)$"
)
CJS_EXPORT_LINE_RE = re.compile(r"^\s*(?:module\.)?exports\.([A-Za-z_$][\w$]*)\s*=\s*(.*)$")
DECLARATION_LINE_RE = re.compile(
    r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?(?:function\*?\s+|class\s+)([A-Za-z_$][\w$]*)"
)
_WHITESPACE_RE = re.compile(r"\s+")
NO_FINDINGS_JUSTIFICATION = "internal-only changes (renames, comments, formatting)"


@dataclass
class _Finding:
    level: RiskLevel
    reason: str


@dataclass
class _FileView:
    """Before/after view of one touched file."""

    path: str
    before: str | None      # Full content, None if unknown or created
    after: str | None       # Full content, None if unknown or deleted
    removed: list[str]      # Changed lines only
    added: list[str]
    created: bool = False
    deleted: bool = False


def _line_signature(rest: str) -> str:
    return _WHITESPACE_RE.sub(" ", rest.split("{", 1)[0]).strip().rstrip(";")


def _line_exports(lines: list[str], module_system: ModuleSystem) -> dict[str, str]:
    pattern = CJS_EXPORT_LINE_RE if module_system == "cjs" else EXPORT_LINE_RE
    exports: dict[str, str] = {}
    for line in lines:
        match = pattern.match(line)
        if match:
            exports[match.group(1)] = _line_signature(match.group(2))
    return exports


def _line_declarations(lines: list[str]) -> set[str]:
    names = set()
    for line in lines:
        match = DECLARATION_LINE_RE.match(line)
        if match:
            names.add(match.group(1))
    return names


class RiskClassifier:
    """Assigns low/medium/high labels from declared predicates.

    Rules are evaluated high -> medium -> low and the highest matching tier
    wins, for each file and for the PatchSet as a whole.
    """

    def __init__(self, module_system: ModuleSystem = "esm") -> None:
        self.module_system: ModuleSystem = module_system

    def classify(
        self,
        patch_set: PatchSet,
        constraints: RequestConstraints | None = None,
        tree: FileTree | None = None,
    ) -> RiskAssessment:
        """Classify a PatchSet.

        Args:
            patch_set: The proposed changes.
            constraints: Request constraints; only used to annotate
                justifications.
            tree: Pre-apply contents of the touched files. When given,
                JS/TS public API is compared with tree-sitter; otherwise it
                is read from export lines inside the hunks.

        Returns:
            RiskAssessment with one FileRisk per touched path.
        """
        constraints = constraints or RequestConstraints()
        if patch_set.is_empty():
            return RiskAssessment(level=RiskLevel.LOW, justification="empty patch set")

        views = self._build_views(patch_set, tree)
        findings: dict[str, list[_Finding]] = {view.path: [] for view in views}

        for view in views:
            findings[view.path].extend(self._api_findings(view))
            findings[view.path].extend(self._control_flow_findings(view))
        for path, finding in self._relocation_findings(views):
            findings[path].append(finding)

        file_risks = []
        for view in views:
            file_risks.append(self._summarize(view.path, findings[view.path], constraints))

        level = RiskLevel.highest([risk.level for risk in file_risks])
        top = [
            finding.reason
            for view in views
            for finding in findings[view.path]
            if finding.level == level
        ]
        justification = "; ".join(dict.fromkeys(top)) if top else NO_FINDINGS_JUSTIFICATION
        if level == RiskLevel.HIGH and not constraints.allow_breaking:
            justification += " (breaking changes not allowed by request)"
        return RiskAssessment(level=level, justification=justification, file_risks=tuple(file_risks))

    def _summarize(
        self, path: str, findings: list[_Finding], constraints: RequestConstraints
    ) -> FileRisk:
        if not findings:
            return FileRisk(path=path, level=RiskLevel.LOW, justification=NO_FINDINGS_JUSTIFICATION)
        level = RiskLevel.highest([finding.level for finding in findings])
        reasons = [finding.reason for finding in findings if finding.level == level]
        return FileRisk(path=path, level=level, justification="; ".join(dict.fromkeys(reasons)))

    def _build_views(self, patch_set: PatchSet, tree: FileTree | None) -> list[_FileView]:
        views: list[_FileView] = []
        for diff in patch_set.file_diffs:
            views.append(self._modified_view(diff, tree))
        for path, content in patch_set.new_files.items():
            views.append(
                _FileView(path=path, before=None, after=content, removed=[],
                          added=content.splitlines(), created=True)
            )
        for path in patch_set.deleted_files:
            prior = tree.read(path) if tree is not None else None
            views.append(
                _FileView(path=path, before=prior, after=None,
                          removed=prior.splitlines() if prior else [], added=[], deleted=True)
            )
        return views

    def _modified_view(self, diff: FileDiff, tree: FileTree | None) -> _FileView:
        removed = [line.text.rstrip("\n") for hunk in diff.hunks for line in hunk.lines if line.kind == "-"]
        added = [line.text.rstrip("\n") for hunk in diff.hunks for line in hunk.lines if line.kind == "+"]
        before = tree.read(diff.path) if tree is not None else None
        after = None
        if before is not None:
            try:
                after = apply_file_diff(diff, before)
            except PatchError:
                before = None
        return _FileView(path=diff.path, before=before, after=after, removed=removed, added=added)

    def _api_findings(self, view: _FileView) -> list[_Finding]:
        if not is_supported(view.path):
            return []

        if view.deleted and view.before is None:
            return [_Finding(RiskLevel.HIGH, f"deleted public export: file {view.path} removed "
                                             "with unknown exports")]

        has_full_text = (view.before is not None or view.created) and (
            view.after is not None or view.deleted
        )
        if has_full_text:
            before = {
                name: symbol.signature
                for name, symbol in extract_api_surface(
                    view.path, view.before or "", self.module_system
                ).items()
            } if view.before is not None else {}
            after = {
                name: symbol.signature
                for name, symbol in extract_api_surface(
                    view.path, view.after or "", self.module_system
                ).items()
            } if view.after is not None else {}
        else:
            before = _line_exports(view.removed, self.module_system)
            after = _line_exports(view.added, self.module_system)

        findings: list[_Finding] = []
        for name in sorted(before.keys() - after.keys()):
            findings.append(_Finding(RiskLevel.HIGH, f"deleted public export: `{name}` in {view.path}"))
        for name in sorted(before.keys() & after.keys()):
            if before[name] != after[name]:
                findings.append(
                    _Finding(
                        RiskLevel.HIGH,
                        f"public API signature change: `{name}` in {view.path} "
                        f"({before[name] or '?'} -> {after[name] or '?'})",
                    )
                )
        for name in sorted(after.keys() - before.keys()):
            findings.append(_Finding(RiskLevel.MEDIUM, f"additive public API: `{name}` in {view.path}"))
        return findings

    def _control_flow_findings(self, view: _FileView) -> list[_Finding]:
        findings: list[_Finding] = []
        changed = view.removed + view.added
        if any(CONCURRENCY_RE.search(line) for line in changed):
            findings.append(
                _Finding(RiskLevel.HIGH, f"touches concurrency/streaming control flow in {view.path}")
            )
        added_async = sum(len(ASYNC_RE.findall(line)) for line in view.added)
        removed_async = sum(len(ASYNC_RE.findall(line)) for line in view.removed)
        if added_async > removed_async:
            findings.append(
                _Finding(RiskLevel.MEDIUM, f"new asynchronous control-flow path in {view.path}")
            )
        return findings

    def _declarations(self, view: _FileView) -> tuple[set[str], set[str]]:
        """Return (removed, added) top-level declaration names for a file."""
        if is_supported(view.path):
            if view.created and view.after is not None:
                return set(), extract_declarations(view.path, view.after)
            if view.deleted and view.before is not None:
                return extract_declarations(view.path, view.before), set()
            if view.before is not None and view.after is not None:
                before = extract_declarations(view.path, view.before)
                after = extract_declarations(view.path, view.after)
                return before - after, after - before
        removed = _line_declarations(view.removed)
        added = _line_declarations(view.added)
        return removed - added, added - removed

    def _relocation_findings(self, views: list[_FileView]) -> list[tuple[str, _Finding]]:
        declared = {view.path: self._declarations(view) for view in views}
        results: list[tuple[str, _Finding]] = []
        for source, (removed, _) in declared.items():
            for target, (_, added) in declared.items():
                if source == target:
                    continue
                for name in sorted(removed & added):
                    finding = _Finding(
                        RiskLevel.MEDIUM,
                        f"cross-file logic relocation: `{name}` moved from {source} to {target}",
                    )
                    results.append((source, finding))
                    results.append((target, finding))
        return results


def classify(
    patch_set: PatchSet,
    constraints: RequestConstraints | None = None,
    tree: FileTree | None = None,
    module_system: ModuleSystem = "esm",
) -> RiskAssessment:
    """Convenience wrapper around RiskClassifier.classify."""
    return RiskClassifier(module_system=module_system).classify(patch_set, constraints, tree)
