"""Self-critique agent: looks for hidden behavior changes before finalizing."""

import json

from refactor_engine.models.diff_models import FileTree, PatchSet
from refactor_engine.models.report_models import RiskAssessment, RiskLevel
from refactor_engine.models.request_models import RefactorRequest
from refactor_engine.patching.applier import apply_file_diff
from refactor_engine.patching.exceptions import PatchError

DEPENDENCY_SECTIONS = ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies")


def _declared_dependencies(package_json: str | None) -> set[str]:
    if not package_json:
        return set()
    try:
        data = json.loads(package_json)
    except json.JSONDecodeError:
        return set()
    if not isinstance(data, dict):
        return set()
    names: set[str] = set()
    for section in DEPENDENCY_SECTIONS:
        block = data.get(section)
        if isinstance(block, dict):
            names.update(block)
    return names


class ConstraintCritic:
    """Checks a validated PatchSet against the request's constraint flags.

    Returns human-readable findings; an empty list means no hidden behavior
    change was detected.
    """

    def critique(
        self,
        request: RefactorRequest,
        patch_set: PatchSet,
        risk: RiskAssessment | None,
        tree: FileTree | None = None,
    ) -> list[str]:
        findings: list[str] = []
        constraints = request.constraints

        if (
            risk is not None
            and risk.level == RiskLevel.HIGH
            and constraints.behavior_preserving
            and not constraints.allow_breaking
        ):
            findings.append(f"hidden behavior change: {risk.justification}")

        if constraints.no_new_dependencies:
            added = self._new_dependencies(patch_set, tree)
            if added:
                findings.append(
                    "new dependencies added despite noNewDependencies: " + ", ".join(sorted(added))
                )
        return findings

    def _new_dependencies(self, patch_set: PatchSet, tree: FileTree | None) -> set[str]:
        added: set[str] = set()
        for path, content in patch_set.new_files.items():
            if path.rsplit("/", 1)[-1] == "package.json":
                added |= _declared_dependencies(content)
        for diff in patch_set.file_diffs:
            if diff.path.rsplit("/", 1)[-1] != "package.json" or tree is None:
                continue
            before = tree.read(diff.path)
            if before is None:
                continue
            try:
                after = apply_file_diff(diff, before)
            except PatchError:
                continue
            added |= _declared_dependencies(after) - _declared_dependencies(before)
        return added
