"""Public API surface extraction for JavaScript/TypeScript using tree-sitter."""

import re
from pathlib import Path
from typing import Any, Literal

import tree_sitter_javascript as tsjs
import tree_sitter_typescript as tsts
from tree_sitter import Language, Parser, Tree

from refactor_engine.models.schemas import ApiSymbol

# Initialize language objects
JS_LANGUAGE = Language(tsjs.language())
TS_LANGUAGE = Language(tsts.language_typescript())
TSX_LANGUAGE = Language(tsts.language_tsx())

_EXTENSIONS = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
}
_FUNCTION_NODES = ("function_declaration", "generator_function_declaration", "function_signature")
_FUNCTION_VALUES = ("arrow_function", "function_expression", "function", "generator_function")
_CLASS_NODES = ("class_declaration", "abstract_class_declaration", "class")
_TYPE_NODES = ("interface_declaration", "type_alias_declaration", "enum_declaration")
_WHITESPACE_RE = re.compile(r"\s+")

ModuleSystem = Literal["esm", "cjs"]


def get_language_for_file(file_path: str) -> str:
    """Map file extension to tree-sitter language name.

    Raises:
        ValueError: If file extension is not supported
    """
    ext = Path(file_path).suffix
    if ext not in _EXTENSIONS:
        raise ValueError(f"Unsupported file extension: {ext}")
    return _EXTENSIONS[ext]


def is_supported(file_path: str) -> bool:
    return Path(file_path).suffix in _EXTENSIONS


def get_parser(language: str) -> Parser:
    """Return a tree-sitter Parser for the given language name."""
    parser = Parser()
    if language == "javascript":
        parser.language = JS_LANGUAGE
    elif language == "typescript":
        parser.language = TS_LANGUAGE
    elif language == "tsx":
        parser.language = TSX_LANGUAGE
    else:
        raise ValueError(f"Unsupported language: {language}")
    return parser


def parse_source(file_path: str, content: str) -> Tree:
    parser = get_parser(get_language_for_file(file_path))
    return parser.parse(content.encode("utf-8"))


def _text(node: Any) -> str:
    if node is None or node.text is None:
        return ""
    return _WHITESPACE_RE.sub(" ", node.text.decode("utf-8")).strip()


def _function_signature(node: Any) -> str:
    params = node.child_by_field_name("parameters") or node.child_by_field_name("parameter")
    signature = _text(params)
    return_type = node.child_by_field_name("return_type")
    if return_type is not None:
        signature += _text(return_type)
    if node.children and node.children[0].type == "async":
        signature = "async " + signature
    return signature


def _class_signature(node: Any) -> str:
    """Signature of a class: its public method names and parameters."""
    body = node.child_by_field_name("body")
    if body is None:
        return ""
    members = []
    for child in body.children:
        if child.type not in ("method_definition", "method_signature"):
            continue
        name = _text(child.child_by_field_name("name"))
        if not name or name.startswith("#"):
            continue
        if any(grand.type == "accessibility_modifier" and _text(grand) == "private"
               for grand in child.children):
            continue
        members.append(f"{name}{_function_signature(child)}")
    return "; ".join(members)


def _symbol_for_value(name: str, value: Any, line: int) -> ApiSymbol:
    if value is not None and value.type in _FUNCTION_VALUES:
        return ApiSymbol(name=name, kind="function", signature=_function_signature(value), line=line)
    if value is not None and value.type in _CLASS_NODES:
        return ApiSymbol(name=name, kind="class", signature=_class_signature(value), line=line)
    return ApiSymbol(name=name, kind="variable", line=line)


def _symbols_for_declaration(decl: Any) -> list[ApiSymbol]:
    line = decl.start_point[0] + 1
    name = _text(decl.child_by_field_name("name"))
    if decl.type in _FUNCTION_NODES:
        return [ApiSymbol(name=name, kind="function", signature=_function_signature(decl), line=line)]
    if decl.type in _CLASS_NODES:
        return [ApiSymbol(name=name, kind="class", signature=_class_signature(decl), line=line)]
    if decl.type in _TYPE_NODES:
        return [ApiSymbol(name=name, kind="type", signature=_text(decl), line=line)]
    if decl.type in ("lexical_declaration", "variable_declaration"):
        symbols = []
        for declarator in decl.children:
            if declarator.type != "variable_declarator":
                continue
            symbol = _symbol_for_value(
                _text(declarator.child_by_field_name("name")),
                declarator.child_by_field_name("value"),
                declarator.start_point[0] + 1,
            )
            annotation = declarator.child_by_field_name("type")
            if annotation is not None and symbol.kind == "variable":
                symbol = symbol.model_copy(update={"signature": _text(annotation)})
            symbols.append(symbol)
        return symbols
    return []


def _esm_exports(root: Any) -> list[ApiSymbol]:
    symbols: list[ApiSymbol] = []
    for node in root.children:
        if node.type != "export_statement":
            continue
        line = node.start_point[0] + 1
        is_default = any(child.type == "default" for child in node.children)
        decl = node.child_by_field_name("declaration")
        if is_default:
            value = decl or node.child_by_field_name("value")
            signature = ""
            if value is not None and (value.type in _FUNCTION_NODES or value.type in _FUNCTION_VALUES):
                signature = _function_signature(value)
            symbols.append(ApiSymbol(name="default", kind="default", signature=signature, line=line))
            continue
        if decl is not None:
            symbols.extend(_symbols_for_declaration(decl))
            continue
        source = node.child_by_field_name("source")
        clause = next((child for child in node.children if child.type == "export_clause"), None)
        if clause is None:
            # export * from "./module"
            symbols.append(ApiSymbol(name=f"* from {_text(source)}", kind="reexport", line=line))
            continue
        for specifier in clause.children:
            if specifier.type != "export_specifier":
                continue
            alias = specifier.child_by_field_name("alias")
            exported = _text(alias) or _text(specifier.child_by_field_name("name"))
            symbols.append(ApiSymbol(name=exported, kind="reexport", line=line))
    return symbols


def _cjs_exports(root: Any) -> list[ApiSymbol]:
    symbols: list[ApiSymbol] = []
    for node in root.children:
        if node.type != "expression_statement" or not node.children:
            continue
        assignment = node.children[0]
        if assignment.type != "assignment_expression":
            continue
        left = _text(assignment.child_by_field_name("left"))
        right = assignment.child_by_field_name("right")
        line = node.start_point[0] + 1
        if left == "module.exports":
            if right is not None and right.type == "object":
                symbols.extend(_object_members(right, line))
            else:
                symbols.append(_symbol_for_value("default", right, line))
        elif left.startswith("module.exports.") or left.startswith("exports."):
            symbols.append(_symbol_for_value(left.rsplit(".", 1)[-1], right, line))
    return symbols


def _object_members(obj: Any, line: int) -> list[ApiSymbol]:
    members = []
    for child in obj.children:
        if child.type == "shorthand_property_identifier":
            members.append(ApiSymbol(name=_text(child), kind="variable", line=line))
        elif child.type == "pair":
            key = _text(child.child_by_field_name("key")).strip("'\"")
            members.append(_symbol_for_value(key, child.child_by_field_name("value"), line))
        elif child.type == "method_definition":
            name = _text(child.child_by_field_name("name"))
            members.append(
                ApiSymbol(name=name, kind="function", signature=_function_signature(child), line=line)
            )
    return members


def extract_api_surface(
    file_path: str,
    content: str,
    module_system: ModuleSystem = "esm",
) -> dict[str, ApiSymbol]:
    """Extract the symbols a module exports, keyed by exported name.

    Args:
        file_path: Path used to pick the grammar (by extension).
        content: Full source text.
        module_system: "esm" reads export statements, "cjs" reads
            module.exports / exports.* assignments.

    Returns:
        Mapping of exported name to ApiSymbol; empty for unsupported files.
    """
    if not is_supported(file_path):
        return {}
    root = parse_source(file_path, content).root_node
    symbols = _cjs_exports(root) if module_system == "cjs" else _esm_exports(root)
    return {symbol.name: symbol for symbol in symbols if symbol.name}


def extract_declarations(file_path: str, content: str) -> set[str]:
    """Return names of top-level functions and classes, exported or not."""
    if not is_supported(file_path):
        return set()
    root = parse_source(file_path, content).root_node
    names: set[str] = set()
    for node in root.children:
        decl = node.child_by_field_name("declaration") if node.type == "export_statement" else node
        if decl is None:
            continue
        for symbol in _symbols_for_declaration(decl):
            if symbol.kind in ("function", "class") and symbol.name:
                names.add(symbol.name)
    return names
