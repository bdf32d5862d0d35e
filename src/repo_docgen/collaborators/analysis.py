"""Structural source analysis: functions, classes, imports and exports per file."""

from __future__ import annotations

import ast
import logging
import re
from pathlib import PurePosixPath

from repo_docgen.collaborators.base import (
    ClassInfo,
    FileAnalysis,
    FunctionInfo,
    ImportInfo,
)

logger = logging.getLogger(__name__)

LANGUAGE_BY_EXTENSION = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
}

_JS_FUNCTION = re.compile(
    r"^\s*(?P<export>export\s+(?:default\s+)?)?(?P<async>async\s+)?function\s*\*?\s*"
    r"(?P<name>[A-Za-z_$][\w$]*)\s*\((?P<params>[^)]*)\)",
)
_JS_ARROW = re.compile(
    r"^\s*(?P<export>export\s+)?(?:const|let|var)\s+(?P<name>[A-Za-z_$][\w$]*)\s*"
    r"(?::[^=]+)?=\s*(?P<async>async\s+)?(?:\((?P<params>[^)]*)\)|(?P<single>[A-Za-z_$][\w$]*))"
    r"\s*(?::[^=]+)?=>",
)
_JS_CLASS = re.compile(
    r"^\s*(?P<export>export\s+(?:default\s+)?)?(?:abstract\s+)?class\s+"
    r"(?P<name>[A-Za-z_$][\w$]*)(?:\s+extends\s+(?P<base>[A-Za-z_$][\w$.]*))?",
)
_JS_METHOD = re.compile(
    r"^\s+(?:(?:public|private|protected|static|readonly|async|get|set)\s+)*"
    r"(?P<name>[A-Za-z_$][\w$]*)\s*\([^)]*\)\s*(?::[^{]+)?\{",
)
_JS_IMPORT = re.compile(
    r"^\s*import\s+(?:(?P<clause>[^'\"]+?)\s+from\s+)?['\"](?P<source>[^'\"]+)['\"]",
)
_JS_REQUIRE = re.compile(
    r"(?:const|let|var)\s+(?P<clause>[^=]+?)\s*=\s*require\(\s*['\"](?P<source>[^'\"]+)['\"]\s*\)",
)
_JS_EXPORT_LIST = re.compile(r"^\s*export\s*\{(?P<names>[^}]*)\}")
_JS_EXPORT_DECL = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:const|let|var|interface|type|enum)\s+"
    r"(?P<name>[A-Za-z_$][\w$]*)",
)
_JAVA_CLASS = re.compile(
    r"^\s*(?P<modifiers>(?:(?:public|protected|private|abstract|final|static)\s+)*)"
    r"(?:class|interface|enum|record)\s+(?P<name>[A-Za-z_]\w*)"
    r"(?:\s+extends\s+(?P<base>[A-Za-z_][\w.]*))?",
)
_JAVA_METHOD = re.compile(
    r"^\s*(?P<modifiers>(?:(?:public|protected|private|abstract|final|static|synchronized)\s+)*)"
    r"[\w<>\[\],.? ]+\s+(?P<name>[A-Za-z_]\w*)\s*\((?P<params>[^)]*)\)\s*(?:throws[^{]+)?\{",
)
_JAVA_IMPORT = re.compile(r"^\s*import\s+(?:static\s+)?(?P<source>[\w.]+)(?:\.\*)?\s*;")
_JAVA_KEYWORDS = frozenset({"if", "for", "while", "switch", "catch", "return", "new", "else"})


def detect_language(path: str) -> str:
    return LANGUAGE_BY_EXTENSION.get(PurePosixPath(path).suffix.lower(), "unknown")


def strip_diff(content: str) -> str:
    """Reduce a unified-diff patch to the post-change source lines.

    Plain source passes through unchanged.
    """

    lines = content.splitlines()
    if not any(line.startswith("@@") for line in lines):
        return content
    kept: list[str] = []
    for line in lines:
        if line.startswith(("@@", "+++", "---", "\\")) or line.startswith("-"):
            continue
        if line.startswith(("+", " ")):
            kept.append(line[1:])
        else:
            kept.append(line)
    return "\n".join(kept)


class CodeAnalyzer:
    """Extracts structure from Python, JavaScript/TypeScript and Java sources.

    Python is parsed with ``ast``; the other languages use line patterns.
    ``analyze`` never raises: unparseable input yields a result holding only
    the language and line count.
    """

    def analyze(self, path: str, content: str) -> FileAnalysis:
        source = strip_diff(content)
        language = detect_language(path)
        line_count = len(source.splitlines())
        try:
            if language == "python":
                return _analyze_python(path, source, line_count)
            if language in {"javascript", "typescript"}:
                return _analyze_javascript(path, language, source, line_count)
            if language == "java":
                return _analyze_java(path, source, line_count)
        except (SyntaxError, ValueError, RecursionError) as error:
            logger.warning("Falling back to basic analysis for %s: %s", path, error)
        return FileAnalysis(path=path, language=language, line_count=line_count)


def _analyze_python(path: str, source: str, line_count: int) -> FileAnalysis:
    tree = ast.parse(source, filename=path)
    analysis = FileAnalysis(path=path, language="python", line_count=line_count)
    declared_all: list[str] | None = None

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            analysis.functions.append(_python_function(node))
        elif isinstance(node, ast.ClassDef):
            analysis.classes.append(
                ClassInfo(
                    name=node.name,
                    line=node.lineno,
                    methods=[
                        item.name
                        for item in node.body
                        if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))
                    ],
                    bases=[ast.unparse(base) for base in node.bases],
                    is_exported=not node.name.startswith("_"),
                ),
            )
        elif isinstance(node, ast.Import):
            for alias in node.names:
                analysis.imports.append(
                    ImportInfo(source=alias.name, names=[alias.asname or alias.name]),
                )
        elif isinstance(node, ast.ImportFrom):
            module = "." * node.level + (node.module or "")
            analysis.imports.append(
                ImportInfo(
                    source=module,
                    names=[alias.asname or alias.name for alias in node.names],
                ),
            )
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                if isinstance(target, ast.Name) and target.id == "__all__":
                    declared_all = _literal_names(node.value)

    if declared_all is not None:
        analysis.exports = declared_all
        exported = set(declared_all)
        for function in analysis.functions:
            function.is_exported = function.name in exported
        for cls in analysis.classes:
            cls.is_exported = cls.name in exported
    else:
        analysis.exports = [
            item.name for item in [*analysis.functions, *analysis.classes] if item.is_exported
        ]
    return analysis


def _python_function(node: ast.FunctionDef | ast.AsyncFunctionDef) -> FunctionInfo:
    args = node.args
    params = [arg.arg for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs]]
    if args.vararg is not None:
        params.append(f"*{args.vararg.arg}")
    if args.kwarg is not None:
        params.append(f"**{args.kwarg.arg}")
    return FunctionInfo(
        name=node.name,
        line=node.lineno,
        params=params,
        is_async=isinstance(node, ast.AsyncFunctionDef),
        is_exported=not node.name.startswith("_"),
    )


def _literal_names(value: ast.expr) -> list[str] | None:
    if not isinstance(value, (ast.List, ast.Tuple)):
        return None
    return [
        item.value
        for item in value.elts
        if isinstance(item, ast.Constant) and isinstance(item.value, str)
    ]


def _split_params(raw: str | None) -> list[str]:
    if not raw:
        return []
    params: list[str] = []
    for part in raw.split(","):
        name = part.strip().split("=")[0].split(":")[0].strip()
        if name:
            params.append(name)
    return params


def _analyze_javascript(path: str, language: str, source: str, line_count: int) -> FileAnalysis:
    analysis = FileAnalysis(path=path, language=language, line_count=line_count)
    exports: list[str] = []
    current_class: ClassInfo | None = None

    for number, line in enumerate(source.splitlines(), start=1):
        if match := _JS_IMPORT.match(line):
            analysis.imports.append(
                ImportInfo(source=match["source"], names=_import_clause_names(match["clause"])),
            )
            continue
        if match := _JS_REQUIRE.search(line):
            analysis.imports.append(
                ImportInfo(source=match["source"], names=_import_clause_names(match["clause"])),
            )
        if match := _JS_CLASS.match(line):
            current_class = ClassInfo(
                name=match["name"],
                line=number,
                bases=[match["base"]] if match["base"] else [],
                is_exported=bool(match["export"]),
            )
            analysis.classes.append(current_class)
            if current_class.is_exported:
                exports.append(current_class.name)
            continue
        if match := _JS_FUNCTION.match(line):
            function = FunctionInfo(
                name=match["name"],
                line=number,
                params=_split_params(match["params"]),
                is_async=bool(match["async"]),
                is_exported=bool(match["export"]),
            )
            analysis.functions.append(function)
            if function.is_exported:
                exports.append(function.name)
            continue
        if match := _JS_ARROW.match(line):
            params = [match["single"]] if match["single"] else _split_params(match["params"])
            function = FunctionInfo(
                name=match["name"],
                line=number,
                params=params,
                is_async=bool(match["async"]),
                is_exported=bool(match["export"]),
            )
            analysis.functions.append(function)
            if function.is_exported:
                exports.append(function.name)
            continue
        if match := _JS_EXPORT_DECL.match(line):
            exports.append(match["name"])
            continue
        if match := _JS_EXPORT_LIST.match(line):
            for item in match["names"].split(","):
                name = item.strip().split(" as ")[-1].strip()
                if name:
                    exports.append(name)
            continue
        if current_class is not None and (match := _JS_METHOD.match(line)):
            name = match["name"]
            if name not in _JAVA_KEYWORDS:
                current_class.methods.append(name)

    analysis.exports = list(dict.fromkeys(exports))
    return analysis


def _import_clause_names(clause: str | None) -> list[str]:
    if not clause:
        return []
    cleaned = clause.replace("{", ",").replace("}", ",").replace("* as ", "")
    names: list[str] = []
    for part in cleaned.split(","):
        name = part.strip().split(" as ")[-1].strip()
        if name and name != "type":
            names.append(name)
    return names


def _analyze_java(path: str, source: str, line_count: int) -> FileAnalysis:
    analysis = FileAnalysis(path=path, language="java", line_count=line_count)
    current_class: ClassInfo | None = None

    for number, line in enumerate(source.splitlines(), start=1):
        if match := _JAVA_IMPORT.match(line):
            source_name = match["source"]
            analysis.imports.append(
                ImportInfo(source=source_name, names=[source_name.rsplit(".", 1)[-1]]),
            )
            continue
        if match := _JAVA_CLASS.match(line):
            current_class = ClassInfo(
                name=match["name"],
                line=number,
                bases=[match["base"]] if match["base"] else [],
                is_exported="public" in match["modifiers"],
            )
            analysis.classes.append(current_class)
            if current_class.is_exported:
                analysis.exports.append(current_class.name)
            continue
        if (match := _JAVA_METHOD.match(line)) and match["name"] not in _JAVA_KEYWORDS:
            function = FunctionInfo(
                name=match["name"],
                line=number,
                params=[
                    part.strip().split()[-1]
                    for part in match["params"].split(",")
                    if part.strip()
                ],
                is_exported="public" in match["modifiers"],
            )
            analysis.functions.append(function)
            if current_class is not None:
                current_class.methods.append(function.name)
    return analysis
