"""Pattern extraction - split source files into tagged SourceUnits.

Lexical heuristics only. JS/TS files are split at top-level exported
declarations, Python files at top-level ``def``/``class``. Anything else,
or a file where nothing is recognised, becomes a single ``raw`` unit.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Any

from .content_hash import content_hash
from .errors import ParseError
from .types import (
    KIND_COMPONENT,
    KIND_HOOK,
    KIND_RAW,
    KIND_STORE,
    KIND_UTIL,
    FileRecord,
    SourceUnit,
    embedding_text,
    make_unit_id,
)

logger = logging.getLogger(__name__)

JS_EXTENSIONS = frozenset({".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"})
JSX_EXTENSIONS = frozenset({".jsx", ".tsx"})

LANGUAGE_MAP = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".vue": "vue",
    ".svelte": "svelte",
}

STORE_DIRS = frozenset({"store", "stores"})
SERVICE_DIRS = frozenset({"services", "api"})

# Top-level (column 0) JS/TS declarations
_JS_DECL = re.compile(
    r"^(?P<export>export\s+(?P<default>default\s+)?)?"
    r"(?:declare\s+)?(?:async\s+)?"
    r"(?P<keyword>function\s*\*?|const|let|var|class|abstract\s+class|interface|type|enum)\s+"
    r"(?P<name>[A-Za-z_$][\w$]*)",
    re.MULTILINE,
)
# export default <expression>
_JS_EXPORT_DEFAULT = re.compile(r"^export\s+default\s+(?P<expr>.+)$", re.MULTILINE)
# export { A, B as C }
_JS_EXPORT_LIST = re.compile(r"^export\s*\{(?P<names>[^}]*)\}", re.MULTILINE)
_JS_IMPORT = re.compile(
    r"""^import\s+(?:[^'"]*?\s+from\s+)?['"](?P<module>[^'"]+)['"]"""
    r"""|require\(\s*['"](?P<required>[^'"]+)['"]\s*\)""",
    re.MULTILINE,
)
_IDENTIFIER = re.compile(r"[A-Za-z_$][\w$]*")

_PY_DECL = re.compile(r"^(?:async\s+)?(?P<keyword>def|class)\s+(?P<name>[A-Za-z_]\w*)", re.MULTILINE)
_PY_IMPORT = re.compile(r"^(?:from\s+(?P<from>[\w.]+)\s+import|import\s+(?P<module>[\w.]+))", re.MULTILINE)
_PY_OVERLOAD = re.compile(r"^@(?:\w+\.)?overload\b")

_HOOK_NAME = re.compile(r"^use[A-Z0-9]")
_PASCAL_CASE = re.compile(r"^[A-Z][A-Za-z0-9]*$")
# JSX element or fragment not preceded by an identifier (excludes generics like Array<T>)
_JSX = re.compile(r"(?<![\w$.])<(?:>|/?[A-Za-z][\w.:-]*(?:\s[^<>]*?)?/?>)")
_STORE_FACTORY = re.compile(
    r"(?<![\w$.])create\s*(?:<[^>]*>)?\s*\(|\b(?:createStore|createSlice|configureStore|createContext)\b"
)
_ANNOTATION = re.compile(r"@ai-(?P<key>[A-Za-z][\w-]*)[ \t]*:?[ \t]*(?P<value>[^\n*]*)")
_ENTITY = re.compile(r"^export\s+(?:declare\s+)?(?:interface|type)\s+(?P<name>[A-Z][A-Za-z0-9]*)", re.MULTILINE)

# Component roles and patterns
_CONTAINER_HINTS = ("useQuery", "connect(", "useSelector")
_COMPONENT_PATTERNS = (
    ("React.memo", "Memoization"),
    ("children", "Composition"),
    ("useCallback", "Performance Optimization"),
    ("forwardRef", "Forwarded Refs"),
)
_STATE_HOOKS = ("useState", "useReducer", "useStore")
_EFFECT_HOOKS = ("useEffect", "useLayoutEffect")
_DATA_HOOKS = ("useQuery", "useMutation", "useFetch")

# Service files
_SERVICE_FUNCTION = re.compile(
    r"\bfunction\s+(?P<fn>[A-Za-z0-9_$]+)\s*\("
    r"|\bconst\s+(?P<const>[A-Za-z0-9_$]+)\s*=\s*(?:async\s*)?(?:\(|[A-Za-z_$][\w$]*\s*=>)"
)
_NAME_WORD = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?![a-z])|\d+")
_ENDPOINT_WORDS = frozenset({"fetch", "get", "post", "put", "delete", "query"})


def _module_imports(content: str, language: str) -> list[str]:
    modules: list[str] = []
    if language == "python":
        for m in _PY_IMPORT.finditer(content):
            modules.append(m.group("from") or m.group("module"))
    else:
        for m in _JS_IMPORT.finditer(content):
            modules.append(m.group("module") or m.group("required"))
    # Preserve first-seen order
    return list(dict.fromkeys(modules))


def _annotations(content: str) -> dict[str, str]:
    return {m.group("key"): m.group("value").strip() for m in _ANNOTATION.finditer(content)}


def _has_jsx(text: str) -> bool:
    return _JSX.search(text) is not None


def component_role(text: str, path: str) -> str:
    """page, container, presentation or composite."""
    is_container = any(hint in text for hint in _CONTAINER_HINTS)
    is_presentation = not is_container and ("React.memo" in text or "useState" not in text)
    if "/pages/" in f"/{path}":
        return "page"
    if is_container:
        return "container"
    if is_presentation:
        return "presentation"
    return "composite"


def component_patterns(text: str) -> list[str]:
    return [label for needle, label in _COMPONENT_PATTERNS if needle in text]


def hook_type(text: str) -> str:
    """state, effect, data or utility."""
    if any(h in text for h in _STATE_HOOKS):
        return "state"
    if any(h in text for h in _EFFECT_HOOKS):
        return "effect"
    if any(h in text for h in _DATA_HOOKS):
        return "data"
    return "utility"


def store_type(text: str, imports: list[str]) -> str:
    """zustand, redux, context or custom; imports win over body hints."""
    if any(m == "zustand" or m.startswith("zustand/") for m in imports):
        return "zustand"
    if any(m in ("redux", "@reduxjs/toolkit", "react-redux") for m in imports):
        return "redux"
    if "create(" in text or "createStore" in text:
        return "zustand"
    if "createSlice" in text or "configureStore" in text:
        return "redux"
    if "createContext" in text:
        return "context"
    return "custom"


def service_type(text: str, imports: list[str]) -> str:
    """react-query, graphql, rest or custom."""
    if any(m in ("react-query", "@tanstack/react-query") for m in imports) or (
        "useQuery" in text or "useMutation" in text
    ):
        return "react-query"
    if any(m in ("graphql", "graphql-request", "graphql-tag") or m.startswith("@apollo/") for m in imports) or (
        "gql" in text or "GraphQL" in text
    ):
        return "graphql"
    if "axios" in imports or "fetch(" in text or "axios" in text:
        return "rest"
    return "custom"


def service_endpoints(text: str) -> list[str]:
    """Function names that read like API calls: fetchCart, getProducts, deleteItem."""
    names = (m.group("fn") or m.group("const") for m in _SERVICE_FUNCTION.finditer(text))
    return list(dict.fromkeys(
        name for name in names
        if _ENDPOINT_WORDS.intersection(w.lower() for w in _NAME_WORD.findall(name))
    ))


def is_service_path(path: str) -> bool:
    return any(p.lower() in SERVICE_DIRS for p in PurePosixPath(path).parts[:-1])


class PatternExtractor:
    """Turn a file's content into SourceUnits.

    Example:
        extractor = PatternExtractor(max_excerpt_chars=8000)
        units = extractor.extract(record, path.read_text())
        for unit in units:
            print(unit.kind, unit.symbol_name, unit.tags.get("role"))
    """

    def __init__(self, max_excerpt_chars: int = 8_000):
        self.max_excerpt_chars = max_excerpt_chars

    def extract(self, record: FileRecord, content: str | bytes) -> list[SourceUnit]:
        """Extract units from one file. Never raises for bad content.

        On decode or parse failure the whole file becomes a single raw unit
        flagged ``degraded``.
        """
        try:
            text = self._decode(record, content)
            return self._extract(record, text)
        except ParseError as e:
            logger.warning("Degrading %s to a raw unit: %s", record.path, e)
            if isinstance(content, bytes):
                content = content.decode("utf-8", errors="replace")
            return [self._raw_unit(record, content, degraded=True, reason=str(e))]

    @staticmethod
    def _decode(record: FileRecord, content: str | bytes) -> str:
        if isinstance(content, str):
            return content
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"{record.path} is not valid UTF-8: {e.reason}") from e

    def _extract(self, record: FileRecord, text: str) -> list[SourceUnit]:
        ext = PurePosixPath(record.path).suffix.lower()
        language = LANGUAGE_MAP.get(ext, "text")

        try:
            if ext in JS_EXTENSIONS:
                units = self._extract_js(record, text, ext, language)
            elif ext == ".py":
                units = self._extract_python(record, text, language)
            else:
                units = []
        except Exception as e:
            raise ParseError(f"failed to parse {record.path}: {e}") from e

        if not units:
            return [self._raw_unit(record, text)]
        return units

    # =========================================================================
    # JavaScript / TypeScript
    # =========================================================================

    def _extract_js(self, record: FileRecord, text: str, ext: str, language: str) -> list[SourceUnit]:
        lines = text.splitlines()
        line_starts = self._line_starts(text)

        # (line index, name, keyword, exported) for each top-level declaration
        decls: list[tuple[int, str, str, bool]] = []
        boundaries: set[int] = set()
        for m in _JS_DECL.finditer(text):
            idx = self._line_of(line_starts, m.start())
            keyword = m.group("keyword").replace("*", " ").split()[-1]
            decls.append((idx, m.group("name"), keyword, bool(m.group("export"))))
            boundaries.add(idx)

        declared = {name for _, name, kw, _ in decls if kw not in ("interface", "type")}
        exported: set[str] = {name for _, name, _, exp in decls if exp}
        anonymous_default: int | None = None

        for m in _JS_EXPORT_DEFAULT.finditer(text):
            idx = self._line_of(line_starts, m.start())
            boundaries.add(idx)
            expr = m.group("expr")
            if _JS_DECL.match(f"export default {expr}"):
                continue
            names = [n for n in _IDENTIFIER.findall(expr) if n in declared]
            if names:
                # export default memo(Button) / connect(...)(Button)
                exported.add(names[-1])
            elif expr.lstrip().startswith(("function", "async", "(", "class")):
                anonymous_default = idx

        for m in _JS_EXPORT_LIST.finditer(text):
            boundaries.add(self._line_of(line_starts, m.start()))
            for item in m.group("names").split(","):
                name = item.strip().split(" as ")[0].strip()
                if name in declared:
                    exported.add(name)

        imports = _module_imports(text, language)
        file_tags = self._file_tags(text, imports)
        stem = PurePosixPath(record.path).stem
        service = service_type(text, imports) if is_service_path(record.path) else None
        sorted_boundaries = sorted(boundaries)

        spans: list[tuple[str, int]] = []
        for idx, name, keyword, _ in decls:
            if keyword in ("interface", "type", "enum") or name not in exported:
                continue
            if spans and spans[-1][0] == name:
                # TS overload signatures share one unit
                continue
            spans.append((name, idx))
        if anonymous_default is not None:
            spans.append((stem if stem not in exported else f"{stem}.default", anonymous_default))
            spans.sort(key=lambda s: s[1])

        units = []
        seen_names: dict[str, int] = {}
        for name, start in spans:
            end = self._span_end(start, sorted_boundaries, lines, skip_same=name, decls=decls)
            body = "\n".join(lines[start:end + 1])
            context = body + "\n" + self._export_lines_for(name, text)

            kind = self._js_kind(record.path, name, body, ext)
            tags = dict(file_tags)
            tags.update(self._kind_tags(kind, context, record.path, imports))
            if service is not None:
                tags["service_type"] = service
                tags["endpoints"] = service_endpoints(body)

            seen_names[name] = seen_names.get(name, 0) + 1
            symbol = name if seen_names[name] == 1 else f"{name}#{seen_names[name]}"
            units.append(self._make_unit(record, symbol, kind, body, language, start + 1, end + 1, tags))

        return units

    @staticmethod
    def _export_lines_for(name: str, text: str) -> str:
        """``export default memo(Name)`` lines that decorate a declaration."""
        found = []
        for m in _JS_EXPORT_DEFAULT.finditer(text):
            if name in _IDENTIFIER.findall(m.group("expr")):
                found.append(m.group(0))
        return "\n".join(found)

    @staticmethod
    def _span_end(
        start: int,
        boundaries: list[int],
        lines: list[str],
        skip_same: str | None = None,
        decls: list[tuple[int, str, str, bool]] | None = None,
    ) -> int:
        """Last line of a unit: just before the next boundary, minus trailing blanks."""
        same_name_lines = {idx for idx, name, _, _ in (decls or []) if name == skip_same}
        end = len(lines) - 1
        for b in boundaries:
            if b > start and b not in same_name_lines:
                end = b - 1
                break
        while end > start and not lines[end].strip():
            end -= 1
        return max(end, start)

    @staticmethod
    def _js_kind(path: str, name: str, body: str, ext: str) -> str:
        parts = PurePosixPath(path).parts[:-1]
        if any(p.lower() in STORE_DIRS for p in parts) or _STORE_FACTORY.search(body):
            return KIND_STORE
        if _HOOK_NAME.match(name):
            return KIND_HOOK
        if _PASCAL_CASE.match(name) and (ext in JSX_EXTENSIONS or _has_jsx(body)):
            return KIND_COMPONENT
        return KIND_UTIL

    @staticmethod
    def _kind_tags(kind: str, text: str, path: str, imports: list[str]) -> dict[str, Any]:
        if kind == KIND_COMPONENT:
            return {
                "role": component_role(text, path),
                "patterns": component_patterns(text),
                "has_props": "Props" in text or "props" in text,
            }
        if kind == KIND_HOOK:
            return {"hook_type": hook_type(text)}
        if kind == KIND_STORE:
            return {
                "store_type": store_type(text, imports),
                "persistent": "persist" in text or "localStorage" in text,
            }
        return {}

    # =========================================================================
    # Python
    # =========================================================================

    def _extract_python(self, record: FileRecord, text: str, language: str) -> list[SourceUnit]:
        lines = text.splitlines()
        line_starts = self._line_starts(text)
        imports = _module_imports(text, language)
        file_tags = self._file_tags(text, imports)

        decls = []
        for m in _PY_DECL.finditer(text):
            decls.append((self._line_of(line_starts, m.start()), m.group("name")))

        # Any other column-0 statement also ends a unit
        boundaries = sorted({
            i for i, line in enumerate(lines)
            if line and not line[0].isspace() and not line.startswith(("#", "@", ")", "]", "}"))
        })

        # (name, declaration line, first decorator line)
        spans: list[tuple[str, int, int]] = []
        after_overload = False
        for idx, name in decls:
            start = idx
            while start > 0 and lines[start - 1].startswith("@"):
                start -= 1
            merge = after_overload and spans[-1][0] == name
            after_overload = any(_PY_OVERLOAD.match(line) for line in lines[start:idx])
            if merge:
                # @overload stubs share one unit with the implementation
                spans[-1] = (name, idx, spans[-1][2])
                continue
            spans.append((name, idx, start))

        units = []
        seen_names: dict[str, int] = {}
        for name, idx, start in spans:
            end = self._span_end(idx, boundaries, lines)
            # Trailing decorators belong to the next unit
            while end > idx and lines[end].startswith("@"):
                end -= 1
            while end > idx and not lines[end].strip():
                end -= 1
            body = "\n".join(lines[start:end + 1])
            kind = KIND_HOOK if name.startswith("use_") else KIND_UTIL
            tags = dict(file_tags)
            if kind == KIND_HOOK:
                tags["hook_type"] = "utility"
            seen_names[name] = seen_names.get(name, 0) + 1
            symbol = name if seen_names[name] == 1 else f"{name}#{seen_names[name]}"
            units.append(self._make_unit(record, symbol, kind, body, language, start + 1, end + 1, tags))

        return units

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _line_starts(text: str) -> list[int]:
        starts = [0]
        for m in re.finditer("\n", text):
            starts.append(m.end())
        return starts

    @staticmethod
    def _line_of(line_starts: list[int], offset: int) -> int:
        lo, hi = 0, len(line_starts) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if line_starts[mid] <= offset:
                lo = mid
            else:
                hi = mid - 1
        return lo

    @staticmethod
    def _file_tags(text: str, imports: list[str]) -> dict[str, Any]:
        tags: dict[str, Any] = {}
        if imports:
            tags["imports"] = imports
        annotations = _annotations(text)
        if annotations:
            tags["annotations"] = annotations
        entities = list(dict.fromkeys(m.group("name") for m in _ENTITY.finditer(text)))
        if entities:
            tags["entities"] = entities
        return tags

    def _clip(self, excerpt: str, tags: dict[str, Any]) -> str:
        if len(excerpt) > self.max_excerpt_chars:
            tags["clipped"] = True
            return excerpt[:self.max_excerpt_chars]
        return excerpt

    def _make_unit(
        self,
        record: FileRecord,
        symbol: str,
        kind: str,
        body: str,
        language: str,
        line: int,
        end_line: int,
        tags: dict[str, Any],
        degraded: bool = False,
    ) -> SourceUnit:
        excerpt = self._clip(body, tags)
        return SourceUnit(
            id=make_unit_id(record.path, symbol),
            path=record.path,
            content_hash=content_hash(embedding_text(kind, symbol, excerpt)),
            kind=kind,
            symbol_name=symbol,
            excerpt=excerpt,
            last_modified=record.mtime,
            file_hash=record.hash,
            language=language,
            line=line,
            end_line=end_line,
            tags=tags,
            degraded=degraded,
        )

    def _raw_unit(self, record: FileRecord, text: str, degraded: bool = False, reason: str = "") -> SourceUnit:
        ext = PurePosixPath(record.path).suffix.lower()
        tags: dict[str, Any] = {}
        if degraded:
            tags["parse_error"] = reason
        else:
            tags.update(self._file_tags(text, _module_imports(text, LANGUAGE_MAP.get(ext, "text"))))
        line_count = max(1, text.count("\n") + (0 if text.endswith("\n") else 1))
        return self._make_unit(
            record,
            PurePosixPath(record.path).name,
            KIND_RAW,
            text,
            LANGUAGE_MAP.get(ext, "text"),
            1,
            line_count,
            tags,
            degraded=degraded,
        )


__all__ = [
    "PatternExtractor",
    "LANGUAGE_MAP",
    "component_role",
    "component_patterns",
    "hook_type",
    "store_type",
    "service_type",
    "service_endpoints",
]
