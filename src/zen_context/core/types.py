"""Core data types - source units, scan diffs, index entries and bundles."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np
import pathspec

# Unit kinds, in the order the extractor tries them
KIND_COMPONENT = "component"
KIND_HOOK = "hook"
KIND_STORE = "store"
KIND_UTIL = "util"
KIND_RAW = "raw"

UNIT_KINDS = (KIND_COMPONENT, KIND_HOOK, KIND_STORE, KIND_UTIL, KIND_RAW)


def make_unit_id(path: str, symbol_name: str) -> str:
    """Stable unit id: survives edits to the unit body."""
    return f"{path}::{symbol_name}"


def embedding_text(kind: str, symbol_name: str, excerpt: str) -> str:
    """The exact text a unit is embedded from (and hashed from)."""
    return f"{kind}: {symbol_name}\n{excerpt}"


@dataclass(frozen=True)
class FileRecord:
    """A scanned file. ``path`` is root-relative POSIX."""
    path: str
    hash: str
    size: int
    mtime: float

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "hash": self.hash, "size": self.size, "mtime": self.mtime}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        return cls(
            path=data["path"],
            hash=data["hash"],
            size=int(data["size"]),
            mtime=float(data["mtime"]),
        )


@dataclass
class ScanDiff:
    """Result of comparing a scan against the previous file snapshot."""
    added: list[FileRecord] = field(default_factory=list)
    modified: list[FileRecord] = field(default_factory=list)
    removed: list[FileRecord] = field(default_factory=list)
    unchanged: list[FileRecord] = field(default_factory=list)
    # Unreadable now but known before: kept as-is, not treated as removed
    unverified: list[FileRecord] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.removed)

    @property
    def changed(self) -> list[FileRecord]:
        """Files that need extraction and embedding."""
        return self.added + self.modified

    def current_files(self) -> dict[str, FileRecord]:
        """The file snapshot after applying this diff."""
        records = self.added + self.modified + self.unchanged + self.unverified
        return {r.path: r for r in records}

    def summary(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "modified": len(self.modified),
            "removed": len(self.removed),
            "unchanged": len(self.unchanged),
            "unverified": len(self.unverified),
            "errors": len(self.errors),
        }


@dataclass(frozen=True)
class SourceUnit:
    """A pattern-relevant excerpt of a source file.

    ``content_hash`` is computed from ``embedding_text(kind, symbol_name,
    excerpt)`` so two units with the same hash always embed identically;
    ``file_hash`` is the hash of the whole file the unit came from.
    """
    id: str
    path: str
    content_hash: str
    kind: str
    symbol_name: str
    excerpt: str
    last_modified: float
    file_hash: str = ""
    language: str = "text"
    line: int = 1
    end_line: int = 1
    tags: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    degraded: bool = False

    def to_document(self) -> str:
        """Text handed to the embedder."""
        return embedding_text(self.kind, self.symbol_name, self.excerpt)

    @property
    def size(self) -> int:
        """UTF-8 byte length of the excerpt."""
        return len(self.excerpt.encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "content_hash": self.content_hash,
            "kind": self.kind,
            "symbol_name": self.symbol_name,
            "excerpt": self.excerpt,
            "last_modified": self.last_modified,
            "file_hash": self.file_hash,
            "language": self.language,
            "line": self.line,
            "end_line": self.end_line,
            "tags": self.tags,
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceUnit":
        return cls(
            id=data["id"],
            path=data["path"],
            content_hash=data["content_hash"],
            kind=data["kind"],
            symbol_name=data["symbol_name"],
            excerpt=data["excerpt"],
            last_modified=float(data.get("last_modified", 0.0)),
            file_hash=data.get("file_hash", ""),
            language=data.get("language", "text"),
            line=int(data.get("line", 1)),
            end_line=int(data.get("end_line", 1)),
            tags=dict(data.get("tags") or {}),
            degraded=bool(data.get("degraded", False)),
        )


@dataclass(frozen=True)
class EmbeddingResult:
    """An embedding for one unit (or for free text when ``unit_id`` is empty)."""
    unit_id: str
    vector: np.ndarray = field(repr=False, compare=False)
    model_variant: str
    fallback: bool = False

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class IndexEntry:
    """One indexed unit. Replaced, never mutated."""
    unit: SourceUnit
    vector: np.ndarray = field(repr=False, compare=False)
    model_variant: str
    fallback: bool = False
    tombstoned: bool = False

    @property
    def unit_id(self) -> str:
        return self.unit.id


@dataclass(frozen=True)
class SearchHit:
    """A query result with cosine similarity score."""
    unit_id: str
    score: float
    unit: SourceUnit

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.unit_id,
            "path": self.unit.path,
            "line": self.unit.line,
            "kind": self.unit.kind,
            "symbol": self.unit.symbol_name,
            "score": self.score,
            "text": self.unit.excerpt[:500],
        }


@dataclass(frozen=True)
class QueryFilters:
    """Restrict which units a query may return.

    ``path_patterns`` are gitignore-style patterns a unit's path must match.
    """
    kinds: frozenset[str] | None = None
    path_patterns: tuple[str, ...] = ()
    exclude_degraded: bool = False

    def __post_init__(self):
        if self.kinds is not None:
            unknown = set(self.kinds) - set(UNIT_KINDS)
            if unknown:
                raise ValueError(f"Unknown unit kinds: {sorted(unknown)}")
            object.__setattr__(self, "kinds", frozenset(self.kinds))
        object.__setattr__(self, "path_patterns", tuple(self.path_patterns))

    def matcher(self) -> Callable[[SourceUnit], bool]:
        """Compile the filters into a predicate."""
        spec = (
            pathspec.GitIgnoreSpec.from_lines(self.path_patterns)
            if self.path_patterns
            else None
        )
        kinds = self.kinds
        exclude_degraded = self.exclude_degraded

        def match(unit: SourceUnit) -> bool:
            if kinds is not None and unit.kind not in kinds:
                return False
            if exclude_degraded and unit.degraded:
                return False
            if spec is not None and not spec.match_file(unit.path):
                return False
            return True

        return match


@dataclass(frozen=True)
class Query:
    """A context request for one development task."""
    task_description: str
    filters: QueryFilters = field(default_factory=QueryFilters)
    budget: int | None = None


@dataclass(frozen=True)
class BundleEntry:
    """One unit in a ContextBundle, possibly truncated to fit the budget."""
    unit: SourceUnit
    score: float
    excerpt: str
    truncated: bool = False

    @property
    def size(self) -> int:
        """UTF-8 byte length of the (possibly truncated) excerpt."""
        return len(self.excerpt.encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.unit.path,
            "kind": self.unit.kind,
            "symbol": self.unit.symbol_name,
            "excerpt": self.excerpt,
            "score": self.score,
            "truncated": self.truncated,
        }


@dataclass
class ContextBundle:
    """Ordered, size-bounded context for one query."""
    entries: list[BundleEntry]
    budget: int
    # (unit_id, reason) for candidates that were considered but left out
    skipped: list[tuple[str, str]] = field(default_factory=list)
    generation: int = 0

    @property
    def size(self) -> int:
        return sum(entry.size for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries]


__all__ = [
    "KIND_COMPONENT",
    "KIND_HOOK",
    "KIND_STORE",
    "KIND_UTIL",
    "KIND_RAW",
    "UNIT_KINDS",
    "make_unit_id",
    "embedding_text",
    "FileRecord",
    "ScanDiff",
    "SourceUnit",
    "EmbeddingResult",
    "IndexEntry",
    "SearchHit",
    "QueryFilters",
    "Query",
    "BundleEntry",
    "ContextBundle",
]
