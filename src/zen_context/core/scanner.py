"""File scanning - walk a project tree and diff it against the last snapshot."""

from __future__ import annotations

import logging
import os
import stat
import threading
from pathlib import Path
from typing import Iterator, Mapping

import pathspec

from .content_hash import content_hash
from .errors import RootPathError, ScanCancelled, ScanError
from .types import FileRecord, ScanDiff

logger = logging.getLogger(__name__)

# Directories to always skip during traversal
SKIP_DIRS = frozenset({
    ".git", "__pycache__", "node_modules", ".venv", "venv", ".tox",
    ".pytest_cache", ".mypy_cache", "dist", "build", ".eggs", "eggs",
    ".hg", ".svn", ".nox", "htmlcov", ".cache", ".next", ".nuxt",
    "coverage", ".zen",
})


def load_gitignore_patterns(root: Path) -> list[str]:
    """Load patterns from the root ``.gitignore``, if any."""
    gitignore = root / ".gitignore"
    if not gitignore.is_file():
        return []

    patterns = []
    try:
        content = gitignore.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug("Failed to read %s: %s", gitignore, e)
        return []

    for line in content.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return patterns


def _is_minified(name: str) -> bool:
    return ".min." in name or "-min." in name or "_min." in name


class FileScanner:
    """Iterative, cancellable walk over a project tree.

    Example:
        scanner = FileScanner(extensions=[".ts", ".tsx"])
        diff = scanner.scan(Path("~/src/app").expanduser(), previous={})
        for record in diff.added:
            print(record.path, record.hash)
    """

    def __init__(
        self,
        extensions: list[str] | tuple[str, ...] = (".js", ".jsx", ".ts", ".tsx", ".py"),
        ignore_patterns: list[str] | tuple[str, ...] = (),
        respect_gitignore: bool = True,
        follow_symlinks: bool = False,
        max_file_bytes: int = 1_000_000,
        exclude_dirs: list[Path] | tuple[Path, ...] = (),
        cancel_event: threading.Event | None = None,
    ):
        self.extensions = frozenset(e.lower() for e in extensions)
        self.ignore_patterns = list(ignore_patterns)
        self.respect_gitignore = respect_gitignore
        self.follow_symlinks = follow_symlinks
        self.max_file_bytes = max_file_bytes
        self.exclude_dirs = [Path(d) for d in exclude_dirs]
        self.cancel_event = cancel_event or threading.Event()

    @classmethod
    def from_config(cls, config, cancel_event: threading.Event | None = None, root: Path | None = None) -> "FileScanner":
        """Build from an EngineConfig; the engine data directory is always skipped."""
        exclude = [config.resolve_data_dir(root)] if root is not None else []
        return cls(
            extensions=config.extensions,
            ignore_patterns=config.ignore_patterns,
            respect_gitignore=config.respect_gitignore,
            follow_symlinks=config.follow_symlinks,
            max_file_bytes=config.max_file_bytes,
            exclude_dirs=exclude,
            cancel_event=cancel_event,
        )

    def _build_spec(self, root: Path) -> pathspec.PathSpec | None:
        patterns = list(self.ignore_patterns)
        if self.respect_gitignore:
            patterns.extend(load_gitignore_patterns(root))
        if not patterns:
            return None
        return pathspec.GitIgnoreSpec.from_lines(patterns)

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ScanCancelled("Scan cancelled")

    @staticmethod
    def _validate_root(root: Path) -> Path:
        root = Path(root).expanduser()
        if not root.exists():
            raise RootPathError(f"Project root does not exist: {root}")
        if not root.is_dir():
            raise RootPathError(f"Project root is not a directory: {root}")
        return root.resolve()

    def _walk(self, root: Path, failed_dirs: list[str]) -> Iterator[FileRecord | ScanError]:
        """Yield file records and per-path errors, depth-first, sorted by name.

        Uses an explicit stack; canonical paths of visited directories break
        symlink cycles.
        """
        spec = self._build_spec(root)
        excluded = set()
        for d in self.exclude_dirs:
            try:
                excluded.add(os.path.realpath(d))
            except OSError:
                continue

        visited: set[str] = {os.path.realpath(root)}
        stack: list[Path] = [root]

        while stack:
            self._check_cancelled()
            directory = stack.pop()
            rel_dir = "" if directory == root else directory.relative_to(root).as_posix()

            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as e:
                failed_dirs.append(rel_dir)
                yield ScanError(rel_dir or ".", f"unreadable directory: {e.strerror or e}")
                continue

            subdirs: list[Path] = []
            for entry in entries:
                self._check_cancelled()
                name = entry.name
                rel = f"{rel_dir}/{name}" if rel_dir else name

                try:
                    is_link = entry.is_symlink()
                    is_dir = entry.is_dir(follow_symlinks=self.follow_symlinks)
                    is_file = entry.is_file(follow_symlinks=self.follow_symlinks)
                except OSError as e:
                    yield ScanError(rel, str(e))
                    continue

                if is_link and not self.follow_symlinks:
                    continue

                if is_dir:
                    if name in SKIP_DIRS or name.startswith("."):
                        continue
                    if spec is not None and spec.match_file(rel + "/"):
                        continue
                    real = os.path.realpath(entry.path)
                    if real in visited or real in excluded:
                        continue
                    visited.add(real)
                    subdirs.append(Path(entry.path))
                    continue

                if not is_file:
                    continue
                if name.startswith(".") or _is_minified(name):
                    continue
                if os.path.splitext(name)[1].lower() not in self.extensions:
                    continue
                if spec is not None and spec.match_file(rel):
                    continue

                result = self._read_record(Path(entry.path), rel)
                if result is not None:
                    yield result

            # Reverse so the stack pops subdirectories in name order
            stack.extend(reversed(subdirs))

    def _read_record(self, path: Path, rel: str) -> FileRecord | ScanError | None:
        try:
            st = path.stat()
            if not stat.S_ISREG(st.st_mode):
                return None
            if st.st_size > self.max_file_bytes:
                logger.debug("Skipping large file: %s (%d bytes)", rel, st.st_size)
                return None
            data = path.read_bytes()
        except OSError as e:
            return ScanError(rel, e.strerror or str(e))

        return FileRecord(path=rel, hash=content_hash(data), size=len(data), mtime=st.st_mtime)

    def iter_files(self, root: Path) -> Iterator[FileRecord]:
        """Stream records for every indexable file under ``root``.

        Raises:
            RootPathError: If root is missing or not a directory
            ScanCancelled: If the cancel event is set mid-walk
        """
        root = self._validate_root(root)
        for item in self._walk(root, []):
            if isinstance(item, ScanError):
                logger.warning("Skipping %s: %s", item.path, item.reason)
                continue
            yield item

    def scan(self, root: Path, previous: Mapping[str, FileRecord] | None = None) -> ScanDiff:
        """Scan ``root`` and diff against the previous path -> record snapshot.

        A path that cannot be read now but was known before lands in
        ``unverified`` instead of ``removed``.
        """
        root = self._validate_root(root)
        previous = previous or {}
        diff = ScanDiff()
        seen: set[str] = set()
        failed_dirs: list[str] = []

        for item in self._walk(root, failed_dirs):
            if isinstance(item, ScanError):
                logger.warning("Skipping %s: %s", item.path, item.reason)
                diff.errors.append((item.path, item.reason))
                if item.path in previous:
                    seen.add(item.path)
                    diff.unverified.append(previous[item.path])
                continue

            seen.add(item.path)
            old = previous.get(item.path)
            if old is None:
                diff.added.append(item)
            elif old.hash != item.hash:
                diff.modified.append(item)
            else:
                diff.unchanged.append(item)

        for path in sorted(set(previous) - seen):
            if any(d == "" or path.startswith(d + "/") for d in failed_dirs):
                diff.unverified.append(previous[path])
            else:
                diff.removed.append(previous[path])

        logger.debug("Scan of %s: %s", root, diff.summary())
        return diff


__all__ = ["FileScanner", "SKIP_DIRS", "load_gitignore_patterns"]
