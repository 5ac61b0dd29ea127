"""Change tracking - keep the index in step with the source tree.

``update()`` scans, extracts and embeds only what changed, journals each batch
before applying it, and checkpoints a snapshot at the end. A missing or
corrupt snapshot triggers a full rescan into a fresh index.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .content_hash import content_hash
from .debug import timer
from .embeddings import CachingEmbedder
from .errors import IndexCorruption, ScanCancelled
from .extractor import PatternExtractor
from .persistence import (
    PersistedState,
    SnapshotStore,
    delete_record,
    file_record,
    forget_file_record,
    upsert_record,
)
from .scanner import SKIP_DIRS, FileScanner
from .types import EmbeddingResult, FileRecord, IndexEntry, SourceUnit
from .vector_index import Index

logger = logging.getLogger(__name__)


@dataclass
class UpdateReport:
    """What one ``update()`` did."""
    full: bool = False
    reason: str = "incremental"
    files: dict[str, int] = field(default_factory=dict)
    units_upserted: int = 0
    units_deleted: int = 0
    embedded: int = 0
    batches: int = 0
    compacted: int = 0
    generation: int = 0
    elapsed: float = 0.0
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.units_upserted or self.units_deleted or self.full)

    def to_dict(self) -> dict[str, Any]:
        return {
            "full": self.full,
            "reason": self.reason,
            "files": self.files,
            "units_upserted": self.units_upserted,
            "units_deleted": self.units_deleted,
            "embedded": self.embedded,
            "batches": self.batches,
            "compacted": self.compacted,
            "generation": self.generation,
            "elapsed": round(self.elapsed, 3),
            "errors": [{"path": p, "reason": r} for p, r in self.errors],
        }


@dataclass
class _FileResult:
    record: FileRecord
    units: list[SourceUnit]
    embeddings: list[EmbeddingResult]


class ChangeTracker:
    """Scanner -> Extractor -> Embedder -> Index, with persistence.

    Example:
        tracker = ChangeTracker(root, config, index, store, embedder)
        report = tracker.update()
        print(report.files, report.embedded)
    """

    def __init__(
        self,
        root: Path,
        config,
        index: Index,
        store: SnapshotStore,
        embedder: CachingEmbedder,
        extractor: PatternExtractor | None = None,
        scanner: FileScanner | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.root = Path(root)
        self.config = config
        self.index = index
        self.store = store
        self.embedder = embedder
        self.cancel_event = cancel_event or threading.Event()
        self.extractor = extractor or PatternExtractor(max_excerpt_chars=config.max_excerpt_chars)
        self.scanner = scanner or FileScanner.from_config(config, cancel_event=self.cancel_event, root=self.root)
        self.files: dict[str, FileRecord] = {}
        self.meta: dict[str, Any] = {}
        self._loaded = False
        self._update_lock = threading.Lock()

    # =========================================================================
    # Loading
    # =========================================================================

    def load(self) -> bool:
        """Load persisted state into the index. Returns False if there is none.

        Raises:
            IndexCorruption: If the snapshot or journal is invalid
        """
        state = self.store.load()
        if state is None:
            return False
        self._install(state)
        return True

    @property
    def loaded(self) -> bool:
        return self._loaded

    def _install(self, state: PersistedState) -> None:
        self.index.replace_all(state.entries.values())
        self.files = dict(state.files)
        self.meta = dict(state.meta)
        primed = self.embedder.prime(self.index.cached_vectors())
        self._loaded = True
        logger.debug(
            "Loaded %d units for %d files (generation %d), primed %d vectors",
            len(self.index), len(self.files), self.index.generation, primed,
        )

    def _reset(self) -> None:
        self.store.clear()
        self.index.replace_all([])
        self.files = {}
        self.meta = {}
        self._loaded = True

    def _current_meta(self) -> dict[str, Any]:
        return {"embedder": self.embedder.variant, "root": str(self.root)}

    # =========================================================================
    # Update
    # =========================================================================

    def update(self, full: bool = False) -> UpdateReport:
        """Bring the index up to date with the tree.

        Args:
            full: Discard persisted state and rebuild from scratch

        Raises:
            RootPathError: If the root is missing or not a directory
            ScanCancelled: If cancelled mid-scan
            TimeoutError: If another process holds the writer lock
        """
        report = UpdateReport()
        with self._update_lock, self.store.lock(timeout=self.config.lock_timeout):
            with timer("update") as t:
                self._prepare(full, report)
                self._run(report)
            report.elapsed = t["elapsed"]
        logger.info(
            "Update finished in %.2fs: %s, %d upserted, %d deleted, %d embedded",
            report.elapsed, report.files, report.units_upserted, report.units_deleted, report.embedded,
        )
        return report

    def _prepare(self, full: bool, report: UpdateReport) -> None:
        """Decide between incremental and full, loading state as needed."""
        if full:
            report.full, report.reason = True, "requested"
            self._reset()
            return

        if not self._loaded:
            try:
                state = self.store.load()
            except IndexCorruption as e:
                logger.warning("Persisted index is corrupt, rebuilding: %s", e)
                report.full, report.reason = True, f"corrupt: {e}"
                self._reset()
                self.embedder.cache.clear()
                return
            if state is None:
                report.full, report.reason = True, "no snapshot"
                self._reset()
                return
            self._install(state)

        variant = self.meta.get("embedder")
        if variant is not None and variant != self.embedder.variant:
            logger.warning("Embedder changed from %s to %s, rebuilding", variant, self.embedder.variant)
            report.full, report.reason = True, "embedder changed"
            self._reset()
            self.embedder.cache.clear()

    def _run(self, report: UpdateReport) -> None:
        self.embedder.reset_stats()

        with timer("scan"):
            diff = self.scanner.scan(self.root, previous=self.files)
        report.files = diff.summary()
        report.errors = list(diff.errors)

        changed = diff.changed
        batch_size = max(1, self.config.batch_size)
        with ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="zen-extract") as pool:
            for start in range(0, len(changed), batch_size):
                if self.cancel_event.is_set():
                    raise ScanCancelled("Update cancelled")
                batch = changed[start:start + batch_size]
                results = list(pool.map(self._process_file, batch))
                self._commit_batch([r for r in results if r is not None], report)

        if diff.removed:
            deletes: list[str] = []
            records = []
            for rec in diff.removed:
                ids = self.index.units_for_path(rec.path)
                deletes.extend(ids)
                records.extend(delete_record(i) for i in ids)
                records.append(forget_file_record(rec.path))
            self.store.append(records)
            self.index.apply(deletes=deletes)
            for rec in diff.removed:
                self.files.pop(rec.path, None)
            report.units_deleted += len(deletes)
            report.batches += 1

        report.embedded = self.embedder.embed_calls

        stats = self.index.stats()
        if stats["tombstone_ratio"] > self.config.compact_threshold:
            report.compacted = self.index.compact()

        meta_changed = any(self.meta.get(k) != v for k, v in self._current_meta().items())
        if report.changed or report.compacted or meta_changed or not self.store.snapshot_path.exists():
            self.checkpoint()
        report.generation = self.index.generation

    def _process_file(self, record: FileRecord) -> _FileResult | None:
        """Extract and embed one file. Runs on a worker thread."""
        if self.cancel_event.is_set():
            return None
        path = self.root / record.path
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning("Skipping %s: %s", record.path, e)
            return None

        # The file may have changed between scan and read
        h = content_hash(data)
        if h != record.hash:
            record = FileRecord(record.path, h, len(data), record.mtime)

        units = self.extractor.extract(record, data)
        embeddings = self.embedder.embed_many(units)
        return _FileResult(record, units, embeddings)

    def _commit_batch(self, results: list[_FileResult], report: UpdateReport) -> None:
        """Journal then apply one batch as a single generation."""
        if not results:
            return

        upserts: list[tuple[SourceUnit, EmbeddingResult]] = []
        deletes: list[str] = []
        records: list[dict[str, Any]] = []

        for result in results:
            new_ids = {u.id for u in result.units}
            for old_id in self.index.units_for_path(result.record.path):
                if old_id not in new_ids:
                    deletes.append(old_id)
                    records.append(delete_record(old_id))
            for unit, emb in zip(result.units, result.embeddings):
                entry = Index.make_entry(unit, emb)
                upserts.append((unit, emb))
                records.append(upsert_record(entry))
            records.append(file_record(result.record))

        self.store.append(records)
        self.index.apply(upserts=upserts, deletes=deletes)
        for result in results:
            self.files[result.record.path] = result.record

        report.units_upserted += len(upserts)
        report.units_deleted += len(deletes)
        report.batches += 1

    def checkpoint(self) -> None:
        """Write a snapshot of the current state and truncate the journal."""
        gen = self.index.snapshot()
        self.meta = self._current_meta()
        self.store.save(PersistedState(
            entries=dict(gen.entries),
            files=dict(self.files),
            generation=gen.number,
            meta=self.meta,
        ))

    def compact(self) -> int:
        """Purge tombstones and checkpoint. Returns how many were purged."""
        with self._update_lock, self.store.lock(timeout=self.config.lock_timeout):
            removed = self.index.compact()
            if removed:
                self.checkpoint()
            return removed

    # =========================================================================
    # Verification
    # =========================================================================

    def verify(self) -> list[str]:
        """Unit ids whose file is gone or no longer hashes to what was embedded."""
        stale: list[str] = []
        by_path: dict[str, list[IndexEntry]] = {}
        for entry in self.index.snapshot().entries.values():
            if not entry.tombstoned:
                by_path.setdefault(entry.unit.path, []).append(entry)

        for path, entries in by_path.items():
            try:
                current = content_hash((self.root / path).read_bytes())
            except OSError:
                current = None
            stale.extend(e.unit_id for e in entries if e.unit.file_hash != current)

        return sorted(stale)

    # =========================================================================
    # Watch mode
    # =========================================================================

    def watch(
        self,
        stop_event: threading.Event,
        on_update: Callable[[UpdateReport], None] | None = None,
        debounce: float | None = None,
    ) -> None:
        """Re-index on filesystem changes until ``stop_event`` is set."""
        debounce = self.config.watch_debounce if debounce is None else debounce
        queue: Queue = Queue(maxsize=1000)
        handler = SourceChangeHandler(
            self.root,
            queue,
            extensions=self.scanner.extensions,
            exclude_dirs=[self.store.data_dir],
        )

        observer = Observer()
        observer.schedule(handler, str(self.root), recursive=True)
        observer.start()
        logger.info("Watching %s", self.root)

        pending_since: float | None = None
        consecutive_errors = 0
        try:
            while not stop_event.is_set():
                try:
                    event_time = queue.get(timeout=min(0.5, max(debounce, 0.05)))
                    pending_since = event_time
                    continue
                except Empty:
                    pass

                if pending_since is None or time.time() - pending_since < debounce:
                    continue

                pending_since = None
                try:
                    report = self.update()
                    consecutive_errors = 0
                except (OSError, TimeoutError, IndexCorruption) as e:
                    consecutive_errors += 1
                    backoff = min(2 ** (consecutive_errors - 1), 60.0)
                    logger.error("Watch update failed (backoff %.1fs): %s", backoff, e)
                    if stop_event.wait(timeout=backoff):
                        break
                    continue
                if on_update is not None:
                    on_update(report)
        finally:
            observer.stop()
            observer.join(timeout=5)
            logger.info("Stopped watching %s", self.root)


class SourceChangeHandler(FileSystemEventHandler):
    """Queues a timestamp for every relevant source change."""

    def __init__(
        self,
        root: Path,
        queue: Queue,
        extensions: frozenset[str] | set[str],
        exclude_dirs: list[Path] | None = None,
    ):
        super().__init__()
        self.root = Path(root).resolve()
        self.queue = queue
        self.extensions = extensions
        self.exclude_dirs = [Path(d).resolve() for d in exclude_dirs or []]

    def _is_relevant(self, path: str) -> bool:
        p = Path(path)
        try:
            rel = p.resolve().relative_to(self.root)
        except (ValueError, OSError):
            return False
        if any(part in SKIP_DIRS or part.startswith(".") for part in rel.parts[:-1]):
            return False
        resolved = p.resolve()
        if any(d == resolved or d in resolved.parents for d in self.exclude_dirs):
            return False
        return p.suffix.lower() in self.extensions

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type not in ("modified", "created", "deleted", "moved"):
            return

        paths = [event.src_path]
        if getattr(event, "dest_path", None):
            paths.append(event.dest_path)
        if not any(self._is_relevant(str(p)) for p in paths):
            return

        try:
            self.queue.put_nowait(time.time())
        except Full:
            # An update is already pending
            logger.debug("Watch queue full, dropping event for %s", event.src_path)


__all__ = ["ChangeTracker", "UpdateReport", "SourceChangeHandler"]
