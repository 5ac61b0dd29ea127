"""The ContextEngine - one explicit object per indexed project.

Example:
    from zen_context import ContextEngine

    with ContextEngine("~/src/shop") as engine:
        engine.update()
        bundle = engine.assemble("add a product card with an add-to-cart button")
        for item in bundle.to_dicts():
            print(item["path"], item["symbol"], item["score"])
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Iterable

from .assembler import ContextAssembler
from .config import EngineConfig
from .embeddings import CachingEmbedder, Embedder, get_embedder
from .errors import IndexCorruption, RootPathError
from .overview import ProjectOverview, build_overview
from .persistence import SnapshotStore
from .tracker import ChangeTracker, UpdateReport
from .types import ContextBundle, Query, QueryFilters, SearchHit
from .vector_index import Index

logger = logging.getLogger(__name__)


class ContextEngine:
    """Index a source tree and answer bounded context queries."""

    def __init__(
        self,
        root: str | Path,
        config: EngineConfig | None = None,
        embedder: Embedder | None = None,
    ):
        root = Path(root).expanduser()
        if not root.exists():
            raise RootPathError(f"Project root does not exist: {root}")
        if not root.is_dir():
            raise RootPathError(f"Project root is not a directory: {root}")

        self.root = root.resolve()
        self.config = config or EngineConfig.from_user_config()
        self.data_dir = self.config.resolve_data_dir(self.root)
        self.cancel_event = threading.Event()

        if embedder is None:
            self.embedder = get_embedder(self.config, cancel_event=self.cancel_event)
        elif isinstance(embedder, CachingEmbedder):
            self.embedder = embedder
        else:
            self.embedder = CachingEmbedder(embedder)

        self.index = Index()
        self.store = SnapshotStore(self.data_dir)
        self.tracker = ChangeTracker(
            self.root,
            self.config,
            self.index,
            self.store,
            self.embedder,
            cancel_event=self.cancel_event,
        )
        self.assembler = ContextAssembler(
            self.index,
            self.embedder,
            k=self.config.k,
            budget=self.config.budget,
            min_truncation_bytes=self.config.min_truncation_bytes,
        )
        self._closed = False

    def __repr__(self) -> str:
        return f"ContextEngine(root={str(self.root)!r}, units={len(self.index)})"

    def __enter__(self) -> "ContextEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def load(self) -> bool:
        """Load persisted state. Returns False if there is none or it is corrupt.

        Corrupt state is left for the next ``update()`` to rebuild.
        """
        try:
            return self.tracker.load()
        except IndexCorruption as e:
            logger.warning("Ignoring corrupt index at %s: %s", self.data_dir, e)
            return False

    def _ensure_loaded(self) -> None:
        if not self.tracker.loaded and self.store.exists():
            self.load()

    def cancel(self) -> None:
        """Interrupt a running scan, update or remote retry."""
        self.cancel_event.set()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.cancel_event.set()
        self.embedder.close()

    # =========================================================================
    # Indexing
    # =========================================================================

    def update(self, full: bool = False) -> UpdateReport:
        """Index the project, incrementally unless ``full`` or nothing is persisted."""
        self.cancel_event.clear()
        return self.tracker.update(full=full)

    def compact(self) -> int:
        """Purge tombstones. Returns how many entries were removed."""
        self._ensure_loaded()
        return self.tracker.compact()

    def verify(self) -> list[str]:
        """Unit ids whose source changed or vanished since they were indexed."""
        self._ensure_loaded()
        return self.tracker.verify()

    def watch(
        self,
        stop_event: threading.Event | None = None,
        on_update: Callable[[UpdateReport], None] | None = None,
    ) -> None:
        """Update once, then re-index on every change until stopped."""
        stop_event = stop_event or self.cancel_event
        report = self.update()
        if on_update is not None:
            on_update(report)
        self.tracker.watch(stop_event, on_update=on_update)

    # =========================================================================
    # Retrieval
    # =========================================================================

    @staticmethod
    def _make_query(
        task: str | Query,
        kinds: Iterable[str] | None = None,
        paths: Iterable[str] | None = None,
        exclude_degraded: bool = False,
        budget: int | None = None,
    ) -> Query:
        if isinstance(task, Query):
            return task
        filters = QueryFilters(
            kinds=frozenset(kinds) if kinds else None,
            path_patterns=tuple(paths or ()),
            exclude_degraded=exclude_degraded,
        )
        return Query(task_description=task, filters=filters, budget=budget)

    def query(
        self,
        task: str | Query,
        k: int | None = None,
        kinds: Iterable[str] | None = None,
        paths: Iterable[str] | None = None,
        exclude_degraded: bool = False,
    ) -> list[SearchHit]:
        """Ranked hits without budget handling."""
        self._ensure_loaded()
        query = self._make_query(task, kinds, paths, exclude_degraded)
        _, hits = self.assembler.retrieve(query, k)
        return hits

    def assemble(
        self,
        task: str | Query,
        budget: int | None = None,
        kinds: Iterable[str] | None = None,
        paths: Iterable[str] | None = None,
        exclude_degraded: bool = False,
    ) -> ContextBundle:
        """A size-bounded ContextBundle for the task."""
        self._ensure_loaded()
        query = self._make_query(task, kinds, paths, exclude_degraded, budget)
        return self.assembler.assemble(query, budget=budget)

    # =========================================================================
    # Reporting
    # =========================================================================

    def overview(self) -> ProjectOverview:
        """Pattern counts and convention recommendations for the indexed code."""
        self._ensure_loaded()
        units = [e.unit for e in self.index.snapshot().entries.values() if not e.tombstoned]
        return build_overview(units)

    def status(self, check_pending: bool = True) -> dict[str, Any]:
        """Index statistics; with ``check_pending``, also what an update would change."""
        self._ensure_loaded()
        result: dict[str, Any] = {
            "root": str(self.root),
            "data_dir": str(self.data_dir),
            "indexed": self.store.exists(),
            **self.index.stats(),
            "tracked_files": len(self.tracker.files),
            "embedder": self.embedder.stats(),
            **self.store.sizes(),
        }
        if check_pending:
            diff = self.tracker.scanner.scan(self.root, previous=self.tracker.files)
            pending = diff.summary()
            result["pending"] = pending
            result["needs_update"] = diff.has_changes or not result["indexed"]
        return result


__all__ = ["ContextEngine"]
