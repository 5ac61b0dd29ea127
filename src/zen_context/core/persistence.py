"""Durable index state: a versioned snapshot plus a write-ahead journal.

On-disk layout under ``data_dir``:
- ``index.snapshot``  numpy ``.npz``: JSON metadata, float32 vectors grouped
  by dimension, format version and SHA-256 checksum
- ``index.journal``   one record per line, ``<crc32 hex>\\t<json>``; a batch is
  only replayed once its ``commit`` record is on disk
- ``.lock``           flock held by the single writer
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import time
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Generator

import numpy as np

from .errors import IndexCorruption
from .fileutils import atomic_write, ensure_dir, file_lock
from .types import FileRecord, IndexEntry, SourceUnit

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

SNAPSHOT_NAME = "index.snapshot"
JOURNAL_NAME = "index.journal"
LOCK_NAME = ".lock"


@dataclass
class PersistedState:
    """Everything needed to rebuild an Index and the file snapshot."""
    entries: dict[str, IndexEntry] = field(default_factory=dict)
    files: dict[str, FileRecord] = field(default_factory=dict)
    generation: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    replayed_batches: int = 0


def _encode_vector(vector: np.ndarray) -> str:
    return base64.b64encode(np.ascontiguousarray(vector, dtype="<f4").tobytes()).decode("ascii")


def _decode_vector(data: str) -> np.ndarray:
    return np.frombuffer(base64.b64decode(data), dtype="<f4").astype(np.float32)


def upsert_record(entry: IndexEntry) -> dict[str, Any]:
    return {
        "op": "upsert",
        "unit": entry.unit.to_dict(),
        "vector": _encode_vector(entry.vector),
        "model_variant": entry.model_variant,
        "fallback": entry.fallback,
    }


def delete_record(unit_id: str) -> dict[str, Any]:
    return {"op": "delete", "unit_id": unit_id}


def file_record(record: FileRecord) -> dict[str, Any]:
    return {"op": "file", "record": record.to_dict()}


def forget_file_record(path: str) -> dict[str, Any]:
    return {"op": "forget_file", "path": path}


def compact_record() -> dict[str, Any]:
    return {"op": "compact"}


def _apply_record(state: PersistedState, record: dict[str, Any]) -> None:
    op = record["op"]
    if op == "upsert":
        entry = IndexEntry(
            unit=SourceUnit.from_dict(record["unit"]),
            vector=_decode_vector(record["vector"]),
            model_variant=record["model_variant"],
            fallback=bool(record.get("fallback", False)),
        )
        state.entries[entry.unit_id] = entry
    elif op == "delete":
        entry = state.entries.get(record["unit_id"])
        if entry is not None:
            state.entries[entry.unit_id] = replace(entry, tombstoned=True)
    elif op == "file":
        rec = FileRecord.from_dict(record["record"])
        state.files[rec.path] = rec
    elif op == "forget_file":
        state.files.pop(record["path"], None)
    elif op == "compact":
        state.entries = {k: e for k, e in state.entries.items() if not e.tombstoned}
    else:
        raise IndexCorruption(f"Unknown journal operation: {op!r}")


def _checksum(meta_bytes: bytes, vectors: dict[str, np.ndarray]) -> str:
    h = hashlib.sha256()
    h.update(meta_bytes)
    for key in sorted(vectors):
        h.update(key.encode("ascii"))
        h.update(np.ascontiguousarray(vectors[key], dtype="<f4").tobytes())
    return h.hexdigest()


class SnapshotStore:
    """Snapshot + journal persistence for one data directory.

    Example:
        store = SnapshotStore(root / ".zen" / "context")
        with store.lock():
            store.append([upsert_record(entry)])   # durable before it is applied
            index.apply(...)
            store.save(state)                       # checkpoint, truncates journal
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.snapshot_path = self.data_dir / SNAPSHOT_NAME
        self.journal_path = self.data_dir / JOURNAL_NAME
        self.lock_path = self.data_dir / LOCK_NAME
        self._seq = 0

    def exists(self) -> bool:
        return self.snapshot_path.exists() or self.journal_path.exists()

    @contextmanager
    def lock(self, timeout: float = 10.0) -> Generator[None, None, None]:
        """Cross-process single-writer lock on the data directory."""
        ensure_dir(self.data_dir)
        with file_lock(self.lock_path, timeout=timeout):
            yield

    # =========================================================================
    # Snapshot
    # =========================================================================

    def save(self, state: PersistedState) -> Path:
        """Write a full snapshot atomically, then truncate the journal."""
        ensure_dir(self.data_dir)

        groups: dict[int, list[IndexEntry]] = {}
        for entry in sorted(state.entries.values(), key=lambda e: e.unit_id):
            groups.setdefault(int(entry.vector.shape[0]), []).append(entry)

        entries_meta = []
        vectors: dict[str, np.ndarray] = {}
        for dim in sorted(groups):
            rows = groups[dim]
            vectors[f"vectors_{dim}"] = np.vstack([e.vector for e in rows]).astype("<f4")
            for row, e in enumerate(rows):
                entries_meta.append({
                    "unit": e.unit.to_dict(),
                    "model_variant": e.model_variant,
                    "fallback": e.fallback,
                    "tombstoned": e.tombstoned,
                    "dim": dim,
                    "row": row,
                })

        meta = dict(state.meta)
        meta.update({
            "format_version": FORMAT_VERSION,
            "generation": state.generation,
            "journal_seq": self._seq,
            "saved_at": time.time(),
            "entries": entries_meta,
            "files": [r.to_dict() for r in sorted(state.files.values(), key=lambda r: r.path)],
        })
        meta_bytes = json.dumps(meta, separators=(",", ":"), sort_keys=True).encode("utf-8")

        arrays = {
            "meta": np.frombuffer(meta_bytes, dtype=np.uint8),
            "version": np.array([FORMAT_VERSION], dtype=np.int64),
            "checksum": np.frombuffer(_checksum(meta_bytes, vectors).encode("ascii"), dtype=np.uint8),
            **vectors,
        }

        with atomic_write(self.snapshot_path, mode="wb") as f:
            np.savez_compressed(f, **arrays)

        self._truncate_journal()
        logger.debug(
            "Saved snapshot generation %d: %d entries, %d files",
            state.generation, len(state.entries), len(state.files),
        )
        return self.snapshot_path

    def _load_snapshot(self) -> PersistedState:
        try:
            with np.load(self.snapshot_path, allow_pickle=False) as data:
                arrays = {key: data[key] for key in data.files}
        except (OSError, ValueError, EOFError, zipfile.BadZipFile, zlib.error) as e:
            raise IndexCorruption(f"Unreadable snapshot {self.snapshot_path}: {e}") from e

        try:
            version = int(arrays["version"][0])
            meta_bytes = arrays["meta"].tobytes()
            checksum = arrays["checksum"].tobytes().decode("ascii")
        except (KeyError, IndexError, UnicodeDecodeError) as e:
            raise IndexCorruption(f"Snapshot missing required fields: {e}") from e

        if version != FORMAT_VERSION:
            raise IndexCorruption(f"Incompatible snapshot version {version} (expected {FORMAT_VERSION})")

        vectors = {k: v for k, v in arrays.items() if k.startswith("vectors_")}
        if _checksum(meta_bytes, vectors) != checksum:
            raise IndexCorruption("Snapshot checksum mismatch")

        try:
            meta = json.loads(meta_bytes.decode("utf-8"))
            state = PersistedState(generation=int(meta["generation"]))
            for item in meta["entries"]:
                vector = vectors[f"vectors_{item['dim']}"][item["row"]].astype(np.float32)
                entry = IndexEntry(
                    unit=SourceUnit.from_dict(item["unit"]),
                    vector=vector,
                    model_variant=item["model_variant"],
                    fallback=bool(item.get("fallback", False)),
                    tombstoned=bool(item.get("tombstoned", False)),
                )
                state.entries[entry.unit_id] = entry
            for rec in meta["files"]:
                record = FileRecord.from_dict(rec)
                state.files[record.path] = record
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise IndexCorruption(f"Invalid snapshot metadata: {e}") from e

        state.meta = {
            k: v for k, v in meta.items() if k not in ("entries", "files", "generation")
        }
        self._seq = int(meta.get("journal_seq", 0))
        return state

    # =========================================================================
    # Journal
    # =========================================================================

    def append(self, records: list[dict[str, Any]]) -> int:
        """Durably append one batch of records followed by a commit marker.

        Returns the sequence number of the commit.
        """
        if not records:
            return self._seq

        ensure_dir(self.data_dir)
        lines = []
        for record in [*records, {"op": "commit"}]:
            self._seq += 1
            payload = json.dumps({**record, "seq": self._seq}, separators=(",", ":"), sort_keys=True)
            crc = zlib.crc32(payload.encode("utf-8")) & 0xFFFFFFFF
            lines.append(f"{crc:08x}\t{payload}\n")

        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.write("".join(lines))
            f.flush()
            os.fsync(f.fileno())
        return self._seq

    def _truncate_journal(self) -> None:
        with atomic_write(self.journal_path) as f:
            f.write("")

    @staticmethod
    def _parse_line(line: str) -> dict[str, Any]:
        crc_hex, sep, payload = line.partition("\t")
        if not sep:
            raise ValueError("missing checksum separator")
        if int(crc_hex, 16) != zlib.crc32(payload.encode("utf-8")) & 0xFFFFFFFF:
            raise ValueError("checksum mismatch")
        record = json.loads(payload)
        if not isinstance(record, dict) or "op" not in record or "seq" not in record:
            raise ValueError("malformed record")
        return record

    def _replay(self, state: PersistedState) -> None:
        if not self.journal_path.exists():
            return
        try:
            raw = self.journal_path.read_text(encoding="utf-8", errors="strict")
        except (OSError, UnicodeDecodeError) as e:
            raise IndexCorruption(f"Unreadable journal {self.journal_path}: {e}") from e

        lines = raw.split("\n")
        if lines and lines[-1] == "":
            lines.pop()

        start_seq = self._seq
        pending: list[dict[str, Any]] = []
        for i, line in enumerate(lines):
            try:
                record = self._parse_line(line)
            except ValueError as e:
                if i == len(lines) - 1:
                    logger.warning("Dropping torn final journal record: %s", e)
                    break
                raise IndexCorruption(f"Corrupt journal record at line {i + 1}: {e}") from e

            seq = int(record["seq"])
            if seq <= start_seq:
                # Already captured by the snapshot
                continue
            self._seq = seq
            if record["op"] == "commit":
                for pending_record in pending:
                    _apply_record(state, pending_record)
                pending = []
                state.generation += 1
                state.replayed_batches += 1
            else:
                pending.append(record)

        if pending:
            logger.warning("Discarding %d uncommitted journal records", len(pending))

    def load(self) -> PersistedState | None:
        """Load the snapshot and replay the journal.

        Returns None when nothing has been persisted yet.

        Raises:
            IndexCorruption: If the snapshot or journal cannot be trusted
        """
        if not self.exists():
            return None

        self._seq = 0
        if self.snapshot_path.exists():
            state = self._load_snapshot()
        else:
            state = PersistedState()

        try:
            self._replay(state)
        except (KeyError, ValueError, TypeError) as e:
            raise IndexCorruption(f"Invalid journal record: {e}") from e

        if state.replayed_batches:
            logger.info("Replayed %d journal batches", state.replayed_batches)
        return state

    def clear(self) -> None:
        """Remove snapshot and journal (the lock file stays)."""
        for path in (self.snapshot_path, self.journal_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        self._seq = 0

    def sizes(self) -> dict[str, int]:
        return {
            "snapshot_bytes": self.snapshot_path.stat().st_size if self.snapshot_path.exists() else 0,
            "journal_bytes": self.journal_path.stat().st_size if self.journal_path.exists() else 0,
        }


__all__ = [
    "FORMAT_VERSION",
    "PersistedState",
    "SnapshotStore",
    "upsert_record",
    "delete_record",
    "file_record",
    "forget_file_record",
    "compact_record",
]
