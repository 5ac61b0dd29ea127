"""Tests for file utilities."""

import threading

import pytest

from zen_context.core.fileutils import atomic_write, ensure_dir, file_lock


class TestAtomicWrite:
    """Tests for atomic_write."""

    def test_writes_text(self, tmp_path):
        target = tmp_path / "nested" / "out.txt"
        with atomic_write(target) as f:
            f.write("hello")
        assert target.read_text() == "hello"

    def test_writes_bytes(self, tmp_path):
        target = tmp_path / "out.bin"
        with atomic_write(target, mode="wb") as f:
            f.write(b"\x00\x01")
        assert target.read_bytes() == b"\x00\x01"

    def test_error_keeps_original(self, tmp_path):
        target = tmp_path / "out.txt"
        target.write_text("original")

        with pytest.raises(RuntimeError):
            with atomic_write(target) as f:
                f.write("partial")
                raise RuntimeError("interrupted")

        assert target.read_text() == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["out.txt"]

    def test_replaces_existing(self, tmp_path):
        target = tmp_path / "out.txt"
        target.write_text("old")
        with atomic_write(target, fsync=False) as f:
            f.write("new")
        assert target.read_text() == "new"


class TestEnsureDir:
    def test_creates_parents(self, tmp_path):
        path = ensure_dir(tmp_path / "a" / "b")
        assert path.is_dir()
        assert ensure_dir(path) == path


class TestFileLock:
    """Tests for the flock-based writer lock."""

    def test_acquire_and_release(self, tmp_path):
        lock = tmp_path / "locks" / ".lock"
        with file_lock(lock):
            assert lock.exists()
        with file_lock(lock, timeout=0.1):
            pass

    def test_second_holder_times_out(self, tmp_path):
        lock = tmp_path / ".lock"
        with file_lock(lock):
            with pytest.raises(TimeoutError):
                with file_lock(lock, timeout=0.2):
                    pass

    def test_waiter_gets_lock_after_release(self, tmp_path):
        lock = tmp_path / ".lock"
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with file_lock(lock):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        acquired.wait(5)
        threading.Timer(0.2, release.set).start()

        with file_lock(lock, timeout=5):
            assert release.is_set()
        thread.join(5)
