"""Tests for the filesystem primitives: mutex directory, record, trampoline."""

import os
import stat
from concurrent.futures import ThreadPoolExecutor

import pytest

from trustme_ci.build.mutex import CancelTrampoline, MutexDirectory, OwnershipRecord


class TestMutexDirectory:
    """Tests for MutexDirectory."""

    def test_first_acquire_wins(self, tmp_path):
        """Test that the first caller gets the lock and a second does not."""
        first = MutexDirectory(tmp_path / "x.lock")
        second = MutexDirectory(tmp_path / "x.lock")

        assert first.try_acquire()
        assert first.held
        assert not second.try_acquire()
        assert not second.held

    def test_release_allows_reacquire(self, tmp_path):
        """Test that releasing frees the lock for others."""
        first = MutexDirectory(tmp_path / "x.lock")
        second = MutexDirectory(tmp_path / "x.lock")
        first.try_acquire()

        first.release()

        assert not first.held
        assert second.try_acquire()

    def test_release_tolerates_absence(self, tmp_path):
        """Test that releasing a missing directory does not raise."""
        mutex = MutexDirectory(tmp_path / "x.lock")
        mutex.release()
        mutex.release()
        assert not mutex.exists()

    def test_exists_probe(self, tmp_path):
        """Test the diagnostic existence probe."""
        mutex = MutexDirectory(tmp_path / "x.lock")
        assert not mutex.exists()
        mutex.try_acquire()
        assert mutex.exists()

    def test_racing_callers_single_winner(self, tmp_path):
        """Test that exactly one of many racing callers acquires."""
        path = tmp_path / "race.lock"

        def attempt(_):
            return MutexDirectory(path).try_acquire()

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(64)))

        assert results.count(True) == 1

    def test_independent_paths(self, tmp_path):
        """Test that build and kill slots do not interfere."""
        build = MutexDirectory(tmp_path / "p.lock", "build lock")
        kill = MutexDirectory(tmp_path / "p.kill", "kill lock")
        assert build.try_acquire()
        assert kill.try_acquire()


class TestOwnershipRecord:
    """Tests for OwnershipRecord."""

    def test_read_absent(self, tmp_path):
        """Test reading a missing record returns None."""
        record = OwnershipRecord(tmp_path / "p.pid")
        assert record.read() is None
        assert not record.exists()

    def test_write_then_read(self, tmp_path):
        """Test pid round trip and on-disk format."""
        record = OwnershipRecord(tmp_path / "p.pid")
        record.write(4242)
        assert record.read() == 4242
        assert record.path.read_text() == "4242\n"

    def test_empty_record(self, tmp_path):
        """Test that an empty record reads as None but exists."""
        record = OwnershipRecord(tmp_path / "p.pid")
        record.path.write_text("")
        assert record.read() is None
        assert record.exists()

    def test_garbage_record(self, tmp_path):
        """Test that non-numeric contents raise ValueError."""
        record = OwnershipRecord(tmp_path / "p.pid")
        record.path.write_text("not-a-pid")
        with pytest.raises(ValueError):
            record.read()
        assert not record.names(1)

    def test_names(self, tmp_path):
        """Test the ownership check."""
        record = OwnershipRecord(tmp_path / "p.pid")
        record.write(100)
        assert record.names(100)
        assert not record.names(200)

    def test_remove_is_idempotent(self, tmp_path):
        """Test that removing twice does not fail."""
        record = OwnershipRecord(tmp_path / "p.pid")
        record.write(1)
        record.remove()
        record.remove()
        assert not record.exists()


class TestCancelTrampoline:
    """Tests for CancelTrampoline."""

    def test_render(self):
        """Test the script sends SIGUSR1 to the pid."""
        script = CancelTrampoline.render(100)
        assert script.startswith("#!/bin/sh\n")
        assert "kill -s USR1 100" in script

    def test_write_is_executable(self, tmp_path):
        """Test that the trampoline is written executable."""
        trampoline = CancelTrampoline(tmp_path / "p.kill!")
        trampoline.write(os.getpid())

        mode = trampoline.path.stat().st_mode
        assert mode & stat.S_IXUSR
        assert str(os.getpid()) in trampoline.path.read_text()

    def test_remove_is_idempotent(self, tmp_path):
        """Test that removing twice does not fail."""
        trampoline = CancelTrampoline(tmp_path / "p.kill!")
        trampoline.write(1)
        trampoline.remove()
        trampoline.remove()
        assert not trampoline.path.exists()
