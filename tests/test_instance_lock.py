"""Tests for the single instance PID lock."""

import os

import pytest

from infra.instance_lock import SingleInstanceLock


def test_acquire_writes_pid_and_release_removes_it(tmp_path):
    lock = SingleInstanceLock("engine", lock_dir=str(tmp_path))

    assert lock.acquire()
    assert lock.lock_file.read_text() == str(os.getpid())

    lock.release()
    assert not lock.lock_file.exists()


def test_second_holder_is_refused_while_owner_lives(tmp_path, monkeypatch):
    (tmp_path / "engine.pid").write_text("424242")
    monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: True))

    assert SingleInstanceLock("engine", lock_dir=str(tmp_path)).acquire() is False


def test_stale_lock_is_taken_over(tmp_path, monkeypatch):
    (tmp_path / "engine.pid").write_text("424242")
    monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: False))

    lock = SingleInstanceLock("engine", lock_dir=str(tmp_path))

    assert lock.acquire()
    assert lock.lock_file.read_text() == str(os.getpid())
    lock.release()


def test_garbage_lock_file_is_stale(tmp_path):
    (tmp_path / "engine.pid").write_text("not-a-pid")

    lock = SingleInstanceLock("engine", lock_dir=str(tmp_path))

    assert lock.acquire()
    lock.release()


def test_context_manager(tmp_path, monkeypatch):
    with SingleInstanceLock("engine", lock_dir=str(tmp_path)) as lock:
        assert lock.acquired

    assert not (tmp_path / "engine.pid").exists()

    (tmp_path / "engine.pid").write_text("424242")
    monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: True))
    with pytest.raises(RuntimeError):
        with SingleInstanceLock("engine", lock_dir=str(tmp_path)):
            pass
