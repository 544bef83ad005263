"""Single-instance lock."""

from __future__ import annotations

import json
import os
import socket
import time

import pytest

from catalogcrawl import runlock
from catalogcrawl.runlock import RunLock

OTHER_PID = 4_000_000


def write_marker(path, pid=OTHER_PID, age=0.0, hostname="other-host"):
    path.write_text(json.dumps({"pid": pid, "hostname": hostname, "acquired_at": time.time() - age}))


@pytest.fixture
def lock_path(tmp_path):
    return tmp_path / "run.lock"


def test_acquire_and_release(lock_path):
    lock = RunLock(lock_path)
    assert lock.acquire()
    marker = lock.owner()
    assert marker["pid"] == os.getpid()
    assert marker["hostname"] == socket.gethostname()
    lock.release()
    assert not lock_path.exists()


def test_live_owner_blocks_without_touching_marker(lock_path, monkeypatch):
    monkeypatch.setattr(runlock.psutil, "pid_exists", lambda pid: True)
    write_marker(lock_path)
    before = lock_path.read_bytes()

    assert not RunLock(lock_path).acquire()
    assert lock_path.read_bytes() == before


def test_dead_owner_is_reclaimed(lock_path, monkeypatch):
    monkeypatch.setattr(runlock.psutil, "pid_exists", lambda pid: False)
    write_marker(lock_path)

    lock = RunLock(lock_path)
    assert lock.acquire()
    assert lock.owner()["pid"] == os.getpid()


def test_stale_marker_is_reclaimed_even_if_owner_alive(lock_path, monkeypatch):
    monkeypatch.setattr(runlock.psutil, "pid_exists", lambda pid: True)
    write_marker(lock_path, age=7200)

    lock = RunLock(lock_path, stale_after=3600)
    assert lock.acquire()
    assert lock.owner()["pid"] == os.getpid()


def age_file(path, seconds):
    then = time.time() - seconds
    os.utime(path, (then, then))


def test_corrupt_marker_is_reclaimed_after_grace(lock_path):
    lock_path.write_text("{not json")
    age_file(lock_path, 120)
    assert RunLock(lock_path, unreadable_grace=30).acquire()


def test_fresh_empty_marker_is_left_to_its_writer(lock_path, monkeypatch):
    monkeypatch.setattr(runlock.psutil, "pid_exists", lambda pid: True)
    fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    try:
        assert not RunLock(lock_path, unreadable_grace=30).acquire()
        assert lock_path.exists()
        assert lock_path.read_bytes() == b""
    finally:
        os.close(fd)


def test_marker_appears_complete(lock_path):
    lock = RunLock(lock_path)
    assert lock.acquire()
    assert json.loads(lock_path.read_text())["pid"] == os.getpid()
    assert [p.name for p in lock_path.parent.iterdir()] == ["run.lock"]


def test_release_leaves_foreign_marker(lock_path, monkeypatch):
    monkeypatch.setattr(runlock.psutil, "pid_exists", lambda pid: True)
    lock = RunLock(lock_path)
    assert lock.acquire()
    write_marker(lock_path)

    lock.release()
    assert lock_path.exists()
    assert json.loads(lock_path.read_text())["pid"] == OTHER_PID


def test_second_acquire_in_same_process_reclaims_own_marker(lock_path):
    first = RunLock(lock_path)
    assert first.acquire()
    assert RunLock(lock_path).acquire()
