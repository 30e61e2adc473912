from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import pytest

from iso_threads.control_plane.locking import MutexGate
from iso_threads.errors import LockTimeout


def test_acquire_records_holder_and_release_is_idempotent(tmp_path: Path) -> None:
    gate = MutexGate(tmp_path / "registry.lock")

    info = gate.acquire(timeout=1.0)

    assert gate.held
    assert info.pid == os.getpid()
    assert gate.holder() == info

    gate.release()
    gate.release()

    assert not gate.held
    assert gate.holder() is None


def test_second_owner_times_out_then_acquires_after_release(tmp_path: Path) -> None:
    path = tmp_path / "registry.lock"
    first = MutexGate(path)
    second = MutexGate(path, poll_interval_s=0.01)
    first.acquire(timeout=1.0)

    started = time.monotonic()
    with pytest.raises(LockTimeout) as exc_info:
        second.acquire(timeout=0.2)

    assert time.monotonic() - started >= 0.2
    assert exc_info.value.reason_code == "lock_timeout"

    first.release()
    second.acquire(timeout=1.0)
    assert second.held
    second.release()


def test_hold_is_reentrant_for_the_same_gate(tmp_path: Path) -> None:
    gate = MutexGate(tmp_path / "registry.lock")

    with gate.hold(timeout=1.0):
        with gate.hold(timeout=1.0):
            assert gate.held
        assert gate.held

    assert not gate.held


def test_shared_gate_serializes_threads(tmp_path: Path) -> None:
    gate = MutexGate(tmp_path / "registry.lock", poll_interval_s=0.01)
    inside = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal inside, peak
        with gate.hold(timeout=5.0):
            with guard:
                inside += 1
                peak = max(peak, inside)
            time.sleep(0.01)
            with guard:
                inside -= 1

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1


def test_stale_holder_is_reclaimed(tmp_path: Path) -> None:
    path = tmp_path / "registry.lock"
    hung = MutexGate(path)
    hung.acquire(timeout=1.0)
    path.write_text(
        json.dumps({"pid": 999999, "hostname": "elsewhere", "acquired_at": time.time() - 3600}),
        encoding="utf-8",
    )
    waiter = MutexGate(path, stale_after_s=60.0, poll_interval_s=0.01)

    assert waiter.is_stale(60.0)
    info = waiter.acquire(timeout=1.0)

    assert info.pid == os.getpid()
    assert waiter.holder() == info
    waiter.release()
    hung.release()


def test_recent_holder_is_not_reclaimed(tmp_path: Path) -> None:
    path = tmp_path / "registry.lock"
    holder = MutexGate(path)
    holder.acquire(timeout=1.0)
    waiter = MutexGate(path, stale_after_s=60.0, poll_interval_s=0.01)

    assert not waiter.is_stale(60.0)
    with pytest.raises(LockTimeout):
        waiter.acquire(timeout=0.1)

    holder.release()


def test_outdated_staleness_reading_cannot_steal_a_fresh_gate(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "registry.lock"
    hung = MutexGate(path)
    hung.acquire(timeout=1.0)
    path.write_text(
        json.dumps({"pid": 999999, "hostname": "elsewhere", "acquired_at": time.time() - 3600}),
        encoding="utf-8",
    )
    first = MutexGate(path, stale_after_s=60.0, poll_interval_s=0.01)
    first.acquire(timeout=1.0)
    second = MutexGate(path, stale_after_s=60.0, poll_interval_s=0.01)
    # second still believes the hung holder owns the gate
    monkeypatch.setattr(second, "is_stale", lambda max_age_s: True)

    with pytest.raises(LockTimeout):
        second.acquire(timeout=0.2)

    assert first.held
    assert not second.held
    assert not second.reclaim()
    assert path.exists()
    assert first.holder() is not None
    assert first.holder().pid == os.getpid()

    first.release()
    hung.release()


def test_reclaim_leaves_a_fresh_holder_alone(tmp_path: Path) -> None:
    path = tmp_path / "registry.lock"
    holder = MutexGate(path)
    info = holder.acquire(timeout=1.0)
    other = MutexGate(path)

    assert not other.reclaim(max_age_s=60.0)
    assert holder.holder() == info

    holder.release()
