from __future__ import annotations

import os
import time
from pathlib import Path

from foundry_sandbox.core.reaper import Reaper
from foundry_sandbox.core.sessions import SessionRegistry
from foundry_sandbox.core.workspace import WorkspaceStore

RETENTION = 100.0


def _setup(tmp_path: Path):  # type: ignore[no-untyped-def]
    store = WorkspaceStore(root=tmp_path / "ws")
    reg = SessionRegistry(workspaces=store)
    reaper = Reaper(registry=reg, workspaces=store, interval_sec=3600, retention_sec=RETENTION, sweep_orphans=True)
    return store, reg, reaper


def _age(path: Path, seconds: float) -> None:
    ts = time.time() - seconds
    os.utime(path, (ts, ts))


def test_idle_workspace_is_removed_and_recent_one_kept(tmp_path: Path) -> None:
    store, reg, reaper = _setup(tmp_path)
    old = reg.resolve(None).token
    fresh = reg.resolve(None).token
    now = time.time()
    reg.touch(old, at=now - 2 * RETENTION)
    _age(store.path_for(old), 2 * RETENTION)

    report = reaper.sweep(now=now)
    assert report.removed == [old]
    assert not store.exists(old)
    assert reg.get(old) is None
    assert store.exists(fresh)
    assert reg.get(fresh) is not None


def test_file_edit_counts_as_activity(tmp_path: Path) -> None:
    store, reg, reaper = _setup(tmp_path)
    token = reg.resolve(None).token
    now = time.time()
    reg.touch(token, at=now - 2 * RETENTION)
    # 目录 mtime 是最近的（刚写过文件）
    store.write_text(token, "Counter.sol", "contract C {}")

    report = reaper.sweep(now=now)
    assert report.removed == []
    assert store.exists(token)


def test_busy_session_is_skipped(tmp_path: Path) -> None:
    store, reg, reaper = _setup(tmp_path)
    token = reg.resolve(None).token
    reg.begin_command(token)
    _age(store.path_for(token), 2 * RETENTION)

    report = reaper.sweep(now=time.time() + 2 * RETENTION)
    assert report.skipped_busy == [token]
    assert store.exists(token)
    reg.end_command(token)


def test_session_with_externally_deleted_workspace_is_evicted(tmp_path: Path) -> None:
    store, reg, reaper = _setup(tmp_path)
    token = reg.resolve(None).token
    store.remove(token)

    report = reaper.sweep()
    assert report.removed == [token]
    assert reg.get(token) is None
    assert report.errors == []


def test_orphan_directories_are_swept_by_age(tmp_path: Path) -> None:
    store, reg, reaper = _setup(tmp_path)
    stale = "a" * 32
    recent = "b" * 32
    store.create(stale)
    store.create(recent)
    _age(store.path_for(stale), 2 * RETENTION)

    report = reaper.sweep()
    assert report.orphans_removed == [stale]
    assert not store.exists(stale)
    assert store.exists(recent)

    store.create(stale)
    _age(store.path_for(stale), 2 * RETENTION)
    assert reaper.sweep(include_orphans=False).orphans_removed == []
    assert store.exists(stale)


def test_background_loop_starts_and_stops(tmp_path: Path) -> None:
    _store, _reg, reaper = _setup(tmp_path)
    reaper.start()
    assert reaper.running is True
    reaper.stop(timeout=2)
    assert reaper.running is False
