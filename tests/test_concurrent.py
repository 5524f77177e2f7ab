"""Deterministic concurrency tests against both backends.

Each worker thread opens its own store on the same files, the way separate
agent processes do.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from lockstep.db import SqliteStore
from lockstep.errors import LockConflictError
from lockstep.json_store import JsonStore

WORKERS = 8


def _open(backend: str, tmp_path: Path):
    if backend == "json":
        store = JsonStore(tmp_path / "data", tmp_path / "logs")
    else:
        store = SqliteStore(tmp_path / "data" / "coordinator.db", tmp_path / "logs")
    store.init()
    return store


def _join_threads(threads: list[threading.Thread]) -> None:
    for thread in threads:
        thread.join(timeout=30)
        assert not thread.is_alive(), f"Thread {thread.name} did not finish"


def _run_workers(target, count: int = WORKERS) -> None:
    threads = [
        threading.Thread(target=target, args=(f"impl-{i}",), name=f"worker-{i}")
        for i in range(count)
    ]
    for thread in threads:
        thread.start()
    _join_threads(threads)


@pytest.mark.parametrize("backend", ["json", "sqlite"])
def test_concurrent_acquire_grants_exactly_one_lock(tmp_path: Path, backend: str):
    _open(backend, tmp_path).close()

    barrier = threading.Barrier(WORKERS)
    winners: list[str] = []
    conflicts: list[str] = []
    errors: list[BaseException] = []

    def _worker(owner: str) -> None:
        store = _open(backend, tmp_path)
        try:
            barrier.wait(timeout=5)
            store.acquire_lock("src/app.go", owner=owner)
            winners.append(owner)
        except LockConflictError:
            conflicts.append(owner)
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)
        finally:
            store.close()

    _run_workers(_worker)

    assert errors == []
    assert len(winners) == 1
    assert len(conflicts) == WORKERS - 1

    store = _open(backend, tmp_path)
    try:
        active = store.list_locks(status="active")
        assert [lock["owner"] for lock in active] == winners
    finally:
        store.close()


@pytest.mark.parametrize("backend", ["json", "sqlite"])
def test_concurrent_writes_are_not_lost(tmp_path: Path, backend: str):
    _open(backend, tmp_path).close()

    barrier = threading.Barrier(WORKERS)
    errors: list[BaseException] = []

    def _worker(owner: str) -> None:
        store = _open(backend, tmp_path)
        try:
            barrier.wait(timeout=5)
            task = store.create_task(title=f"task for {owner}")
            store.claim_task(task["id"], owner)
            store.append_note(f"{owner} started", author=owner)
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)
        finally:
            store.close()

    _run_workers(_worker)

    assert errors == []
    store = _open(backend, tmp_path)
    try:
        tasks = store.list_tasks(status="in_progress")
        assert sorted(task["owner"] for task in tasks) == sorted(
            f"impl-{i}" for i in range(WORKERS)
        )
        assert len(store.list_notes()) == WORKERS
        events = [record["event"] for record in store.events.read()]
        assert events.count("task_create") == WORKERS
    finally:
        store.close()


@pytest.mark.parametrize("backend", ["json", "sqlite"])
def test_concurrent_last_task_done_writes_one_completion_note(tmp_path: Path, backend: str):
    seed = _open(backend, tmp_path)
    task_ids = [seed.create_task(title=f"t{i}")["id"] for i in range(WORKERS)]
    seed.close()

    barrier = threading.Barrier(WORKERS)
    errors: list[BaseException] = []
    ids = iter(task_ids)
    assignments = {f"impl-{i}": next(ids) for i in range(WORKERS)}

    def _worker(owner: str) -> None:
        store = _open(backend, tmp_path)
        try:
            barrier.wait(timeout=5)
            store.update_task(assignments[owner], status="done")
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)
        finally:
            store.close()

    _run_workers(_worker)

    assert errors == []
    store = _open(backend, tmp_path)
    try:
        notes = store.list_notes()
        assert len(notes) == 1
        assert notes[0]["author"] == "system"
    finally:
        store.close()
