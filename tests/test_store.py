"""Store behaviour shared by the JSON and SQLite backends."""

from __future__ import annotations

import pytest

from lockstep.errors import (
    CoordinationError,
    LockConflictError,
    LockNotFoundError,
    NotFoundError,
    OwnershipMismatchError,
)
from lockstep.models import ALL_TASKS_COMPLETE_NOTE, SYSTEM_AUTHOR


def _event_names(store) -> list[str]:
    return [record["event"] for record in store.events.read()]


# -- tasks --


def test_create_task_defaults(store):
    task = store.create_task(title="Fix login bug")
    assert task["status"] == "todo"
    assert task["complexity"] == "medium"
    assert task["isolation"] == "shared"
    assert task["owner"] is None
    assert task["tags"] == []
    assert task["metadata"] == {}
    assert task["review_notes"] is None
    assert len(task["id"]) == 32
    assert task["created_at"] == task["updated_at"]
    assert task["created_at"].endswith("Z")


def test_create_task_stores_supplied_fields(store):
    task = store.create_task(
        title="Wire OAuth",
        description="Use the existing session table",
        complexity="complex",
        isolation="worktree",
        owner="impl-1",
        tags=["auth", "backend", "auth"],
        metadata={"estimate": 3},
    )
    assert task["complexity"] == "complex"
    assert task["isolation"] == "worktree"
    assert task["tags"] == ["auth", "backend"]
    assert task["metadata"] == {"estimate": 3}
    assert store.list_tasks() == [task]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"title": ""},
        {"title": "   "},
        {"title": "x", "status": "finished"},
        {"title": "x", "complexity": "huge"},
        {"title": "x", "isolation": "container"},
        {"title": "x", "tags": "auth"},
    ],
)
def test_create_task_rejects_invalid_input(store, kwargs):
    with pytest.raises(ValueError):
        store.create_task(**kwargs)
    assert store.list_tasks() == []


def test_created_task_listed_once_under_its_status(store):
    task = store.create_task(title="Fix login bug", status="in_progress")
    store.create_task(title="Other")
    matches = store.list_tasks(status="in_progress")
    assert [t["id"] for t in matches] == [task["id"]]


def test_list_tasks_filters_and_limit(store):
    first = store.create_task(title="one", owner="impl-1", tags=["ui"])
    second = store.create_task(title="two", owner="impl-2", tags=["ui", "api"])
    third = store.create_task(title="three", owner="impl-1")
    assert [t["id"] for t in store.list_tasks(owner="impl-1")] == [first["id"], third["id"]]
    assert [t["id"] for t in store.list_tasks(tag="api")] == [second["id"]]
    assert [t["id"] for t in store.list_tasks(tag="ui", owner="impl-2")] == [second["id"]]
    assert [t["id"] for t in store.list_tasks(limit=2)] == [first["id"], second["id"]]


def test_update_task_with_no_fields_only_touches_updated_at(store):
    task = store.create_task(title="Fix login bug", tags=["a"])
    updated = store.update_task(task["id"])
    assert updated["updated_at"] >= task["updated_at"]
    assert {k: v for k, v in updated.items() if k != "updated_at"} == {
        k: v for k, v in task.items() if k != "updated_at"
    }


def test_update_task_changes_only_supplied_fields(store):
    task = store.create_task(title="Fix login bug", description="d", tags=["a"])
    updated = store.update_task(task["id"], title="Fix logout bug", status="blocked")
    assert updated["title"] == "Fix logout bug"
    assert updated["status"] == "blocked"
    assert updated["description"] == "d"
    assert updated["tags"] == ["a"]


def test_update_task_unknown_id(store):
    with pytest.raises(NotFoundError) as exc_info:
        store.update_task("missing", title="x")
    assert exc_info.value.key == "missing"
    assert isinstance(exc_info.value, LookupError)


def test_update_task_rejects_invalid_status(store):
    task = store.create_task(title="x")
    with pytest.raises(ValueError, match="Invalid task status"):
        store.update_task(task["id"], status="finished")
    assert store.list_tasks()[0]["status"] == "todo"


def test_claim_task_sets_owner_and_status(store):
    task = store.create_task(title="Fix login bug")
    claimed = store.claim_task(task["id"], "impl-1")
    assert claimed["owner"] == "impl-1"
    assert claimed["status"] == "in_progress"


def test_claim_task_does_not_check_current_owner(store):
    task = store.create_task(title="Fix login bug", owner="impl-1")
    assert store.claim_task(task["id"], "impl-2")["owner"] == "impl-2"


def test_claim_unknown_task(store):
    with pytest.raises(NotFoundError):
        store.claim_task("nope", "impl-1")


def test_completion_note_after_last_task_done(store):
    first = store.create_task(title="one")
    second = store.create_task(title="two")
    store.update_task(first["id"], status="done")
    assert store.list_notes() == []

    store.update_task(second["id"], status="done")
    notes = store.list_notes()
    assert len(notes) == 1
    assert notes[0]["author"] == SYSTEM_AUTHOR
    assert notes[0]["text"] == ALL_TASKS_COMPLETE_NOTE
    assert notes[0]["text"].startswith("[SYSTEM] ALL TASKS COMPLETE")


def test_completion_note_ignores_blocked_tasks(store):
    store.create_task(title="stuck", status="blocked")
    task = store.create_task(title="one")
    store.update_task(task["id"], status="done")
    assert [n["author"] for n in store.list_notes()] == [SYSTEM_AUTHOR]


def test_no_completion_note_for_non_done_update(store):
    task = store.create_task(title="one", status="done")
    store.update_task(task["id"], title="renamed")
    store.update_task(task["id"], status="done")
    assert store.list_notes() == []


# -- locks --


def test_lock_scenario_conflict_release_reacquire(store):
    lock = store.acquire_lock("src/app.go", owner="impl-1")
    assert lock["status"] == "active"
    assert lock["owner"] == "impl-1"

    with pytest.raises(LockConflictError) as exc_info:
        store.acquire_lock("src/app.go", owner="impl-2")
    assert "impl-1" in str(exc_info.value)
    assert exc_info.value.transient is True

    released = store.release_lock("src/app.go", owner="impl-1")
    assert released["status"] == "resolved"

    again = store.acquire_lock("src/app.go", owner="impl-2")
    assert again["owner"] == "impl-2"

    history = store.list_locks()
    assert [(item["owner"], item["status"]) for item in history] == [
        ("impl-1", "resolved"),
        ("impl-2", "active"),
    ]
    assert store.list_locks(status="active") == [again]


def test_release_with_other_owner_keeps_lock_active(store):
    store.acquire_lock("src/app.go", owner="impl-1", note="refactor")
    with pytest.raises(OwnershipMismatchError) as exc_info:
        store.release_lock("src/app.go", owner="impl-2")
    assert exc_info.value.expected == "impl-1"
    assert exc_info.value.actual == "impl-2"
    [lock] = store.list_locks()
    assert lock["status"] == "active"
    assert lock["note"] == "refactor"


def test_release_without_owner_always_allowed(store):
    store.acquire_lock("src/app.go", owner="impl-1")
    assert store.release_lock("src/app.go")["status"] == "resolved"


def test_release_unknown_lock(store):
    with pytest.raises(LockNotFoundError) as exc_info:
        store.release_lock("src/nothing.py")
    assert isinstance(exc_info.value, NotFoundError)
    assert "src/nothing.py" in str(exc_info.value)


def test_release_already_resolved_lock(store):
    store.acquire_lock("a.py")
    store.release_lock("a.py")
    with pytest.raises(LockNotFoundError):
        store.release_lock("a.py")


def test_list_locks_by_owner(store):
    store.acquire_lock("a.py", owner="impl-1")
    store.acquire_lock("b.py", owner="impl-2")
    assert [lock["path"] for lock in store.list_locks(owner="impl-2")] == ["b.py"]


# -- notes --


def test_notes_keep_order_and_limit_returns_most_recent(store):
    for text in ("first", "second", "third"):
        store.append_note(text, author="planner")
    assert [n["text"] for n in store.list_notes()] == ["first", "second", "third"]
    assert [n["text"] for n in store.list_notes(2)] == ["second", "third"]
    assert len(store.list_notes(0)) == 3


def test_append_note_requires_text(store):
    with pytest.raises(ValueError):
        store.append_note("  ")


# -- project context --


def test_set_project_context_first_insert(store):
    context = store.set_project_context(
        "/work/app",
        description="Todo app",
        end_state="Deployed",
        tech_stack=["python", "sqlite"],
        acceptance_criteria=["tests pass"],
    )
    assert context["status"] == "planning"
    assert context["tech_stack"] == ["python", "sqlite"]
    assert context["constraints"] is None
    assert store.get_project_context("/work/app") == context


def test_set_project_context_requires_description_first_time(store):
    with pytest.raises(ValueError, match="description"):
        store.set_project_context("/work/app", end_state="Deployed")
    assert store.get_project_context("/work/app") is None


def test_set_project_context_partial_update(store):
    store.set_project_context("/work/app", description="Todo app", end_state="Deployed")
    updated = store.set_project_context(
        "/work/app", implementation_plan=["schema", "api"], preferred_implementer="codex"
    )
    assert updated["description"] == "Todo app"
    assert updated["implementation_plan"] == ["schema", "api"]
    assert updated["preferred_implementer"] == "codex"


def test_set_project_context_rejects_unknown_implementer(store):
    with pytest.raises(ValueError):
        store.set_project_context(
            "/work/app", description="d", end_state="e", preferred_implementer="gpt"
        )


def test_update_project_status(store):
    store.set_project_context("/work/app", description="d", end_state="e")
    assert store.update_project_status("/work/app", "in_progress")["status"] == "in_progress"
    with pytest.raises(ValueError):
        store.update_project_status("/work/app", "paused")
    with pytest.raises(NotFoundError):
        store.update_project_status("/work/other", "ready")


def test_list_all_project_contexts(store):
    assert store.list_all_project_contexts() == []
    store.set_project_context("/work/a", description="a", end_state="a")
    store.set_project_context("/work/b", description="b", end_state="b")
    roots = [ctx["project_root"] for ctx in store.list_all_project_contexts()]
    assert roots == ["/work/a", "/work/b"]


# -- implementers --


def test_register_implementer_always_adds_record(store):
    first = store.register_implementer(name="impl-1", type="claude", project_root="/work/app")
    second = store.register_implementer(
        name="impl-1",
        type="claude",
        project_root="/work/app",
        pid=4242,
        isolation="worktree",
        worktree_path="/work/app/.lockstep/worktrees/impl-1",
        branch_name="lockstep/impl-1",
    )
    assert first["id"] != second["id"]
    assert first["status"] == "active"
    assert second["branch_name"] == "lockstep/impl-1"
    assert len(store.list_implementers("/work/app")) == 2


def test_register_implementer_rejects_unknown_type(store):
    with pytest.raises(ValueError):
        store.register_implementer(name="x", type="gemini", project_root="/work/app")


def test_update_implementer(store):
    impl = store.register_implementer(name="impl-1", type="codex", project_root="/work/app")
    updated = store.update_implementer(impl["id"], status="stopped", pid=99)
    assert updated["status"] == "stopped"
    assert updated["pid"] == 99
    assert updated["name"] == "impl-1"
    with pytest.raises(NotFoundError):
        store.update_implementer("missing", status="stopped")


def test_reset_implementers_scoped_to_project(store):
    store.register_implementer(name="a", type="claude", project_root="/work/app")
    store.register_implementer(name="b", type="codex", project_root="/work/app")
    other = store.register_implementer(name="c", type="claude", project_root="/work/other")
    assert store.reset_implementers("/work/app") == 2
    assert store.reset_implementers("/work/app") == 0
    assert {i["status"] for i in store.list_implementers("/work/app")} == {"stopped"}
    assert store.list_implementers("/work/other") == [other]


# -- snapshot and maintenance --


def test_status_and_summary(store):
    store.create_task(title="a")
    store.create_task(title="b", status="review")
    store.acquire_lock("x.py")
    store.append_note("hello")
    snapshot = store.status()
    assert len(snapshot["tasks"]) == 2
    assert len(snapshot["locks"]) == 1
    assert len(snapshot["notes"]) == 1
    summary = store.task_summary()
    assert summary["todo"] == 1
    assert summary["review"] == 1
    assert summary["done"] == 0
    assert summary["total"] == 2


def test_reset_session_clears_state(store):
    store.create_task(title="a")
    store.acquire_lock("x.py")
    store.append_note("hello")
    store.register_implementer(name="impl-1", type="claude", project_root="/work/app")
    store.set_project_context("/work/app", description="d", end_state="e")

    result = store.reset_session("/work/app")
    assert result["tasks_cleared"] == 1
    assert result["locks_cleared"] == 1
    assert result["notes_cleared"] == 1
    assert result["implementers_reset"] == 1
    assert store.status() == {"tasks": [], "locks": [], "notes": []}
    assert store.get_project_context("/work/app") is None


def test_reset_session_can_keep_project_context(store):
    store.set_project_context("/work/app", description="d", end_state="e", status="in_progress")
    store.reset_session("/work/app", keep_project_context=True)
    context = store.get_project_context("/work/app")
    assert context is not None
    assert context["status"] == "planning"
    assert context["description"] == "d"


def test_mutations_are_journaled(store):
    task = store.create_task(title="a")
    store.claim_task(task["id"], "impl-1")
    store.acquire_lock("x.py", owner="impl-1")
    store.release_lock("x.py", owner="impl-1")
    store.append_note("done")
    store.append_log_entry("custom_event", {"detail": 1})
    assert _event_names(store) == [
        "task_create",
        "task_claim",
        "lock_acquire",
        "lock_release",
        "note_append",
        "custom_event",
    ]


def test_failed_mutation_is_not_journaled(store):
    store.acquire_lock("x.py", owner="impl-1")
    with pytest.raises(CoordinationError):
        store.acquire_lock("x.py", owner="impl-2")
    assert _event_names(store) == ["lock_acquire"]
