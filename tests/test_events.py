"""Event log records are stable, append-only JSON lines."""

from __future__ import annotations

import json
from pathlib import Path

from jsonschema import Draft202012Validator

from lockstep.events import EventLog

KNOWN_EVENTS = [
    "task_create",
    "task_update",
    "task_claim",
    "task_submit_for_review",
    "task_approve",
    "task_request_changes",
    "lock_acquire",
    "lock_release",
    "note_append",
    "project_context_set",
    "project_status_update",
    "implementer_register",
    "implementer_update",
    "implementer_reset",
    "discussion_create",
    "discussion_reply",
    "discussion_resolve",
    "discussion_archive",
    "discussion_archive_old",
    "discussion_delete_archived",
    "session_reset",
]

EVENT_SCHEMA = {
    "type": "object",
    "required": ["ts", "event"],
    "properties": {
        "ts": {
            "type": "string",
            "pattern": r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z$",
        },
        "event": {"enum": KNOWN_EVENTS},
    },
}


def _validator() -> Draft202012Validator:
    Draft202012Validator.check_schema(EVENT_SCHEMA)
    return Draft202012Validator(EVENT_SCHEMA)


def test_append_writes_one_line_per_event(tmp_path: Path):
    log = EventLog(tmp_path / "logs")
    log.append("note_append", {"note": {"id": "n1", "text": "hi"}})
    log.append("lock_release", {"lock": {"path": "a.py"}})
    lines = log.path.read_text().splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["event"] == "note_append"
    assert first["note"] == {"id": "n1", "text": "hi"}
    assert list(first)[:2] == ["ts", "event"]


def test_append_never_rewrites(tmp_path: Path):
    log = EventLog(tmp_path)
    log.append("note_append")
    before = log.path.read_text()
    log.append("note_append")
    assert log.path.read_text().startswith(before)


def test_read_skips_malformed_lines(tmp_path: Path, caplog):
    log = EventLog(tmp_path)
    log.append("task_create", {"task": {"id": "t1"}})
    with log.path.open("a") as handle:
        handle.write("{truncated\n\n")
    log.append("task_update", {"task": {"id": "t1"}})
    with caplog.at_level("WARNING"):
        events = [record["event"] for record in log.read()]
    assert events == ["task_create", "task_update"]
    assert "malformed" in caplog.text


def test_read_missing_log(tmp_path: Path):
    assert list(EventLog(tmp_path / "nowhere").read()) == []


def test_store_records_match_schema(store):
    validator = _validator()
    task = store.create_task(title="Fix login bug")
    store.update_task(task["id"], description="null check")
    store.claim_task(task["id"], "impl-1")
    store.acquire_lock("src/app.go", owner="impl-1")
    store.release_lock("src/app.go", owner="impl-1")
    store.append_note("hello")
    store.set_project_context("/work/app", description="d", end_state="e")
    store.update_project_status("/work/app", "ready")
    impl = store.register_implementer(name="impl-1", type="claude", project_root="/work/app")
    store.update_implementer(impl["id"], pid=1234)
    store.reset_implementers("/work/app")
    store.update_task(task["id"], status="done")
    store.reset_session("/work/app")

    records = list(store.events.read())
    assert len(records) == 14
    for record in records:
        errors = list(validator.iter_errors(record))
        assert errors == [], f"{record['event']}: {[e.message for e in errors]}"


def test_discussion_records_match_schema(sqlite_store):
    validator = _validator()
    discussion, _ = sqlite_store.create_discussion(
        topic="t", message="m", created_by="impl-1", project_root="/work/app"
    )
    sqlite_store.reply_to_discussion(discussion["id"], author="planner", message="r")
    sqlite_store.resolve_discussion(
        discussion["id"], decision="d", reasoning="r", decided_by="planner"
    )
    sqlite_store.archive_old_discussions()
    sqlite_store.archive_discussion(discussion["id"])
    sqlite_store.delete_archived_discussions()
    task = sqlite_store.create_task(title="x")
    sqlite_store.claim_task(task["id"], "impl-1")
    sqlite_store.submit_task_for_review(task["id"], "impl-1", "done")
    sqlite_store.request_task_changes(task["id"], "again")
    sqlite_store.submit_task_for_review(task["id"], "impl-1", "done")
    sqlite_store.approve_task(task["id"])

    records = list(sqlite_store.events.read())
    for record in records:
        assert list(validator.iter_errors(record)) == []
    assert {record["event"] for record in records} >= {
        "discussion_create",
        "discussion_reply",
        "discussion_resolve",
        "discussion_archive_old",
        "discussion_archive",
        "discussion_delete_archived",
        "task_submit_for_review",
        "task_request_changes",
        "task_approve",
    }
