"""File-backed coordination store.

All tasks, locks and notes live in one ``state.json`` document; project
contexts and implementers have their own documents. Every mutation is a
read-modify-write done while holding a marker file created with
``O_CREAT | O_EXCL``, which works as an advisory lock across processes
sharing the data directory. Events are journaled only after the document
has been written.

Discussions and the review workflow need the SQLite backend.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import time
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any, cast

from jsonschema import Draft202012Validator

from lockstep.errors import (
    BackendUnsupportedError,
    LockConflictError,
    LockNotFoundError,
    LockTimeoutError,
    NotFoundError,
    OwnershipMismatchError,
    StateCorruptError,
)
from lockstep.events import EventLog
from lockstep.models import (
    ALL_TASKS_COMPLETE_NOTE,
    DEFAULT_ISOLATION,
    DEFAULT_TASK_COMPLEXITY,
    SYSTEM_AUTHOR,
    TASK_ACTIVE_STATUSES,
    VALID_IMPLEMENTER_STATUSES,
    VALID_IMPLEMENTER_TYPES,
    VALID_ISOLATION_MODES,
    VALID_LOCK_STATUSES,
    VALID_PROJECT_STATUSES,
    VALID_TASK_COMPLEXITIES,
    VALID_TASK_STATUSES,
    Discussion,
    DiscussionMessage,
    Implementer,
    Lock,
    Note,
    ProjectContext,
    SessionResetResult,
    State,
    Task,
    new_id,
    utcnow,
)
from lockstep.store import (
    DEFAULT_ARCHIVE_AFTER_DAYS,
    DEFAULT_DELETE_AFTER_DAYS,
    normalize_metadata,
    normalize_tags,
    require_text,
    validate_choice,
)

log = logging.getLogger(__name__)

BACKEND_NAME = "json"

STATE_LOCK_TIMEOUT = 5.0
STATE_LOCK_RETRY_INTERVAL = 0.05

STATE_FILENAME = "state.json"
CONTEXTS_FILENAME = "project_contexts.json"
IMPLEMENTERS_FILENAME = "implementers.json"

_STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "tasks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "title", "status"],
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "status": {"enum": sorted(VALID_TASK_STATUSES)},
                    "tags": {"type": ["array", "null"], "items": {"type": "string"}},
                    "metadata": {"type": ["object", "null"]},
                },
            },
        },
        "locks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["path", "status"],
                "properties": {
                    "path": {"type": "string"},
                    "status": {"enum": sorted(VALID_LOCK_STATUSES)},
                },
            },
        },
        "notes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "text"],
                "properties": {"id": {"type": "string"}, "text": {"type": "string"}},
            },
        },
    },
}
_STATE_VALIDATOR = Draft202012Validator(_STATE_SCHEMA)


@contextlib.contextmanager
def state_lock(
    marker: Path,
    *,
    timeout: float = STATE_LOCK_TIMEOUT,
    retry_interval: float = STATE_LOCK_RETRY_INTERVAL,
) -> Iterator[None]:
    """Hold ``marker`` as a cross-process mutex for the duration of the block.

    Creation of the marker is the atomic test-and-set. Raises
    ``LockTimeoutError`` if the marker still exists after ``timeout`` seconds.
    The marker is always removed on exit, including on exceptions.
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise LockTimeoutError(str(marker), timeout) from None
            time.sleep(retry_interval)
            continue
        try:
            os.write(fd, f"{os.getpid()}\n".encode())
        finally:
            os.close(fd)
        break

    try:
        yield
    finally:
        with contextlib.suppress(FileNotFoundError):
            marker.unlink()


def _write_json_atomic(path: Path, data: object) -> None:
    """Write to a sibling temp file, then rename over the target."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def _read_json(path: Path, default: object) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateCorruptError(str(path), str(exc)) from None


def _task_from_doc(raw: Mapping[str, Any]) -> Task:
    """Fill fields missing from documents written by older versions."""
    return cast(
        Task,
        {
            "id": raw["id"],
            "title": raw["title"],
            "description": raw.get("description"),
            "status": raw["status"],
            "complexity": raw.get("complexity") or DEFAULT_TASK_COMPLEXITY,
            "isolation": raw.get("isolation") or DEFAULT_ISOLATION,
            "owner": raw.get("owner"),
            "tags": list(raw.get("tags") or []),
            "metadata": dict(raw.get("metadata") or {}),
            "review_notes": raw.get("review_notes"),
            "review_feedback": raw.get("review_feedback"),
            "review_requested_at": raw.get("review_requested_at"),
            "created_at": raw.get("created_at") or "",
            "updated_at": raw.get("updated_at") or "",
        },
    )


def _lock_from_doc(raw: Mapping[str, Any]) -> Lock:
    return cast(
        Lock,
        {
            "path": raw["path"],
            "owner": raw.get("owner"),
            "note": raw.get("note"),
            "status": raw["status"],
            "created_at": raw.get("created_at") or "",
            "updated_at": raw.get("updated_at") or "",
        },
    )


def _note_from_doc(raw: Mapping[str, Any]) -> Note:
    return cast(
        Note,
        {
            "id": raw["id"],
            "text": raw["text"],
            "author": raw.get("author"),
            "created_at": raw.get("created_at") or "",
        },
    )


class JsonStore:
    """Coordination store persisted as JSON documents under ``data_dir``."""

    def __init__(
        self,
        data_dir: Path,
        log_dir: Path,
        *,
        lock_timeout: float = STATE_LOCK_TIMEOUT,
        lock_retry_interval: float = STATE_LOCK_RETRY_INTERVAL,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.events = EventLog(log_dir)
        self.lock_timeout = lock_timeout
        self.lock_retry_interval = lock_retry_interval
        self.state_path = self.data_dir / STATE_FILENAME
        self.contexts_path = self.data_dir / CONTEXTS_FILENAME
        self.implementers_path = self.data_dir / IMPLEMENTERS_FILENAME

    def init(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.events.ensure_dir()

    def close(self) -> None:
        """Nothing to release; documents are opened per operation."""

    # -- document plumbing --

    def _marker(self, document: Path) -> Path:
        return document.with_name(document.stem + ".lock")

    @contextlib.contextmanager
    def _locked(self, document: Path) -> Iterator[None]:
        with state_lock(
            self._marker(document),
            timeout=self.lock_timeout,
            retry_interval=self.lock_retry_interval,
        ):
            yield

    def _load_state(self) -> State:
        raw = _read_json(self.state_path, {})
        if not isinstance(raw, dict):
            raise StateCorruptError(str(self.state_path), "top level must be an object")
        errors = sorted(_STATE_VALIDATOR.iter_errors(raw), key=lambda e: list(e.path))
        if errors:
            first = errors[0]
            location = "/".join(str(part) for part in first.path) or "<root>"
            raise StateCorruptError(str(self.state_path), f"{location}: {first.message}")
        return {
            "tasks": [_task_from_doc(item) for item in raw.get("tasks", [])],
            "locks": [_lock_from_doc(item) for item in raw.get("locks", [])],
            "notes": [_note_from_doc(item) for item in raw.get("notes", [])],
        }

    @contextlib.contextmanager
    def _mutate_state(self) -> Iterator[State]:
        """Read the state under the mutex and write it back if the block succeeds."""
        with self._locked(self.state_path):
            state = self._load_state()
            yield state
            _write_json_atomic(self.state_path, state)

    def _load_contexts(self) -> dict[str, ProjectContext]:
        raw = _read_json(self.contexts_path, {})
        if not isinstance(raw, dict):
            raise StateCorruptError(str(self.contexts_path), "top level must be an object")
        return cast(dict[str, ProjectContext], raw)

    @contextlib.contextmanager
    def _mutate_contexts(self) -> Iterator[dict[str, ProjectContext]]:
        with self._locked(self.contexts_path):
            contexts = self._load_contexts()
            yield contexts
            _write_json_atomic(self.contexts_path, contexts)

    def _load_implementers(self) -> list[Implementer]:
        raw = _read_json(self.implementers_path, [])
        if not isinstance(raw, list):
            raise StateCorruptError(str(self.implementers_path), "top level must be an array")
        return cast(list[Implementer], raw)

    @contextlib.contextmanager
    def _mutate_implementers(self) -> Iterator[list[Implementer]]:
        with self._locked(self.implementers_path):
            implementers = self._load_implementers()
            yield implementers
            _write_json_atomic(self.implementers_path, implementers)

    # -- snapshot --

    def status(self) -> State:
        return self._load_state()

    def task_summary(self) -> dict[str, int]:
        tasks = self._load_state()["tasks"]
        summary = {status: 0 for status in sorted(VALID_TASK_STATUSES)}
        for task in tasks:
            summary[task["status"]] = summary.get(task["status"], 0) + 1
        summary["total"] = len(tasks)
        return summary

    # -- tasks --

    @staticmethod
    def _find_task(state: State, task_id: str) -> Task:
        for task in state["tasks"]:
            if task["id"] == task_id:
                return task
        raise NotFoundError("task", task_id)

    @staticmethod
    def _note_if_all_complete(state: State) -> Note | None:
        if any(task["status"] in TASK_ACTIVE_STATUSES for task in state["tasks"]):
            return None
        note: Note = {
            "id": new_id(),
            "text": ALL_TASKS_COMPLETE_NOTE,
            "author": SYSTEM_AUTHOR,
            "created_at": utcnow(),
        }
        state["notes"].append(note)
        return note

    def create_task(
        self,
        *,
        title: str,
        description: str | None = None,
        status: str | None = None,
        complexity: str | None = None,
        isolation: str | None = None,
        owner: str | None = None,
        tags: Iterable[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Task:
        require_text("title", title)
        status = validate_choice("task status", status or "todo", VALID_TASK_STATUSES)
        complexity = validate_choice(
            "complexity", complexity or DEFAULT_TASK_COMPLEXITY, VALID_TASK_COMPLEXITIES
        )
        isolation = validate_choice("isolation", isolation or DEFAULT_ISOLATION, VALID_ISOLATION_MODES)
        now = utcnow()
        task: Task = {
            "id": new_id(),
            "title": title,
            "description": description,
            "status": status,
            "complexity": complexity,
            "isolation": isolation,
            "owner": owner,
            "tags": normalize_tags(tags),
            "metadata": normalize_metadata(metadata),
            "review_notes": None,
            "review_feedback": None,
            "review_requested_at": None,
            "created_at": now,
            "updated_at": now,
        }
        with self._mutate_state() as state:
            state["tasks"].append(task)
        self.events.append("task_create", {"task": task})
        return task

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: str | None = None,
        complexity: str | None = None,
        owner: str | None = None,
        tags: Iterable[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Task:
        if title is not None:
            require_text("title", title)
        if status is not None:
            validate_choice("task status", status, VALID_TASK_STATUSES)
        if complexity is not None:
            validate_choice("complexity", complexity, VALID_TASK_COMPLEXITIES)
        new_tags = normalize_tags(tags) if tags is not None else None
        new_metadata = normalize_metadata(metadata) if metadata is not None else None

        with self._mutate_state() as state:
            task = self._find_task(state, task_id)
            previous_status = task["status"]
            if title is not None:
                task["title"] = title
            if description is not None:
                task["description"] = description
            if status is not None:
                task["status"] = status
            if complexity is not None:
                task["complexity"] = complexity
            if owner is not None:
                task["owner"] = owner
            if new_tags is not None:
                task["tags"] = new_tags
            if new_metadata is not None:
                task["metadata"] = new_metadata
            task["updated_at"] = utcnow()
            note: Note | None = None
            if status == "done" and previous_status != "done":
                note = self._note_if_all_complete(state)
        self.events.append("task_update", {"task": task})
        if note:
            self.events.append("note_append", {"note": note})
        return dict(task)  # type: ignore[return-value]

    def claim_task(self, task_id: str, owner: str) -> Task:
        require_text("owner", owner)
        with self._mutate_state() as state:
            task = self._find_task(state, task_id)
            task["owner"] = owner
            task["status"] = "in_progress"
            task["updated_at"] = utcnow()
        self.events.append("task_claim", {"task": task})
        log.debug("Task %s claimed by %s", task_id, owner)
        return dict(task)  # type: ignore[return-value]

    def submit_task_for_review(self, task_id: str, owner: str, review_notes: str) -> Task:
        raise BackendUnsupportedError("submit_task_for_review", BACKEND_NAME)

    def approve_task(self, task_id: str, feedback: str | None = None) -> Task:
        raise BackendUnsupportedError("approve_task", BACKEND_NAME)

    def request_task_changes(self, task_id: str, feedback: str) -> Task:
        raise BackendUnsupportedError("request_task_changes", BACKEND_NAME)

    def list_tasks(
        self,
        *,
        status: str | None = None,
        owner: str | None = None,
        tag: str | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        tasks = self._load_state()["tasks"]
        if status:
            tasks = [task for task in tasks if task["status"] == status]
        if owner:
            tasks = [task for task in tasks if task["owner"] == owner]
        if tag:
            tasks = [task for task in tasks if tag in task["tags"]]
        if limit and limit > 0:
            tasks = tasks[:limit]
        return tasks

    # -- locks --

    def acquire_lock(
        self, path: str, *, owner: str | None = None, note: str | None = None
    ) -> Lock:
        require_text("path", path)
        with self._mutate_state() as state:
            for existing in state["locks"]:
                if existing["path"] == path and existing["status"] == "active":
                    log.warning("Lock conflict on %s (held by %s)", path, existing["owner"])
                    raise LockConflictError(path, holder=existing["owner"])
            now = utcnow()
            lock: Lock = {
                "path": path,
                "owner": owner,
                "note": note,
                "status": "active",
                "created_at": now,
                "updated_at": now,
            }
            state["locks"].append(lock)
        self.events.append("lock_acquire", {"lock": lock})
        return lock

    def release_lock(self, path: str, *, owner: str | None = None) -> Lock:
        require_text("path", path)
        with self._mutate_state() as state:
            lock = next(
                (
                    item
                    for item in state["locks"]
                    if item["path"] == path and item["status"] == "active"
                ),
                None,
            )
            if lock is None:
                raise LockNotFoundError(path)
            if owner and lock["owner"] and owner != lock["owner"]:
                raise OwnershipMismatchError("lock", path, owner=lock["owner"], actor=owner)
            lock["status"] = "resolved"
            lock["updated_at"] = utcnow()
        self.events.append("lock_release", {"lock": lock})
        return dict(lock)  # type: ignore[return-value]

    def list_locks(self, *, status: str | None = None, owner: str | None = None) -> list[Lock]:
        locks = self._load_state()["locks"]
        if status:
            locks = [lock for lock in locks if lock["status"] == status]
        if owner:
            locks = [lock for lock in locks if lock["owner"] == owner]
        return locks

    # -- notes --

    def append_note(self, text: str, *, author: str | None = None) -> Note:
        require_text("text", text)
        note: Note = {"id": new_id(), "text": text, "author": author, "created_at": utcnow()}
        with self._mutate_state() as state:
            state["notes"].append(note)
        self.events.append("note_append", {"note": note})
        return note

    def list_notes(self, limit: int | None = None) -> list[Note]:
        notes = self._load_state()["notes"]
        if not limit or limit <= 0:
            return notes
        return notes[-limit:]

    # -- project context --

    def set_project_context(
        self,
        project_root: str,
        *,
        description: str | None = None,
        end_state: str | None = None,
        tech_stack: list[str] | None = None,
        constraints: list[str] | None = None,
        acceptance_criteria: list[str] | None = None,
        tests: list[str] | None = None,
        implementation_plan: list[str] | None = None,
        preferred_implementer: str | None = None,
        status: str | None = None,
    ) -> ProjectContext:
        require_text("project_root", project_root)
        if preferred_implementer is not None:
            validate_choice("preferred_implementer", preferred_implementer, VALID_IMPLEMENTER_TYPES)
        if status is not None:
            validate_choice("project status", status, VALID_PROJECT_STATUSES)
        supplied = {
            "description": description,
            "end_state": end_state,
            "tech_stack": tech_stack,
            "constraints": constraints,
            "acceptance_criteria": acceptance_criteria,
            "tests": tests,
            "implementation_plan": implementation_plan,
            "preferred_implementer": preferred_implementer,
            "status": status,
        }
        with self._mutate_contexts() as contexts:
            now = utcnow()
            existing = contexts.get(project_root)
            if existing is None:
                require_text("description", description)
                require_text("end_state", end_state)
                context: ProjectContext = {
                    "project_root": project_root,
                    "description": cast(str, description),
                    "end_state": cast(str, end_state),
                    "tech_stack": tech_stack,
                    "constraints": constraints,
                    "acceptance_criteria": acceptance_criteria,
                    "tests": tests,
                    "implementation_plan": implementation_plan,
                    "preferred_implementer": preferred_implementer,
                    "status": status or "planning",
                    "created_at": now,
                    "updated_at": now,
                }
            else:
                context = existing
                for key, value in supplied.items():
                    if value is not None:
                        context[key] = value  # type: ignore[literal-required]
                context["updated_at"] = now
            contexts[project_root] = context
        self.events.append("project_context_set", {"context": context})
        return context

    def get_project_context(self, project_root: str) -> ProjectContext | None:
        return self._load_contexts().get(project_root)

    def list_all_project_contexts(self) -> list[ProjectContext]:
        return sorted(self._load_contexts().values(), key=lambda ctx: ctx["created_at"])

    def update_project_status(self, project_root: str, status: str) -> ProjectContext:
        validate_choice("project status", status, VALID_PROJECT_STATUSES)
        with self._mutate_contexts() as contexts:
            context = contexts.get(project_root)
            if context is None:
                raise NotFoundError("project context", project_root)
            context["status"] = status
            context["updated_at"] = utcnow()
        self.events.append("project_status_update", {"context": context})
        return context

    # -- implementers --

    def register_implementer(
        self,
        *,
        name: str,
        type: str,
        project_root: str,
        pid: int | None = None,
        isolation: str | None = None,
        worktree_path: str | None = None,
        branch_name: str | None = None,
    ) -> Implementer:
        require_text("name", name)
        require_text("project_root", project_root)
        validate_choice("implementer type", type, VALID_IMPLEMENTER_TYPES)
        isolation = validate_choice("isolation", isolation or DEFAULT_ISOLATION, VALID_ISOLATION_MODES)
        now = utcnow()
        implementer: Implementer = {
            "id": new_id(),
            "name": name,
            "type": type,
            "project_root": project_root,
            "status": "active",
            "pid": pid,
            "isolation": isolation,
            "worktree_path": worktree_path,
            "branch_name": branch_name,
            "created_at": now,
            "updated_at": now,
        }
        with self._mutate_implementers() as implementers:
            implementers.append(implementer)
        self.events.append("implementer_register", {"implementer": implementer})
        return implementer

    def update_implementer(
        self, implementer_id: str, *, status: str | None = None, pid: int | None = None
    ) -> Implementer:
        if status is not None:
            validate_choice("implementer status", status, VALID_IMPLEMENTER_STATUSES)
        with self._mutate_implementers() as implementers:
            implementer = next((i for i in implementers if i["id"] == implementer_id), None)
            if implementer is None:
                raise NotFoundError("implementer", implementer_id)
            if status is not None:
                implementer["status"] = status
            if pid is not None:
                implementer["pid"] = pid
            implementer["updated_at"] = utcnow()
        self.events.append("implementer_update", {"implementer": implementer})
        return implementer

    def list_implementers(self, project_root: str | None = None) -> list[Implementer]:
        implementers = self._load_implementers()
        if project_root:
            implementers = [i for i in implementers if i["project_root"] == project_root]
        return implementers

    def reset_implementers(self, project_root: str) -> int:
        with self._mutate_implementers() as implementers:
            count = self._stop_implementers(implementers, project_root)
        self.events.append("implementer_reset", {"project_root": project_root, "count": count})
        return count

    @staticmethod
    def _stop_implementers(implementers: list[Implementer], project_root: str) -> int:
        now = utcnow()
        count = 0
        for implementer in implementers:
            if implementer["project_root"] == project_root and implementer["status"] == "active":
                implementer["status"] = "stopped"
                implementer["updated_at"] = now
                count += 1
        return count

    # -- discussions --

    def create_discussion(self, **kwargs: Any) -> tuple[Discussion, DiscussionMessage]:
        raise BackendUnsupportedError("create_discussion", BACKEND_NAME)

    def reply_to_discussion(
        self, discussion_id: str, **kwargs: Any
    ) -> tuple[Discussion, DiscussionMessage]:
        raise BackendUnsupportedError("reply_to_discussion", BACKEND_NAME)

    def resolve_discussion(self, discussion_id: str, **kwargs: Any) -> Discussion:
        raise BackendUnsupportedError("resolve_discussion", BACKEND_NAME)

    def get_discussion(
        self, discussion_id: str
    ) -> tuple[Discussion, list[DiscussionMessage]] | None:
        raise BackendUnsupportedError("get_discussion", BACKEND_NAME)

    def list_discussions(self, **kwargs: Any) -> list[Discussion]:
        raise BackendUnsupportedError("list_discussions", BACKEND_NAME)

    def archive_discussion(self, discussion_id: str) -> Discussion:
        raise BackendUnsupportedError("archive_discussion", BACKEND_NAME)

    def archive_old_discussions(
        self, *, older_than_days: float = DEFAULT_ARCHIVE_AFTER_DAYS, project_root: str | None = None
    ) -> int:
        raise BackendUnsupportedError("archive_old_discussions", BACKEND_NAME)

    def delete_archived_discussions(
        self, *, older_than_days: float = DEFAULT_DELETE_AFTER_DAYS, project_root: str | None = None
    ) -> int:
        raise BackendUnsupportedError("delete_archived_discussions", BACKEND_NAME)

    # -- maintenance --

    def reset_session(
        self, project_root: str, *, keep_project_context: bool = False
    ) -> SessionResetResult:
        """Clear tasks, locks and notes and stop the project's implementers.

        Each document is reset under its own marker; the three documents are
        not updated as one atomic unit.
        """
        require_text("project_root", project_root)
        with self._mutate_state() as state:
            result: SessionResetResult = {
                "tasks_cleared": len(state["tasks"]),
                "locks_cleared": len(state["locks"]),
                "notes_cleared": len(state["notes"]),
                "implementers_reset": 0,
                "discussions_archived": 0,
            }
            state["tasks"].clear()
            state["locks"].clear()
            state["notes"].clear()
        with self._mutate_implementers() as implementers:
            result["implementers_reset"] = self._stop_implementers(implementers, project_root)
        with self._mutate_contexts() as contexts:
            context = contexts.get(project_root)
            if context is not None:
                if keep_project_context:
                    context["status"] = "planning"
                    context["updated_at"] = utcnow()
                else:
                    del contexts[project_root]
        self.events.append("session_reset", {"project_root": project_root, **result})
        return result

    def append_log_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        require_text("event", event)
        self.events.append(event, payload)
