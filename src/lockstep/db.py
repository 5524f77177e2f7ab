"""SQLite coordination store."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, cast

from lockstep.errors import (
    InvalidTransitionError,
    LockConflictError,
    LockNotFoundError,
    NotFoundError,
    OwnershipMismatchError,
    ReplyToClosedDiscussionError,
)
from lockstep.events import EventLog
from lockstep.models import (
    ALL_TASKS_COMPLETE_NOTE,
    DEFAULT_ISOLATION,
    DEFAULT_TASK_COMPLEXITY,
    DISCUSSION_CLOSED_STATUSES,
    DISCUSSION_PRIORITY_RANK,
    SYSTEM_AUTHOR,
    TASK_ACTIVE_STATUSES,
    VALID_DISCUSSION_CATEGORIES,
    VALID_DISCUSSION_PRIORITIES,
    VALID_DISCUSSION_STATUSES,
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
    validate_days,
)

log = logging.getLogger(__name__)

# Bump when adding migrations. 0 = fresh file.
SCHEMA_VERSION = 2

SCHEMA = """\
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'todo',
    complexity TEXT NOT NULL DEFAULT 'medium',
    isolation TEXT NOT NULL DEFAULT 'shared',
    owner TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    review_notes TEXT,
    review_feedback TEXT,
    review_requested_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS locks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    owner TEXT,
    note TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    author TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_contexts (
    project_root TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    end_state TEXT NOT NULL,
    tech_stack TEXT,
    constraints TEXT,
    acceptance_criteria TEXT,
    tests TEXT,
    implementation_plan TEXT,
    preferred_implementer TEXT,
    status TEXT NOT NULL DEFAULT 'planning',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS implementers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    project_root TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    pid INTEGER,
    isolation TEXT NOT NULL DEFAULT 'shared',
    worktree_path TEXT,
    branch_name TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS discussions (
    id TEXT PRIMARY KEY,
    topic TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'other',
    priority TEXT NOT NULL DEFAULT 'medium',
    status TEXT NOT NULL DEFAULT 'open',
    project_root TEXT NOT NULL,
    created_by TEXT NOT NULL,
    waiting_on TEXT,
    decision TEXT,
    decision_reasoning TEXT,
    decided_by TEXT,
    linked_task_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    resolved_at TEXT,
    archived_at TEXT
);

CREATE TABLE IF NOT EXISTS discussion_messages (
    id TEXT PRIMARY KEY,
    discussion_id TEXT NOT NULL REFERENCES discussions(id),
    author TEXT NOT NULL,
    message TEXT NOT NULL,
    recommendation TEXT,
    created_at TEXT NOT NULL
);
"""

_TASK_JSON_COLUMNS = ("tags", "metadata")
_CONTEXT_LIST_COLUMNS = (
    "tech_stack",
    "constraints",
    "acceptance_criteria",
    "tests",
    "implementation_plan",
)

_DISCUSSION_ORDER = (
    "CASE priority "
    + " ".join(f"WHEN '{name}' THEN {rank}" for name, rank in DISCUSSION_PRIORITY_RANK.items())
    + f" ELSE {len(DISCUSSION_PRIORITY_RANK)} END, updated_at DESC, rowid DESC"
)


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Open ``db_path``, creating or migrating the schema as needed.

    The connection runs in autocommit mode; writers wrap their statements in
    ``BEGIN IMMEDIATE`` so the write lock is taken before any read.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout=10000")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        conn.execute("BEGIN IMMEDIATE")
        try:
            # Another process may have migrated while we waited for the lock.
            current_version = conn.execute("PRAGMA user_version").fetchone()[0]
            if current_version < SCHEMA_VERSION:
                _migrate(conn, current_version)
                _create_indexes(conn)
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        log.debug("Schema at %s migrated from v%d to v%d", db_path, current_version, SCHEMA_VERSION)
    return conn


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column in cols:
        return
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")
    except sqlite3.OperationalError as exc:
        if "duplicate column" not in str(exc).lower():
            raise


_LOCK_COLUMNS = ("path", "owner", "note", "status", "created_at", "updated_at")


def _rebuild_legacy_locks(conn: sqlite3.Connection) -> None:
    """Replace a ``locks(path PRIMARY KEY)`` table with the id-keyed layout.

    Rows keep their order; columns the old table lacked take their defaults.
    """
    cols = _table_columns(conn, "locks")
    if "id" in cols:
        return
    copied = [col for col in _LOCK_COLUMNS if col in cols]
    conn.execute(
        "CREATE TABLE locks_new ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, "
        "path TEXT NOT NULL, "
        "owner TEXT, "
        "note TEXT, "
        "status TEXT NOT NULL DEFAULT 'active', "
        "created_at TEXT NOT NULL, "
        "updated_at TEXT NOT NULL)"
    )
    column_list = ", ".join(copied)
    conn.execute(
        f"INSERT INTO locks_new ({column_list}) SELECT {column_list} FROM locks ORDER BY rowid"
    )
    conn.execute("DROP TABLE locks")
    conn.execute("ALTER TABLE locks_new RENAME TO locks")
    log.info("Rebuilt legacy locks table with an integer id")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Pre-v1: task tags and metadata were added after the first release, and
    locks were keyed by path."""
    cols = _table_columns(conn, "tasks")
    _add_column_if_missing(conn, "tasks", "tags", "TEXT NOT NULL DEFAULT '[]'", cols)
    _add_column_if_missing(conn, "tasks", "metadata", "TEXT NOT NULL DEFAULT '{}'", cols)
    _rebuild_legacy_locks(conn)


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """Add the review workflow, complexity and worktree isolation columns."""
    cols = _table_columns(conn, "tasks")
    for col, defn in [
        ("complexity", "TEXT NOT NULL DEFAULT 'medium'"),
        ("isolation", "TEXT NOT NULL DEFAULT 'shared'"),
        ("review_notes", "TEXT"),
        ("review_feedback", "TEXT"),
        ("review_requested_at", "TEXT"),
    ]:
        _add_column_if_missing(conn, "tasks", col, defn, cols)
    cols = _table_columns(conn, "implementers")
    for col, defn in [
        ("isolation", "TEXT NOT NULL DEFAULT 'shared'"),
        ("worktree_path", "TEXT"),
        ("branch_name", "TEXT"),
    ]:
        _add_column_if_missing(conn, "implementers", col, defn, cols)


_MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Each migration checks for existing columns first, so running it against a
    fresh database (where SCHEMA already has every column) is a no-op.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_locks_active_path ON locks(path) "
    "WHERE status = 'active'",
    "CREATE INDEX IF NOT EXISTS idx_implementers_project ON implementers(project_root)",
    "CREATE INDEX IF NOT EXISTS idx_discussions_project_status "
    "ON discussions(project_root, status)",
    "CREATE INDEX IF NOT EXISTS idx_discussion_messages_discussion "
    "ON discussion_messages(discussion_id, created_at)",
)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes. Idempotent; safe inside an open transaction."""
    for statement in _INDEXES:
        conn.execute(statement)


def _decode_json(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    return json.loads(value)


def _encode_list(value: list[str] | None) -> str | None:
    return None if value is None else json.dumps(list(value))


def _task_from_row(row: sqlite3.Row) -> Task:
    task = dict(row)
    task["tags"] = _decode_json(task["tags"], [])
    task["metadata"] = _decode_json(task["metadata"], {})
    return cast(Task, task)


def _lock_from_row(row: sqlite3.Row) -> Lock:
    lock = dict(row)
    lock.pop("id", None)
    return cast(Lock, lock)


def _context_from_row(row: sqlite3.Row) -> ProjectContext:
    context = dict(row)
    for column in _CONTEXT_LIST_COLUMNS:
        context[column] = _decode_json(context[column], None)
    return cast(ProjectContext, context)


def _cutoff(days: float) -> str:
    return (datetime.now(UTC) - timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SqliteStore:
    """Coordination store backed by a single SQLite file.

    One instance owns one connection; open one store per thread or process.
    """

    def __init__(self, db_path: Path, log_dir: Path) -> None:
        self.db_path = Path(db_path)
        self.events = EventLog(log_dir)
        self._conn: sqlite3.Connection | None = None

    def init(self) -> None:
        self.events.ensure_dir()
        if self._conn is None:
            self._conn = get_connection(self.db_path)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.init()
        return cast(sqlite3.Connection, self._conn)

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # -- snapshot --

    def status(self) -> State:
        return {
            "tasks": self.list_tasks(),
            "locks": self.list_locks(),
            "notes": self.list_notes(),
        }

    def task_summary(self) -> dict[str, int]:
        summary = {status: 0 for status in sorted(VALID_TASK_STATUSES)}
        rows = self.conn.execute(
            "SELECT status, COUNT(*) AS n FROM tasks GROUP BY status"
        ).fetchall()
        for row in rows:
            summary[row["status"]] = row["n"]
        summary["total"] = sum(row["n"] for row in rows)
        return summary

    # -- tasks --

    @staticmethod
    def _get_task(conn: sqlite3.Connection, task_id: str) -> Task:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise NotFoundError("task", task_id)
        return _task_from_row(row)

    @staticmethod
    def _note_if_all_complete(conn: sqlite3.Connection) -> Note | None:
        placeholders = ",".join("?" for _ in TASK_ACTIVE_STATUSES)
        remaining = conn.execute(
            f"SELECT COUNT(*) FROM tasks WHERE status IN ({placeholders})",
            TASK_ACTIVE_STATUSES,
        ).fetchone()[0]
        if remaining:
            return None
        note: Note = {
            "id": new_id(),
            "text": ALL_TASKS_COMPLETE_NOTE,
            "author": SYSTEM_AUTHOR,
            "created_at": utcnow(),
        }
        conn.execute(
            "INSERT INTO notes (id, text, author, created_at) VALUES (?, ?, ?, ?)",
            (note["id"], note["text"], note["author"], note["created_at"]),
        )
        log.info("All tasks complete; system note %s appended", note["id"])
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
        task_tags = normalize_tags(tags)
        task_metadata = normalize_metadata(metadata)
        task_id = new_id()
        now = utcnow()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO tasks (id, title, description, status, complexity, isolation, "
                "owner, tags, metadata, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task_id,
                    title,
                    description,
                    status,
                    complexity,
                    isolation,
                    owner,
                    json.dumps(task_tags),
                    json.dumps(task_metadata),
                    now,
                    now,
                ),
            )
            task = self._get_task(conn, task_id)
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
        fields: dict[str, Any] = {
            "title": title,
            "description": description,
            "status": status,
            "complexity": complexity,
            "owner": owner,
            "tags": json.dumps(normalize_tags(tags)) if tags is not None else None,
            "metadata": json.dumps(normalize_metadata(metadata)) if metadata is not None else None,
        }
        updates = {column: value for column, value in fields.items() if value is not None}
        updates["updated_at"] = utcnow()

        note = None
        with self._transaction() as conn:
            previous = self._get_task(conn, task_id)
            assignments = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                (*updates.values(), task_id),
            )
            if status == "done" and previous["status"] != "done":
                note = self._note_if_all_complete(conn)
            task = self._get_task(conn, task_id)
        self.events.append("task_update", {"task": task})
        if note:
            self.events.append("note_append", {"note": note})
        return task

    def claim_task(self, task_id: str, owner: str) -> Task:
        require_text("owner", owner)
        with self._transaction() as conn:
            self._get_task(conn, task_id)
            conn.execute(
                "UPDATE tasks SET owner = ?, status = 'in_progress', updated_at = ? WHERE id = ?",
                (owner, utcnow(), task_id),
            )
            task = self._get_task(conn, task_id)
        log.debug("Task %s claimed by %s", task_id, owner)
        self.events.append("task_claim", {"task": task})
        return task

    def submit_task_for_review(self, task_id: str, owner: str, review_notes: str) -> Task:
        require_text("owner", owner)
        require_text("review_notes", review_notes)
        with self._transaction() as conn:
            current = self._get_task(conn, task_id)
            if current["owner"] != owner:
                raise OwnershipMismatchError("task", task_id, owner=current["owner"], actor=owner)
            now = utcnow()
            conn.execute(
                "UPDATE tasks SET status = 'review', review_notes = ?, review_requested_at = ?, "
                "updated_at = ? WHERE id = ?",
                (review_notes, now, now, task_id),
            )
            task = self._get_task(conn, task_id)
        self.events.append("task_submit_for_review", {"task": task})
        return task

    def approve_task(self, task_id: str, feedback: str | None = None) -> Task:
        with self._transaction() as conn:
            current = self._get_task(conn, task_id)
            if current["status"] != "review":
                raise InvalidTransitionError(
                    "task", task_id, expected="review", actual=current["status"]
                )
            conn.execute(
                "UPDATE tasks SET status = 'done', review_feedback = ?, updated_at = ? "
                "WHERE id = ?",
                (feedback or "Approved", utcnow(), task_id),
            )
            note = self._note_if_all_complete(conn)
            task = self._get_task(conn, task_id)
        self.events.append("task_approve", {"task": task})
        if note:
            self.events.append("note_append", {"note": note})
        return task

    def request_task_changes(self, task_id: str, feedback: str) -> Task:
        require_text("feedback", feedback)
        with self._transaction() as conn:
            current = self._get_task(conn, task_id)
            if current["status"] != "review":
                raise InvalidTransitionError(
                    "task", task_id, expected="review", actual=current["status"]
                )
            conn.execute(
                "UPDATE tasks SET status = 'in_progress', review_feedback = ?, updated_at = ? "
                "WHERE id = ?",
                (feedback, utcnow(), task_id),
            )
            task = self._get_task(conn, task_id)
        self.events.append("task_request_changes", {"task": task})
        return task

    def list_tasks(
        self,
        *,
        status: str | None = None,
        owner: str | None = None,
        tag: str | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        query = "SELECT * FROM tasks"
        conditions: list[str] = []
        params: list[Any] = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if owner:
            conditions.append("owner = ?")
            params.append(owner)
        if tag:
            conditions.append("EXISTS (SELECT 1 FROM json_each(tasks.tags) WHERE value = ?)")
            params.append(tag)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at, rowid"
        if limit and limit > 0:
            query += " LIMIT ?"
            params.append(limit)
        return [_task_from_row(row) for row in self.conn.execute(query, params).fetchall()]

    # -- locks --

    @staticmethod
    def _active_lock_row(conn: sqlite3.Connection, path: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM locks WHERE path = ? AND status = 'active'", (path,)
        ).fetchone()

    def acquire_lock(
        self, path: str, *, owner: str | None = None, note: str | None = None
    ) -> Lock:
        require_text("path", path)
        with self._transaction() as conn:
            existing = self._active_lock_row(conn, path)
            if existing is not None:
                log.warning("Lock conflict on %s (held by %s)", path, existing["owner"])
                raise LockConflictError(path, holder=existing["owner"])
            now = utcnow()
            cursor = conn.execute(
                "INSERT INTO locks (path, owner, note, status, created_at, updated_at) "
                "VALUES (?, ?, ?, 'active', ?, ?)",
                (path, owner, note, now, now),
            )
            row = conn.execute("SELECT * FROM locks WHERE id = ?", (cursor.lastrowid,)).fetchone()
        lock = _lock_from_row(row)
        self.events.append("lock_acquire", {"lock": lock})
        return lock

    def release_lock(self, path: str, *, owner: str | None = None) -> Lock:
        require_text("path", path)
        with self._transaction() as conn:
            existing = self._active_lock_row(conn, path)
            if existing is None:
                raise LockNotFoundError(path)
            if owner and existing["owner"] and owner != existing["owner"]:
                raise OwnershipMismatchError("lock", path, owner=existing["owner"], actor=owner)
            conn.execute(
                "UPDATE locks SET status = 'resolved', updated_at = ? WHERE id = ?",
                (utcnow(), existing["id"]),
            )
            row = conn.execute("SELECT * FROM locks WHERE id = ?", (existing["id"],)).fetchone()
        lock = _lock_from_row(row)
        self.events.append("lock_release", {"lock": lock})
        return lock

    def list_locks(self, *, status: str | None = None, owner: str | None = None) -> list[Lock]:
        if status is not None:
            validate_choice("lock status", status, VALID_LOCK_STATUSES)
        query = "SELECT * FROM locks"
        conditions: list[str] = []
        params: list[str] = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if owner:
            conditions.append("owner = ?")
            params.append(owner)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at, id"
        return [_lock_from_row(row) for row in self.conn.execute(query, params).fetchall()]

    # -- notes --

    def append_note(self, text: str, *, author: str | None = None) -> Note:
        require_text("text", text)
        note: Note = {"id": new_id(), "text": text, "author": author, "created_at": utcnow()}
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO notes (id, text, author, created_at) VALUES (?, ?, ?, ?)",
                (note["id"], note["text"], note["author"], note["created_at"]),
            )
        self.events.append("note_append", {"note": note})
        return note

    def list_notes(self, limit: int | None = None) -> list[Note]:
        if not limit or limit <= 0:
            rows = self.conn.execute("SELECT * FROM notes ORDER BY created_at, rowid").fetchall()
            return [cast(Note, dict(row)) for row in rows]
        rows = self.conn.execute(
            "SELECT * FROM notes ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ).fetchall()
        return [cast(Note, dict(row)) for row in reversed(rows)]

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
        fields: dict[str, Any] = {
            "description": description,
            "end_state": end_state,
            "tech_stack": _encode_list(tech_stack),
            "constraints": _encode_list(constraints),
            "acceptance_criteria": _encode_list(acceptance_criteria),
            "tests": _encode_list(tests),
            "implementation_plan": _encode_list(implementation_plan),
            "preferred_implementer": preferred_implementer,
            "status": status,
        }
        now = utcnow()
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT project_root FROM project_contexts WHERE project_root = ?",
                (project_root,),
            ).fetchone()
            if existing is None:
                require_text("description", description)
                require_text("end_state", end_state)
                fields["status"] = status or "planning"
                columns = ["project_root", *fields, "created_at", "updated_at"]
                conn.execute(
                    f"INSERT INTO project_contexts ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    (project_root, *fields.values(), now, now),
                )
            else:
                updates = {column: value for column, value in fields.items() if value is not None}
                updates["updated_at"] = now
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE project_contexts SET {assignments} WHERE project_root = ?",
                    (*updates.values(), project_root),
                )
            row = conn.execute(
                "SELECT * FROM project_contexts WHERE project_root = ?", (project_root,)
            ).fetchone()
        context = _context_from_row(row)
        self.events.append("project_context_set", {"context": context})
        return context

    def get_project_context(self, project_root: str) -> ProjectContext | None:
        row = self.conn.execute(
            "SELECT * FROM project_contexts WHERE project_root = ?", (project_root,)
        ).fetchone()
        return _context_from_row(row) if row else None

    def list_all_project_contexts(self) -> list[ProjectContext]:
        rows = self.conn.execute(
            "SELECT * FROM project_contexts ORDER BY created_at, rowid"
        ).fetchall()
        return [_context_from_row(row) for row in rows]

    def update_project_status(self, project_root: str, status: str) -> ProjectContext:
        validate_choice("project status", status, VALID_PROJECT_STATUSES)
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE project_contexts SET status = ?, updated_at = ? WHERE project_root = ?",
                (status, utcnow(), project_root),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("project context", project_root)
            row = conn.execute(
                "SELECT * FROM project_contexts WHERE project_root = ?", (project_root,)
            ).fetchone()
        context = _context_from_row(row)
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
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO implementers ({', '.join(implementer)}) "
                f"VALUES ({', '.join('?' for _ in implementer)})",
                tuple(implementer.values()),
            )
        self.events.append("implementer_register", {"implementer": implementer})
        return implementer

    def update_implementer(
        self, implementer_id: str, *, status: str | None = None, pid: int | None = None
    ) -> Implementer:
        if status is not None:
            validate_choice("implementer status", status, VALID_IMPLEMENTER_STATUSES)
        updates: dict[str, Any] = {}
        if status is not None:
            updates["status"] = status
        if pid is not None:
            updates["pid"] = pid
        updates["updated_at"] = utcnow()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE implementers SET {assignments} WHERE id = ?",
                (*updates.values(), implementer_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("implementer", implementer_id)
            row = conn.execute(
                "SELECT * FROM implementers WHERE id = ?", (implementer_id,)
            ).fetchone()
        implementer = cast(Implementer, dict(row))
        self.events.append("implementer_update", {"implementer": implementer})
        return implementer

    def list_implementers(self, project_root: str | None = None) -> list[Implementer]:
        if project_root:
            rows = self.conn.execute(
                "SELECT * FROM implementers WHERE project_root = ? ORDER BY created_at, rowid",
                (project_root,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM implementers ORDER BY created_at, rowid"
            ).fetchall()
        return [cast(Implementer, dict(row)) for row in rows]

    @staticmethod
    def _stop_implementers(conn: sqlite3.Connection, project_root: str) -> int:
        cursor = conn.execute(
            "UPDATE implementers SET status = 'stopped', updated_at = ? "
            "WHERE project_root = ? AND status = 'active'",
            (utcnow(), project_root),
        )
        return cursor.rowcount

    def reset_implementers(self, project_root: str) -> int:
        with self._transaction() as conn:
            count = self._stop_implementers(conn, project_root)
        self.events.append("implementer_reset", {"project_root": project_root, "count": count})
        return count

    # -- discussions --

    @staticmethod
    def _get_discussion_row(conn: sqlite3.Connection, discussion_id: str) -> Discussion:
        row = conn.execute("SELECT * FROM discussions WHERE id = ?", (discussion_id,)).fetchone()
        if row is None:
            raise NotFoundError("discussion", discussion_id)
        return cast(Discussion, dict(row))

    @staticmethod
    def _insert_message(
        conn: sqlite3.Connection,
        discussion_id: str,
        author: str,
        message: str,
        recommendation: str | None,
        created_at: str,
    ) -> DiscussionMessage:
        record: DiscussionMessage = {
            "id": new_id(),
            "discussion_id": discussion_id,
            "author": author,
            "message": message,
            "recommendation": recommendation,
            "created_at": created_at,
        }
        conn.execute(
            "INSERT INTO discussion_messages "
            "(id, discussion_id, author, message, recommendation, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            tuple(record.values()),
        )
        return record

    def create_discussion(
        self,
        *,
        topic: str,
        message: str,
        created_by: str,
        project_root: str,
        category: str = "other",
        priority: str = "medium",
        waiting_on: str | None = None,
    ) -> tuple[Discussion, DiscussionMessage]:
        require_text("topic", topic)
        require_text("message", message)
        require_text("created_by", created_by)
        require_text("project_root", project_root)
        validate_choice("discussion category", category, VALID_DISCUSSION_CATEGORIES)
        validate_choice("discussion priority", priority, VALID_DISCUSSION_PRIORITIES)
        discussion_id = new_id()
        now = utcnow()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO discussions (id, topic, category, priority, status, project_root, "
                "created_by, waiting_on, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    discussion_id,
                    topic,
                    category,
                    priority,
                    "waiting" if waiting_on else "open",
                    project_root,
                    created_by,
                    waiting_on,
                    now,
                    now,
                ),
            )
            first = self._insert_message(conn, discussion_id, created_by, message, None, now)
            discussion = self._get_discussion_row(conn, discussion_id)
        self.events.append("discussion_create", {"discussion": discussion, "message": first})
        return discussion, first

    def reply_to_discussion(
        self,
        discussion_id: str,
        *,
        author: str,
        message: str,
        recommendation: str | None = None,
        waiting_on: str | None = None,
    ) -> tuple[Discussion, DiscussionMessage]:
        require_text("author", author)
        require_text("message", message)
        with self._transaction() as conn:
            current = self._get_discussion_row(conn, discussion_id)
            if current["status"] in DISCUSSION_CLOSED_STATUSES:
                raise ReplyToClosedDiscussionError(discussion_id, current["status"])
            now = utcnow()
            reply = self._insert_message(conn, discussion_id, author, message, recommendation, now)
            conn.execute(
                "UPDATE discussions SET status = ?, waiting_on = ?, updated_at = ? WHERE id = ?",
                ("waiting" if waiting_on else "open", waiting_on, now, discussion_id),
            )
            discussion = self._get_discussion_row(conn, discussion_id)
        self.events.append("discussion_reply", {"discussion": discussion, "message": reply})
        return discussion, reply

    def resolve_discussion(
        self,
        discussion_id: str,
        *,
        decision: str,
        reasoning: str,
        decided_by: str,
        linked_task_id: str | None = None,
    ) -> Discussion:
        require_text("decision", decision)
        require_text("reasoning", reasoning)
        require_text("decided_by", decided_by)
        with self._transaction() as conn:
            self._get_discussion_row(conn, discussion_id)
            now = utcnow()
            conn.execute(
                "UPDATE discussions SET status = 'resolved', decision = ?, "
                "decision_reasoning = ?, decided_by = ?, linked_task_id = ?, "
                "waiting_on = NULL, resolved_at = ?, updated_at = ? WHERE id = ?",
                (decision, reasoning, decided_by, linked_task_id, now, now, discussion_id),
            )
            discussion = self._get_discussion_row(conn, discussion_id)
        self.events.append("discussion_resolve", {"discussion": discussion})
        return discussion

    def get_discussion(
        self, discussion_id: str
    ) -> tuple[Discussion, list[DiscussionMessage]] | None:
        row = self.conn.execute(
            "SELECT * FROM discussions WHERE id = ?", (discussion_id,)
        ).fetchone()
        if row is None:
            return None
        messages = self.conn.execute(
            "SELECT * FROM discussion_messages WHERE discussion_id = ? ORDER BY created_at, rowid",
            (discussion_id,),
        ).fetchall()
        return cast(Discussion, dict(row)), [cast(DiscussionMessage, dict(m)) for m in messages]

    def list_discussions(
        self,
        *,
        status: str | None = None,
        category: str | None = None,
        project_root: str | None = None,
        waiting_on: str | None = None,
        limit: int | None = None,
    ) -> list[Discussion]:
        if status is not None:
            validate_choice("discussion status", status, VALID_DISCUSSION_STATUSES)
        if category is not None:
            validate_choice("discussion category", category, VALID_DISCUSSION_CATEGORIES)
        query = "SELECT * FROM discussions"
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("status", status),
            ("category", category),
            ("project_root", project_root),
            ("waiting_on", waiting_on),
        ):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += f" ORDER BY {_DISCUSSION_ORDER}"
        if limit and limit > 0:
            query += " LIMIT ?"
            params.append(limit)
        return [cast(Discussion, dict(row)) for row in self.conn.execute(query, params).fetchall()]

    def archive_discussion(self, discussion_id: str) -> Discussion:
        with self._transaction() as conn:
            self._get_discussion_row(conn, discussion_id)
            now = utcnow()
            conn.execute(
                "UPDATE discussions SET status = 'archived', archived_at = ?, updated_at = ? "
                "WHERE id = ?",
                (now, now, discussion_id),
            )
            discussion = self._get_discussion_row(conn, discussion_id)
        self.events.append("discussion_archive", {"discussion": discussion})
        return discussion

    def archive_old_discussions(
        self, *, older_than_days: float = DEFAULT_ARCHIVE_AFTER_DAYS, project_root: str | None = None
    ) -> int:
        validate_days("older_than_days", older_than_days)
        cutoff = _cutoff(older_than_days)
        now = utcnow()
        query = (
            "UPDATE discussions SET status = 'archived', archived_at = ?, updated_at = ? "
            "WHERE status = 'resolved' AND resolved_at < ?"
        )
        params: list[Any] = [now, now, cutoff]
        if project_root:
            query += " AND project_root = ?"
            params.append(project_root)
        with self._transaction() as conn:
            count = conn.execute(query, params).rowcount
        log.debug("Archived %d discussions resolved before %s", count, cutoff)
        self.events.append(
            "discussion_archive_old",
            {"count": count, "older_than_days": older_than_days, "project_root": project_root},
        )
        return count

    def delete_archived_discussions(
        self, *, older_than_days: float = DEFAULT_DELETE_AFTER_DAYS, project_root: str | None = None
    ) -> int:
        validate_days("older_than_days", older_than_days)
        cutoff = _cutoff(older_than_days)
        scope = "status = 'archived' AND archived_at < ?"
        params: list[Any] = [cutoff]
        if project_root:
            scope += " AND project_root = ?"
            params.append(project_root)
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM discussion_messages WHERE discussion_id IN "
                f"(SELECT id FROM discussions WHERE {scope})",
                params,
            )
            count = conn.execute(f"DELETE FROM discussions WHERE {scope}", params).rowcount
        log.debug("Deleted %d discussions archived before %s", count, cutoff)
        self.events.append(
            "discussion_delete_archived",
            {"count": count, "older_than_days": older_than_days, "project_root": project_root},
        )
        return count

    # -- maintenance --

    def reset_session(
        self, project_root: str, *, keep_project_context: bool = False
    ) -> SessionResetResult:
        """Start a fresh session for ``project_root`` in one transaction."""
        require_text("project_root", project_root)
        now = utcnow()
        with self._transaction() as conn:
            result: SessionResetResult = {
                "tasks_cleared": conn.execute("DELETE FROM tasks").rowcount,
                "locks_cleared": conn.execute("DELETE FROM locks").rowcount,
                "notes_cleared": conn.execute("DELETE FROM notes").rowcount,
                "implementers_reset": self._stop_implementers(conn, project_root),
                "discussions_archived": conn.execute(
                    "UPDATE discussions SET status = 'archived', archived_at = ?, updated_at = ? "
                    "WHERE project_root = ? AND status != 'archived'",
                    (now, now, project_root),
                ).rowcount,
            }
            if keep_project_context:
                conn.execute(
                    "UPDATE project_contexts SET status = 'planning', updated_at = ? "
                    "WHERE project_root = ?",
                    (now, project_root),
                )
            else:
                conn.execute(
                    "DELETE FROM project_contexts WHERE project_root = ?", (project_root,)
                )
        self.events.append("session_reset", {"project_root": project_root, **result})
        return result

    def append_log_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        require_text("event", event)
        self.events.append(event, payload)
