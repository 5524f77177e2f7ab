"""Coordination store contract.

``Store`` is the seam between callers (gateway, CLI, tests) and the two
persistence backends. Callers depend only on this protocol; the backend is
picked once from configuration by :func:`create_store`.

Validation helpers shared by both backends live here too, so a bad input is
rejected with the same ``ValueError`` message regardless of backend.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

from lockstep.models import (
    Discussion,
    DiscussionMessage,
    Implementer,
    Lock,
    Note,
    ProjectContext,
    SessionResetResult,
    State,
    Task,
)

if TYPE_CHECKING:
    from lockstep.config import Config

DEFAULT_ARCHIVE_AFTER_DAYS = 7
DEFAULT_DELETE_AFTER_DAYS = 30


class Store(Protocol):
    def init(self) -> None: ...

    def close(self) -> None: ...

    def status(self) -> State: ...

    def task_summary(self) -> dict[str, int]: ...

    # -- tasks --

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
    ) -> Task: ...

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
    ) -> Task: ...

    def claim_task(self, task_id: str, owner: str) -> Task: ...

    def submit_task_for_review(self, task_id: str, owner: str, review_notes: str) -> Task: ...

    def approve_task(self, task_id: str, feedback: str | None = None) -> Task: ...

    def request_task_changes(self, task_id: str, feedback: str) -> Task: ...

    def list_tasks(
        self,
        *,
        status: str | None = None,
        owner: str | None = None,
        tag: str | None = None,
        limit: int | None = None,
    ) -> list[Task]: ...

    # -- locks --

    def acquire_lock(
        self, path: str, *, owner: str | None = None, note: str | None = None
    ) -> Lock: ...

    def release_lock(self, path: str, *, owner: str | None = None) -> Lock: ...

    def list_locks(
        self, *, status: str | None = None, owner: str | None = None
    ) -> list[Lock]: ...

    # -- notes --

    def append_note(self, text: str, *, author: str | None = None) -> Note: ...

    def list_notes(self, limit: int | None = None) -> list[Note]: ...

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
    ) -> ProjectContext: ...

    def get_project_context(self, project_root: str) -> ProjectContext | None: ...

    def list_all_project_contexts(self) -> list[ProjectContext]: ...

    def update_project_status(self, project_root: str, status: str) -> ProjectContext: ...

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
    ) -> Implementer: ...

    def update_implementer(
        self, implementer_id: str, *, status: str | None = None, pid: int | None = None
    ) -> Implementer: ...

    def list_implementers(self, project_root: str | None = None) -> list[Implementer]: ...

    def reset_implementers(self, project_root: str) -> int: ...

    # -- discussions --

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
    ) -> tuple[Discussion, DiscussionMessage]: ...

    def reply_to_discussion(
        self,
        discussion_id: str,
        *,
        author: str,
        message: str,
        recommendation: str | None = None,
        waiting_on: str | None = None,
    ) -> tuple[Discussion, DiscussionMessage]: ...

    def resolve_discussion(
        self,
        discussion_id: str,
        *,
        decision: str,
        reasoning: str,
        decided_by: str,
        linked_task_id: str | None = None,
    ) -> Discussion: ...

    def get_discussion(
        self, discussion_id: str
    ) -> tuple[Discussion, list[DiscussionMessage]] | None: ...

    def list_discussions(
        self,
        *,
        status: str | None = None,
        category: str | None = None,
        project_root: str | None = None,
        waiting_on: str | None = None,
        limit: int | None = None,
    ) -> list[Discussion]: ...

    def archive_discussion(self, discussion_id: str) -> Discussion: ...

    def archive_old_discussions(
        self, *, older_than_days: float = DEFAULT_ARCHIVE_AFTER_DAYS, project_root: str | None = None
    ) -> int: ...

    def delete_archived_discussions(
        self, *, older_than_days: float = DEFAULT_DELETE_AFTER_DAYS, project_root: str | None = None
    ) -> int: ...

    # -- maintenance --

    def reset_session(
        self, project_root: str, *, keep_project_context: bool = False
    ) -> SessionResetResult: ...

    def append_log_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None: ...


def create_store(config: Config) -> Store:
    """Build and initialize the backend named by ``config.storage``."""
    store: Store
    if config.storage == "json":
        from lockstep.json_store import JsonStore

        store = JsonStore(config.data_dir, config.log_dir)
    else:
        from lockstep.db import SqliteStore

        store = SqliteStore(config.db_path, config.log_dir)
    store.init()
    return store


# -- validation shared by both backends --


def require_text(field: str, value: str | None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} is required")
    return value


def validate_choice(field: str, value: str, valid: set[str]) -> str:
    if value not in valid:
        raise ValueError(f"Invalid {field} '{value}'. Must be one of: {sorted(valid)}")
    return value


def normalize_tags(tags: Iterable[str] | None) -> list[str]:
    """De-duplicate tags, keeping first-seen order."""
    if tags is None:
        return []
    if isinstance(tags, str):
        raise ValueError("tags must be a list of strings")
    seen: dict[str, None] = {}
    for tag in tags:
        if not isinstance(tag, str):
            raise ValueError(f"Invalid tag {tag!r}: tags must be strings")
        seen.setdefault(tag, None)
    return list(seen)


def normalize_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise ValueError("metadata must be an object")
    return dict(metadata)


def validate_days(field: str, days: float) -> float:
    if days < 0:
        raise ValueError(f"{field} must be >= 0")
    return days
