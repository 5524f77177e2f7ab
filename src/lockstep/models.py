"""Entity records shared by both storage backends.

Records are plain dicts typed with ``TypedDict`` so they serialize straight
to JSON for the gateway and the event log.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, TypedDict

VALID_TASK_STATUSES = {"todo", "in_progress", "blocked", "review", "done"}
TASK_ACTIVE_STATUSES = ("todo", "in_progress", "review")
VALID_TASK_COMPLEXITIES = {"simple", "medium", "complex", "critical"}
DEFAULT_TASK_COMPLEXITY = "medium"
VALID_ISOLATION_MODES = {"shared", "worktree"}
DEFAULT_ISOLATION = "shared"

VALID_LOCK_STATUSES = {"active", "resolved"}

VALID_PROJECT_STATUSES = {"planning", "ready", "in_progress", "complete", "stopped"}
VALID_IMPLEMENTER_TYPES = {"claude", "codex"}
VALID_IMPLEMENTER_STATUSES = {"active", "stopped"}

VALID_DISCUSSION_STATUSES = {"open", "waiting", "resolved", "archived"}
DISCUSSION_CLOSED_STATUSES = {"resolved", "archived"}
VALID_DISCUSSION_CATEGORIES = {"architecture", "implementation", "blocker", "question", "other"}
VALID_DISCUSSION_PRIORITIES = {"low", "medium", "high", "blocking"}
# Lower rank sorts first.
DISCUSSION_PRIORITY_RANK = {"blocking": 0, "high": 1, "medium": 2, "low": 3}

SYSTEM_AUTHOR = "system"
ALL_TASKS_COMPLETE_NOTE = (
    "[SYSTEM] ALL TASKS COMPLETE! Planner: review the work and set the project status "
    "to 'complete' if satisfied, or create more tasks."
)


def utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds (sortable as text)."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class Task(TypedDict):
    id: str
    title: str
    description: str | None
    status: str
    complexity: str
    isolation: str
    owner: str | None
    tags: list[str]
    metadata: dict[str, Any]
    review_notes: str | None
    review_feedback: str | None
    review_requested_at: str | None
    created_at: str
    updated_at: str


class Lock(TypedDict):
    path: str
    owner: str | None
    note: str | None
    status: str
    created_at: str
    updated_at: str


class Note(TypedDict):
    id: str
    text: str
    author: str | None
    created_at: str


class ProjectContext(TypedDict):
    project_root: str
    description: str
    end_state: str
    tech_stack: list[str] | None
    constraints: list[str] | None
    acceptance_criteria: list[str] | None
    tests: list[str] | None
    implementation_plan: list[str] | None
    preferred_implementer: str | None
    status: str
    created_at: str
    updated_at: str


class Implementer(TypedDict):
    id: str
    name: str
    type: str
    project_root: str
    status: str
    pid: int | None
    isolation: str
    worktree_path: str | None
    branch_name: str | None
    created_at: str
    updated_at: str


class Discussion(TypedDict):
    id: str
    topic: str
    category: str
    priority: str
    status: str
    project_root: str
    created_by: str
    waiting_on: str | None
    decision: str | None
    decision_reasoning: str | None
    decided_by: str | None
    linked_task_id: str | None
    created_at: str
    updated_at: str
    resolved_at: str | None
    archived_at: str | None


class DiscussionMessage(TypedDict):
    id: str
    discussion_id: str
    author: str
    message: str
    recommendation: str | None
    created_at: str


class State(TypedDict):
    tasks: list[Task]
    locks: list[Lock]
    notes: list[Note]


class SessionResetResult(TypedDict):
    tasks_cleared: int
    locks_cleared: int
    notes_cleared: int
    implementers_reset: int
    discussions_archived: int
