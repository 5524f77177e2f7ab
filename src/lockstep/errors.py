"""Error taxonomy for the coordination store and worktree manager.

Every error carries enough context (entity, key, expected/actual state or
owner) for a calling agent to decide between retrying, waiting and asking
for help. ``transient`` marks errors where a retry may succeed.
"""

from __future__ import annotations


class CoordinationError(Exception):
    """Base class for all store and worktree failures."""

    transient = False

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        key: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        super().__init__(message)
        self.entity = entity
        self.key = key
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> dict[str, object]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "transient": self.transient,
            "entity": self.entity,
            "key": self.key,
            "expected": self.expected,
            "actual": self.actual,
        }


class NotFoundError(CoordinationError, LookupError):
    """Unknown task, lock, discussion, implementer or project."""

    def __init__(self, entity: str, key: str) -> None:
        super().__init__(f"{entity.capitalize()} not found: {key}", entity=entity, key=key)


class LockNotFoundError(NotFoundError):
    def __init__(self, path: str) -> None:
        CoordinationError.__init__(
            self, f"Active lock not found for {path}", entity="lock", key=path
        )


class OwnershipMismatchError(CoordinationError):
    """The actor does not hold the resource it is trying to mutate."""

    def __init__(self, entity: str, key: str, *, owner: str | None, actor: str | None) -> None:
        super().__init__(
            f"{entity.capitalize()} {key} is owned by {owner or 'nobody'}, not {actor}",
            entity=entity,
            key=key,
            expected=owner,
            actual=actor,
        )


class InvalidTransitionError(CoordinationError):
    """A state machine precondition was violated."""

    def __init__(self, entity: str, key: str, *, expected: str, actual: str) -> None:
        super().__init__(
            f"{entity.capitalize()} {key} must be '{expected}' (currently '{actual}')",
            entity=entity,
            key=key,
            expected=expected,
            actual=actual,
        )


class ReplyToClosedDiscussionError(InvalidTransitionError):
    def __init__(self, discussion_id: str, status: str) -> None:
        CoordinationError.__init__(
            self,
            f"Cannot reply to discussion {discussion_id}: it is {status}",
            entity="discussion",
            key=discussion_id,
            expected="open or waiting",
            actual=status,
        )


class LockConflictError(CoordinationError):
    """An active lock already exists for the path."""

    transient = True

    def __init__(self, path: str, *, holder: str | None) -> None:
        super().__init__(
            f"Lock already active for {path} (held by {holder or 'unknown'})",
            entity="lock",
            key=path,
            actual=holder,
        )


class LockTimeoutError(CoordinationError):
    """The cross-process state mutex was not obtained in time."""

    transient = True

    def __init__(self, marker: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for state lock {marker}",
            entity="state_lock",
            key=marker,
        )


class BackendUnsupportedError(CoordinationError, NotImplementedError):
    """The operation is not available on this storage backend."""

    def __init__(self, operation: str, backend: str, *, hint: str = "sqlite") -> None:
        super().__init__(
            f"{operation} is not supported by the {backend} storage backend; "
            f"use storage = '{hint}'",
            entity="backend",
            key=backend,
            expected=hint,
            actual=backend,
        )


class ExternalToolError(CoordinationError, RuntimeError):
    """An external command (git) failed."""

    transient = True

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message, entity="command", key=command)


class StateCorruptError(CoordinationError):
    """A persisted state document could not be parsed or failed validation."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"State document {path} is invalid: {detail}", entity="state", key=path)
