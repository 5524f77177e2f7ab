"""Git worktree management for isolated implementers.

Each isolated implementer works in ``<repo>/.lockstep/worktrees/<name>`` on
branch ``lockstep/<name>``. Lookups and cleanup rely on that prefix, so
nothing outside the namespace is ever deleted.

Commit and merge report failures as structured results instead of raising;
creation and repository lookups raise ``ExternalToolError``.
"""

from __future__ import annotations

import contextlib
import logging
import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import NotRequired, TypedDict

from lockstep.errors import ExternalToolError
from lockstep.paths import BRANCH_PREFIX, WORKTREE_DIR

log = logging.getLogger(__name__)

FETCH_TIMEOUT = 10
AUTO_COMMIT_MESSAGE = "WIP: Uncommitted changes before merge"
AUTO_COMMIT_AUTHOR = "lockstep"

_NAME_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


class WorktreeInfo(TypedDict):
    path: str
    branch_name: str
    head: str


class WorktreeStatus(TypedDict):
    ahead: int
    behind: int
    has_uncommitted_changes: bool
    modified_files: list[str]
    untracked_files: list[str]


class CreatedWorktree(TypedDict):
    worktree_path: str
    branch_name: str


class CommitResult(TypedDict):
    success: bool
    commit_hash: NotRequired[str]
    error: NotRequired[str]


class MergeResult(TypedDict):
    success: bool
    merged: bool
    conflicts: NotRequired[list[str]]
    error: NotRequired[str]


def _git(
    args: list[str], cwd: str | Path, *, timeout: float | None = None
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def _stderr(exc: subprocess.CalledProcessError) -> str:
    return (exc.stderr or exc.stdout or str(exc)).strip()


def validate_name(name: str) -> str:
    """Reject names that would escape the worktree dir or break the branch ref."""
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ValueError(
            f"Invalid worktree name {name!r}: use letters, digits, '.', '_' or '-' "
            "and do not start with '.'"
        )
    return name


def is_git_repo(path: str | Path) -> bool:
    try:
        _git(["rev-parse", "--git-dir"], path)
    except (subprocess.CalledProcessError, OSError):
        return False
    return True


def get_git_root(path: str | Path) -> Path:
    try:
        out = _git(["rev-parse", "--show-toplevel"], path).stdout.strip()
    except subprocess.CalledProcessError as e:
        raise ExternalToolError(
            f"Not a git repository: {path}: {_stderr(e)}", command="git rev-parse"
        ) from None
    except OSError as e:
        raise ExternalToolError(f"Cannot inspect {path}: {e}", command="git rev-parse") from None
    return Path(out)


def get_current_branch(path: str | Path) -> str:
    try:
        return _git(["rev-parse", "--abbrev-ref", "HEAD"], path).stdout.strip()
    except subprocess.CalledProcessError as e:
        raise ExternalToolError(
            f"Cannot determine current branch in {path}: {_stderr(e)}",
            command="git rev-parse",
        ) from None


def _main_repo(worktree_path: str | Path) -> Path:
    """Root of the main checkout that owns ``worktree_path``."""
    common_dir = _git(
        ["rev-parse", "--path-format=absolute", "--git-common-dir"], worktree_path
    ).stdout.strip()
    return Path(common_dir).parent


def _origin_head(path: str | Path) -> str | None:
    """``origin/<branch>`` that the remote HEAD points at, if there is a remote."""
    try:
        ref = _git(["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], path).stdout.strip()
    except subprocess.CalledProcessError:
        return None
    return ref or None


def _default_branch(main_repo: Path) -> str:
    origin_head = _origin_head(main_repo)
    if origin_head:
        return origin_head.removeprefix("origin/")
    with contextlib.suppress(subprocess.CalledProcessError):
        branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], main_repo).stdout.strip()
        if branch and branch != "HEAD":
            return branch
    return "main"


def _upstream_ref(worktree_path: str | Path) -> str:
    origin_head = _origin_head(worktree_path)
    if origin_head:
        return origin_head
    return _default_branch(_main_repo(worktree_path))


def _ensure_excluded(git_root: Path) -> None:
    """Keep ``.lockstep/`` out of the main checkout's ``git status``."""
    try:
        exclude = Path(
            _git(
                ["rev-parse", "--path-format=absolute", "--git-path", "info/exclude"], git_root
            ).stdout.strip()
        )
    except subprocess.CalledProcessError:
        return
    entry = f"/{WORKTREE_DIR.parts[0]}/"
    content = exclude.read_text() if exclude.exists() else ""
    if entry in content.splitlines():
        return
    exclude.parent.mkdir(parents=True, exist_ok=True)
    if content and not content.endswith("\n"):
        content += "\n"
    exclude.write_text(content + entry + "\n")


def _registered_paths(git_root: Path) -> set[str]:
    try:
        output = _git(["worktree", "list", "--porcelain"], git_root).stdout
    except subprocess.CalledProcessError:
        return set()
    return {
        line[len("worktree ") :] for line in output.splitlines() if line.startswith("worktree ")
    }


def create_worktree(repo_root: str | Path, name: str) -> CreatedWorktree:
    """Create ``.lockstep/worktrees/<name>`` on a fresh ``lockstep/<name>`` branch.

    A leftover worktree or branch with the same name is removed first.
    Raises ExternalToolError if ``repo_root`` is not a repository or git fails.
    """
    validate_name(name)
    if not is_git_repo(repo_root):
        raise ExternalToolError(f"Not a git repository: {repo_root}", command="git rev-parse")
    git_root = get_git_root(repo_root)
    worktree_path = git_root / WORKTREE_DIR / name
    branch_name = f"{BRANCH_PREFIX}{name}"

    worktree_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    _ensure_excluded(git_root)
    if worktree_path.exists():
        log.info("Removing stale worktree %s", worktree_path)
        remove_worktree(worktree_path)

    try:
        head = _git(["rev-parse", "HEAD"], git_root).stdout.strip()
    except subprocess.CalledProcessError as e:
        raise ExternalToolError(
            f"Cannot resolve HEAD in {git_root}: {_stderr(e)}", command="git rev-parse HEAD"
        ) from None

    # Registration or branch left over from a previous run whose directory is gone
    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["worktree", "prune"], git_root)
    if str(worktree_path) in _registered_paths(git_root):
        with contextlib.suppress(subprocess.CalledProcessError):
            _git(["worktree", "remove", "--force", str(worktree_path)], git_root)
    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["branch", "-D", branch_name], git_root)

    try:
        _git(["worktree", "add", "-b", branch_name, str(worktree_path), head], git_root)
    except subprocess.CalledProcessError as e:
        raise ExternalToolError(
            f"Failed to create worktree: {_stderr(e)}", command="git worktree add"
        ) from None

    log.info("Created worktree %s on %s", worktree_path, branch_name)
    return {"worktree_path": str(worktree_path), "branch_name": branch_name}


def remove_worktree(worktree_path: str | Path) -> None:
    """Force-remove a worktree and its ``lockstep/`` branch. Best-effort."""
    worktree_path = Path(worktree_path)
    try:
        branch = get_current_branch(worktree_path)
        main_repo = _main_repo(worktree_path)
        _git(["worktree", "remove", "--force", str(worktree_path)], main_repo)
    except (subprocess.CalledProcessError, ExternalToolError, OSError) as exc:
        log.debug("git worktree remove failed for %s (%s); pruning", worktree_path, exc)
        with contextlib.suppress(subprocess.CalledProcessError, ExternalToolError, OSError):
            _git(["worktree", "prune"], get_git_root(worktree_path.parent))
        shutil.rmtree(worktree_path, ignore_errors=True)
        return

    if branch.startswith(BRANCH_PREFIX):
        try:
            _git(["branch", "-D", branch], main_repo)
        except subprocess.CalledProcessError as exc:
            log.debug("Failed to delete branch %s: %s", branch, _stderr(exc))


def _parse_porcelain_status(output: str) -> tuple[list[str], list[str]]:
    modified: list[str] = []
    untracked: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if "?" in code:
            untracked.append(path)
        else:
            modified.append(path)
    return modified, untracked


def _count(range_spec: str, cwd: str | Path) -> int:
    try:
        out = _git(["rev-list", "--count", range_spec], cwd).stdout.strip()
    except subprocess.CalledProcessError:
        return 0
    return int(out) if out.isdigit() else 0


def get_worktree_status(worktree_path: str | Path) -> WorktreeStatus:
    """Commits ahead/behind the upstream branch plus uncommitted files."""
    # Offline or remote-less repos are fine; counts fall back to local refs.
    with contextlib.suppress(subprocess.CalledProcessError, subprocess.TimeoutExpired):
        _git(["fetch", "origin"], worktree_path, timeout=FETCH_TIMEOUT)

    try:
        upstream = _upstream_ref(worktree_path)
    except subprocess.CalledProcessError as e:
        raise ExternalToolError(
            f"Not a git worktree: {worktree_path}: {_stderr(e)}", command="git rev-parse"
        ) from None
    ahead = _count(f"{upstream}..HEAD", worktree_path)
    behind = _count(f"HEAD..{upstream}", worktree_path)

    try:
        porcelain = _git(["status", "--porcelain"], worktree_path).stdout
    except subprocess.CalledProcessError as e:
        raise ExternalToolError(
            f"git status failed in {worktree_path}: {_stderr(e)}", command="git status"
        ) from None
    modified, untracked = _parse_porcelain_status(porcelain)
    return {
        "ahead": ahead,
        "behind": behind,
        "has_uncommitted_changes": bool(modified or untracked),
        "modified_files": modified,
        "untracked_files": untracked,
    }


def get_worktree_diff(worktree_path: str | Path) -> str:
    """``--stat`` summary of the worktree branch against upstream; "" on failure."""
    try:
        upstream = _upstream_ref(worktree_path)
        return _git(["diff", "--stat", f"{upstream}...HEAD"], worktree_path).stdout
    except (subprocess.CalledProcessError, OSError):
        return ""


def commit_worktree_changes(worktree_path: str | Path, message: str, author: str) -> CommitResult:
    """Stage everything and commit with an ``Implementer:`` trailer.

    Succeeds without a commit hash when there is nothing to commit.
    """
    try:
        _git(["add", "-A"], worktree_path)
        if not _git(["status", "--porcelain"], worktree_path).stdout.strip():
            return {"success": True}
        _git(["commit", "-m", f"{message}\n\nImplementer: {author}"], worktree_path)
        commit_hash = _git(["rev-parse", "HEAD"], worktree_path).stdout.strip()
    except subprocess.CalledProcessError as e:
        return {"success": False, "error": _stderr(e)}
    except OSError as e:
        return {"success": False, "error": str(e)}
    log.debug("Committed %s in %s", commit_hash[:12], worktree_path)
    return {"success": True, "commit_hash": commit_hash}


@dataclass
class MergeStep:
    """One git action in a merge, with the action that undoes it.

    ``optional`` steps are rolled back on failure and the merge carries on.
    """

    name: str
    action: Callable[[], object]
    rollback: Callable[[], object] | None = None
    optional: bool = False


def _undo(step: MergeStep) -> None:
    if step.rollback is None:
        return
    try:
        step.rollback()
    except (subprocess.CalledProcessError, OSError) as exc:
        log.warning("Rollback of merge step %r failed: %s", step.name, exc)


def run_merge_steps(steps: list[MergeStep]) -> tuple[MergeStep, str] | None:
    """Run ``steps`` in order, undoing the failed step and every finished one.

    Returns ``(failed_step, error)`` or None when every required step ran.
    """
    finished: list[MergeStep] = []
    for step in steps:
        try:
            step.action()
        except subprocess.CalledProcessError as exc:
            _undo(step)
            if step.optional:
                log.info("Merge step %r failed, continuing: %s", step.name, _stderr(exc))
                continue
            for done in reversed(finished):
                _undo(done)
            return step, _stderr(exc)
        finished.append(step)
    return None


def _head_ref(repo: Path) -> str:
    """Current branch name, or the commit hash when HEAD is detached."""
    try:
        return _git(["symbolic-ref", "--quiet", "--short", "HEAD"], repo).stdout.strip()
    except subprocess.CalledProcessError:
        return _git(["rev-parse", "HEAD"], repo).stdout.strip()


def _restore_ref(repo: Path, ref: str) -> None:
    with contextlib.suppress(subprocess.CalledProcessError):
        if _head_ref(repo) == ref:
            return
    try:
        _git(["checkout", ref], repo)
    except subprocess.CalledProcessError as exc:
        log.warning("Could not restore %s in %s: %s", ref, repo, _stderr(exc))


def merge_worktree(worktree_path: str | Path, target_branch: str | None = None) -> MergeResult:
    """Merge a worktree's branch into ``target_branch`` in the main checkout.

    Uncommitted work is committed first. If the branch has no commits that
    the target lacks, nothing is touched. Otherwise the branch is rebased onto
    the target (skipped if the rebase conflicts), then merged with
    ``--no-ff``. A conflicting merge is aborted and its files are returned in
    ``conflicts``. The main checkout ends on the branch it started on.
    """
    try:
        main_repo = _main_repo(worktree_path)
        worktree_branch = get_current_branch(worktree_path)
        target = target_branch or _default_branch(main_repo)
        original_ref = _head_ref(main_repo)
    except (subprocess.CalledProcessError, ExternalToolError) as exc:
        error = _stderr(exc) if isinstance(exc, subprocess.CalledProcessError) else str(exc)
        return {"success": False, "merged": False, "error": error}
    except OSError as exc:
        return {"success": False, "merged": False, "error": str(exc)}

    try:
        status = get_worktree_status(worktree_path)
    except ExternalToolError as exc:
        return {"success": False, "merged": False, "error": str(exc)}
    if status["has_uncommitted_changes"]:
        committed = commit_worktree_changes(worktree_path, AUTO_COMMIT_MESSAGE, AUTO_COMMIT_AUTHOR)
        if not committed["success"]:
            return {"success": False, "merged": False, "error": committed.get("error", "")}

    try:
        _git(["rev-parse", "--verify", "--quiet", f"refs/heads/{target}"], main_repo)
    except subprocess.CalledProcessError:
        return {"success": False, "merged": False, "error": f"Unknown target branch '{target}'"}
    if _count(f"{target}..{worktree_branch}", main_repo) == 0:
        return {"success": True, "merged": False}

    conflicts: list[str] = []

    def merge() -> None:
        try:
            _git(
                ["merge", "--no-ff", worktree_branch, "-m", f"Merge {worktree_branch}"], main_repo
            )
        except subprocess.CalledProcessError:
            out = _git(["diff", "--name-only", "--diff-filter=U"], main_repo).stdout
            conflicts.extend(line for line in out.splitlines() if line.strip())
            raise

    steps = [
        MergeStep(
            "rebase",
            lambda: _git(["rebase", target], worktree_path),
            rollback=lambda: _git(["rebase", "--abort"], worktree_path),
            optional=True,
        ),
        MergeStep(
            "checkout",
            lambda: _git(["checkout", target], main_repo),
            rollback=lambda: _git(["checkout", original_ref], main_repo),
        ),
        MergeStep("merge", merge, rollback=lambda: _git(["merge", "--abort"], main_repo)),
    ]
    try:
        failure = run_merge_steps(steps)
    finally:
        _restore_ref(main_repo, original_ref)

    if failure is None:
        log.info("Merged %s into %s", worktree_branch, target)
        return {"success": True, "merged": True}
    step, error = failure
    if conflicts:
        log.warning("Merge of %s into %s conflicted: %s", worktree_branch, target, conflicts)
        return {"success": False, "merged": False, "conflicts": conflicts}
    return {"success": False, "merged": False, "error": f"{step.name} failed: {error}"}


def _parse_worktree_list(output: str) -> list[WorktreeInfo]:
    worktrees: list[WorktreeInfo] = []
    current: dict[str, str] = {}
    for line in [*output.splitlines(), ""]:
        if line.startswith("worktree "):
            current["path"] = line[len("worktree ") :]
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD ") :]
        elif line.startswith("branch "):
            current["branch_name"] = line[len("branch ") :].removeprefix("refs/heads/")
        elif not line:
            if current.get("path") and current.get("branch_name", "").startswith(BRANCH_PREFIX):
                worktrees.append(
                    {
                        "path": current["path"],
                        "branch_name": current["branch_name"],
                        "head": current.get("head", ""),
                    }
                )
            current = {}
    return worktrees


def list_worktrees(repo_path: str | Path) -> list[WorktreeInfo]:
    """Worktrees on ``lockstep/`` branches; [] when ``repo_path`` is not a repo."""
    try:
        git_root = get_git_root(repo_path)
        output = _git(["worktree", "list", "--porcelain"], git_root).stdout
    except (subprocess.CalledProcessError, ExternalToolError):
        return []
    return _parse_worktree_list(output)


def cleanup_orphaned_worktrees(repo_path: str | Path) -> list[str]:
    """Drop worktree registrations whose directory is gone and unused branches.

    Returns the worktree paths that were removed.
    """
    cleaned: list[str] = []
    try:
        git_root = get_git_root(repo_path)
    except ExternalToolError as exc:
        log.debug("Skipping worktree cleanup: %s", exc)
        return cleaned

    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["worktree", "prune"], git_root)

    worktrees = list_worktrees(git_root)
    for wt in worktrees:
        if Path(wt["path"]).exists():
            continue
        try:
            _git(["worktree", "remove", "--force", wt["path"]], git_root)
            cleaned.append(wt["path"])
        except subprocess.CalledProcessError as exc:
            log.debug("Failed to remove worktree %s: %s", wt["path"], _stderr(exc))

    try:
        branches = _git(
            ["for-each-ref", "--format=%(refname:short)", f"refs/heads/{BRANCH_PREFIX}"],
            git_root,
        ).stdout.split()
    except subprocess.CalledProcessError as exc:
        log.debug("Failed to list %s branches: %s", BRANCH_PREFIX, _stderr(exc))
        return cleaned
    in_use = {wt["branch_name"] for wt in worktrees if Path(wt["path"]).exists()}
    for branch in branches:
        if branch in in_use:
            continue
        try:
            _git(["branch", "-D", branch], git_root)
            log.debug("Deleted orphaned branch %s", branch)
        except subprocess.CalledProcessError as exc:
            log.debug("Failed to delete branch %s: %s", branch, _stderr(exc))
    return cleaned
