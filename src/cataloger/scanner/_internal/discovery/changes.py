"""Files changed between two commits, for incremental scans.

Paths are reported relative to the scanned root, which may sit below the
git work tree; changes outside it are dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pygit2
import structlog

from cataloger.core.errors import SourceError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ChangeSet:
    base: str  # resolved commit sha
    target: str
    changed: frozenset[str]  # added, modified, or the new side of a rename
    deleted: frozenset[str]  # deleted, or the old side of a rename


def _open(repo_root: Path) -> pygit2.Repository:
    git_dir = pygit2.discover_repository(str(repo_root))
    if git_dir is None:
        raise SourceError.not_a_repository(str(repo_root))
    try:
        repo = pygit2.Repository(git_dir)
    except pygit2.GitError as e:
        raise SourceError.not_a_repository(str(repo_root)) from e
    if repo.workdir is None:
        raise SourceError.not_a_repository(str(repo_root))
    return repo


def _commit(repo: pygit2.Repository, revision: str) -> pygit2.Commit:
    try:
        return repo.revparse_single(revision).peel(pygit2.Commit)
    except (KeyError, ValueError, pygit2.GitError) as e:
        raise SourceError.unknown_revision(revision, str(e) or type(e).__name__) from e


def _prefix(repo: pygit2.Repository, repo_root: Path) -> str:
    """Scanned root relative to the work tree, with a trailing slash ("" at the top)."""
    workdir = Path(repo.workdir).resolve()
    relative = repo_root.resolve().relative_to(workdir).as_posix()
    return "" if relative == "." else relative + "/"


def diff_commits(repo_root: Path, base: str, target: str | None = None) -> ChangeSet:
    """Paths under ``repo_root`` that differ between ``base`` and ``target``.

    ``target`` defaults to HEAD.

    Raises:
        SourceError: If ``repo_root`` is not in a git work tree or a
            revision cannot be resolved to a commit.
    """
    repo = _open(repo_root)
    base_commit = _commit(repo, base)
    target_commit = _commit(repo, target or "HEAD")

    diff = repo.diff(base_commit, target_commit)
    diff.find_similar()

    prefix = _prefix(repo, repo_root)
    changed: set[str] = set()
    deleted: set[str] = set()
    for delta in diff.deltas:
        if delta.status == pygit2.GIT_DELTA_DELETED:
            deleted.add(delta.old_file.path)
        elif delta.status == pygit2.GIT_DELTA_RENAMED:
            deleted.add(delta.old_file.path)
            changed.add(delta.new_file.path)
        else:
            changed.add(delta.new_file.path)

    def under_root(paths: set[str]) -> frozenset[str]:
        return frozenset(p[len(prefix) :] for p in paths if p.startswith(prefix))

    result = ChangeSet(
        base=str(base_commit.id),
        target=str(target_commit.id),
        changed=under_root(changed),
        deleted=under_root(deleted),
    )
    logger.info(
        "changes_resolved",
        base=result.base[:12],
        target=result.target[:12],
        changed=len(result.changed),
        deleted=len(result.deleted),
    )
    return result
