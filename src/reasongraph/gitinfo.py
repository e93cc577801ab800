"""Read-only git lookups: current branch, current commit, author name.

Every helper returns None outside a repository (or on a detached HEAD for
the branch) instead of raising, since git context is optional metadata.
"""

import logging
import os
from pathlib import Path

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

logger = logging.getLogger(__name__)


def _repo(path: Path | None = None) -> Repo | None:
    try:
        return Repo(path or Path.cwd(), search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return None


def current_branch(path: Path | None = None) -> str | None:
    """Name of the checked-out branch, or None when detached or not in a repo."""
    repo = _repo(path)
    if repo is None:
        return None
    try:
        if repo.head.is_detached:
            return None
        return repo.active_branch.name
    except (TypeError, ValueError, GitCommandError) as e:
        # Unborn branch (no commits yet) still has a name in HEAD
        logger.debug(f"Could not read active branch: {e}")
        try:
            return repo.git.rev_parse("--abbrev-ref", "HEAD") or None
        except GitCommandError:
            return None


def current_commit(path: Path | None = None, short: bool = True) -> str | None:
    """Hash of HEAD, abbreviated by default."""
    repo = _repo(path)
    if repo is None:
        return None
    try:
        sha = repo.head.commit.hexsha
    except ValueError:
        # No commits yet
        return None
    return repo.git.rev_parse("--short", sha) if short else sha


def author_name(path: Path | None = None) -> str:
    """Git ``user.name``, then ``$USER``, then "unknown"."""
    repo = _repo(path)
    if repo is not None:
        try:
            name = repo.config_reader().get_value("user", "name", default="")
            if name:
                return str(name)
        except (KeyError, OSError) as e:
            logger.debug(f"No git user.name: {e}")
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
