"""Git library module for resgraph.

This module clones declaration sources that live in git repositories.
Supports https:// URLs, scp-style git@host:owner/repo URLs and the git::
prefix, with an optional //subfolder and ?ref=<tag or branch>.
"""

import hashlib
import logging
import os
import shutil
import stat
from typing import Optional, Tuple

import click
import git
from git import RemoteProgress
from tqdm import tqdm

import planner.config.defaults as defaults
from planner.exceptions import DeclarationParsingError

logger = logging.getLogger(__name__)


class CloneProgress(RemoteProgress):
    """Progress bar for git clone operations.

    Displays a progress bar using tqdm during git repository cloning.
    """

    def __init__(self) -> None:
        """Initialize progress bar."""
        super().__init__()
        self.pbar = tqdm(leave=False)

    def update(
        self,
        op_code: int,
        cur_count: int,
        max_count: Optional[int] = None,
        message: str = "",
    ) -> None:
        """Update progress bar with current clone status.

        Args:
            op_code: Git operation code
            cur_count: Current progress count
            max_count: Maximum progress count
            message: Optional status message
        """
        self.pbar.total = max_count
        self.pbar.n = cur_count
        self.pbar.refresh()


def is_git_source(source: str) -> bool:
    """Check whether a source string points at a git repository."""
    return (
        source.startswith("git::")
        or source.startswith("git@")
        or source.startswith("ssh://")
        or source.startswith("https://")
        or source.startswith("http://")
        or source.endswith(".git")
    )


def split_source_url(source: str) -> Tuple[str, str, str]:
    """Split a git source into clone URL, subfolder and ref.

    Examples:
        >>> split_source_url("git::https://github.com/org/repo.git//infra?ref=v1")
        ('https://github.com/org/repo.git', 'infra', 'v1')

    Returns:
        Tuple of (clone_url, subfolder, git_ref)
    """
    address = source[len("git::") :] if source.startswith("git::") else source
    git_ref = ""
    if "?ref=" in address:
        address, git_ref = address.split("?ref=", 1)

    subfolder = ""
    scheme = ""
    if "://" in address:
        scheme, address = address.split("://", 1)
        scheme += "://"
    if "//" in address:
        address, subfolder = address.split("//", 1)
    return scheme + address, subfolder.strip("/"), git_ref


def _remove_readonly(func, path, exc_info):
    # Windows keeps git object files read-only
    os.chmod(path, stat.S_IWRITE)
    func(path)


def clone_source(source: str, cache_dir: Optional[str] = None) -> str:
    """Clone a git source into the cache and return the declaration folder.

    Any previous clone of the same source is replaced so every planning run
    sees the remote as it is now.

    Args:
        source: Git URL, optionally with //subfolder and ?ref=
        cache_dir: Cache root (defaults to ~/.resgraph/source_cache)

    Returns:
        Path to the folder holding the declaration files

    Raises:
        DeclarationParsingError: If cloning fails or the subfolder is missing
    """
    clone_url, subfolder, git_ref = split_source_url(source)
    cache_root = os.path.expanduser(cache_dir or defaults.CACHE_DIR)
    digest = hashlib.sha1(source.encode("utf-8")).hexdigest()[:12]
    codepath = os.path.join(cache_root, digest)

    click.echo(click.style("\nLoading Sources..", fg="white", bold=True))
    if os.path.exists(codepath):
        shutil.rmtree(codepath, onerror=_remove_readonly)
    os.makedirs(codepath, exist_ok=True)

    options = ["--depth 1"]
    if git_ref:
        options.append("--branch " + git_ref)
    try:
        git.Repo.clone_from(
            clone_url,
            codepath,
            multi_options=options,
            progress=CloneProgress(),
        )
    except git.GitCommandError as e:
        logger.error(f"git clone of {clone_url} failed: {e}")
        raise DeclarationParsingError(
            f"Unable to clone {clone_url}. Check the URL and your git credentials.",
            context={"path": source},
        ) from e

    location = os.path.join(codepath, subfolder) if subfolder else codepath
    if not os.path.isdir(location):
        raise DeclarationParsingError(
            f"Subfolder '{subfolder}' not found in {clone_url}",
            context={"path": source},
        )
    click.echo(click.style(f"  Retrieved declarations from {clone_url}", fg="green"))
    return location
