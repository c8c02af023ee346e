from __future__ import annotations

import logging
import shutil
from pathlib import Path

from .errors import FilesystemError, NotFoundError

logger = logging.getLogger(__name__)


def remove_tree(path: Path) -> None:
    """
    Remove ``path`` recursively if it exists.
    """
    path = Path(path)
    if not path.exists() and not path.is_symlink():
        return
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as exc:
        raise FilesystemError(f"Failed to remove existing directory {path}: {exc}") from exc
    logger.info("Removed existing directory %s", path)


def replace_tree(source: Path, dest: Path) -> None:
    """
    Replace ``dest`` with a copy of the contents of ``source``.

    Remove-then-copy, not atomic: a failure mid-copy leaves ``dest``
    partially populated. ``source`` is validated before ``dest`` is touched.
    """
    source = Path(source)
    dest = Path(dest)
    if not source.is_dir():
        raise NotFoundError(f"Source directory {source} does not exist", context={"source": str(source)})

    remove_tree(dest)
    try:
        shutil.copytree(source, dest, symlinks=True)
    except (OSError, shutil.Error) as exc:
        raise FilesystemError(f"Failed to copy {source} to {dest}: {exc}") from exc
    logger.info("Copied %s to %s", source, dest)


def backup(source: Path, dest: Path) -> None:
    replace_tree(source, dest)


def restore(source: Path, dest: Path) -> None:
    replace_tree(source, dest)
