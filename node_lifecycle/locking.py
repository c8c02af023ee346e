from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import psutil

from .errors import DataDirectoryBusy, FilesystemError

logger = logging.getLogger(__name__)


def lock_path_for(home: Path) -> Path:
    """
    The lock lives next to the data directory so wiping or restoring the
    directory itself leaves it in place.
    """
    home = Path(home).expanduser().absolute()
    return home.parent / f".{home.name.lstrip('.')}.lock"


def _read_pid(path: Path) -> Optional[int]:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


class DataDirectoryLock:
    """
    Advisory, pid-stamped lock guarding one data directory.

    The pid is written to a private file first and hard-linked into place,
    so the lock path never exists without its owner's pid. A lock file whose
    pid cannot be read is therefore left alone and reported as busy.
    """

    def __init__(self, home: Path) -> None:
        self.home = Path(home)
        self.path = lock_path_for(self.home)
        self.held = False

    def _stamp(self) -> Path:
        fd, name = tempfile.mkstemp(prefix=self.path.name + ".", dir=self.path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        return Path(name)

    def _link(self) -> bool:
        try:
            stamp = self._stamp()
        except OSError as exc:
            raise FilesystemError(f"Failed to create lock {self.path}: {exc}") from exc
        try:
            os.link(stamp, self.path)
            return True
        except FileExistsError:
            return False
        except OSError as exc:
            raise FilesystemError(f"Failed to create lock {self.path}: {exc}") from exc
        finally:
            stamp.unlink(missing_ok=True)

    def acquire(self) -> None:
        if self.held:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            if self._link():
                self.held = True
                logger.debug("Acquired lock %s", self.path)
                return
            owner = _read_pid(self.path)
            if owner is None:
                if not self.path.exists():
                    continue
                raise DataDirectoryBusy(str(self.home), None)
            if owner != os.getpid() and psutil.pid_exists(owner):
                raise DataDirectoryBusy(str(self.home), owner)
            logger.warning("Removing stale lock %s (pid %s)", self.path, owner)
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise FilesystemError(f"Failed to remove stale lock {self.path}: {exc}") from exc
        raise FilesystemError(f"Could not acquire lock {self.path}")

    def release(self) -> None:
        if not self.held:
            return
        self.held = False
        owner = _read_pid(self.path)
        if owner != os.getpid():
            logger.warning("Lock %s is now owned by pid %s, leaving it in place", self.path, owner)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> "DataDirectoryLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()
