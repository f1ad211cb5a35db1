"""Disposable working directory for a single deployment attempt."""
from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from filelock import FileLock, Timeout

from .errors import DeploymentInProgressError, StagingError

logger = logging.getLogger("bizcards.staging")

ASSETS_DIRNAME = "assets"
LOCK_SUFFIX = ".lock"


def lock_path_for(root: Path) -> Path:
    """Lock file beside the staging directory, which is wiped on every run."""

    resolved = root.resolve(strict=False)
    return resolved.with_name(resolved.name + LOCK_SUFFIX)


class StagingArea:
    """Owns the staging directory: wiped and recreated on every run."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    @property
    def assets_dir(self) -> Path:
        return self._root / ASSETS_DIRNAME

    @property
    def lock_path(self) -> Path:
        return lock_path_for(self._root)

    @contextmanager
    def exclusive(self) -> Generator["StagingArea", None, None]:
        """Hold an OS-level lock on this path, rejecting holders in any process."""

        lock_path = self.lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StagingError(f"Failed to create lock directory {lock_path.parent}: {exc}") from exc

        lock = FileLock(str(lock_path))
        try:
            lock.acquire(timeout=0)
        except Timeout:
            raise DeploymentInProgressError("A deployment is already in progress") from None
        try:
            yield self
        finally:
            lock.release()

    def prepare(self) -> Path:
        try:
            self._remove()
            self._root.mkdir(parents=True)
            self.assets_dir.mkdir()
        except OSError as exc:
            raise StagingError(f"Failed to prepare staging directory {self._root}: {exc}") from exc
        logger.debug("Prepared staging directory %s", self._root)
        return self._root

    def cleanup(self) -> None:
        try:
            self._remove()
        except OSError as exc:
            logger.warning("Failed to clean up staging directory %s: %s", self._root, exc)

    @contextmanager
    def staged(self) -> Generator[Path, None, None]:
        """Prepare the directory and remove it again on every exit path."""

        try:
            yield self.prepare()
        finally:
            self.cleanup()

    def _remove(self) -> None:
        if self._root.is_symlink() or self._root.is_file():
            self._root.unlink()
        elif self._root.exists():
            shutil.rmtree(self._root)


__all__ = ["StagingArea", "ASSETS_DIRNAME", "lock_path_for"]
