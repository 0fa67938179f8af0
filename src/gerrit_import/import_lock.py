from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from types import TracebackType
from typing import Any

from gerrit_import.errors import Conflict, LockError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
SECRET_KEYS = frozenset({"pass", "password"})


def status_path(lock_root: Path, project: str) -> Path:
    """Path of the import-status file holding the last attempt's parameters."""
    return lock_root / project


def read_import_status(lock_root: Path, project: str) -> dict[str, Any] | None:
    path = status_path(lock_root, project)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"unexpected import status in {path}: {raw!r}")
    return data


class ImportLock:
    """Per-project mutual exclusion for imports.

    The lock artifact is `<lock_root>/<project>.lock`, created exclusively.
    Parameters written with `persist()` are kept in it while the lock is held
    and moved to `<lock_root>/<project>` on release.
    """

    def __init__(self, lock_root: Path, project: str) -> None:
        if not project or project.startswith("/") or ".." in Path(project).parts:
            raise ValueError(f"invalid project name for lock: {project!r}")
        self._lock_root = lock_root
        self._project = project
        self._fd: int | None = None
        self._persisted = False
        self._released = False

    @property
    def project(self) -> str:
        return self._project

    @property
    def status_path(self) -> Path:
        return status_path(self._lock_root, self._project)

    @property
    def lock_path(self) -> Path:
        path = self.status_path
        return path.with_name(path.name + LOCK_SUFFIX)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> ImportLock:
        if self._fd is not None or self._released:
            raise RuntimeError(f"lock for {self._project} cannot be acquired twice")
        lock_path = self.lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            self._fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise Conflict("project is being imported from another session") from None
        except OSError as err:
            raise LockError(f"failed to lock project {self._project} for import: {err}") from err
        logger.debug("Acquired import lock %s", lock_path)
        return self

    def persist(self, params: Mapping[str, Any]) -> None:
        """Write the non-secret import parameters as compact JSON."""
        if self._fd is None:
            raise RuntimeError(f"lock for {self._project} is not held")
        clean = {k: v for k, v in params.items() if k not in SECRET_KEYS}
        data = (json.dumps(clean, separators=(",", ":")) + "\n").encode("utf-8")
        try:
            os.ftruncate(self._fd, 0)
            os.lseek(self._fd, 0, os.SEEK_SET)
            os.write(self._fd, data)
            os.fsync(self._fd)
        except OSError as err:
            raise LockError(f"failed to persist import parameters for {self._project}") from err
        self._persisted = True

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        self._released = True
        try:
            os.close(fd)
        finally:
            if self._persisted:
                os.replace(self.lock_path, self.status_path)
            else:
                self.lock_path.unlink(missing_ok=True)
        logger.debug("Released import lock %s", self.lock_path)

    def __enter__(self) -> ImportLock:
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
