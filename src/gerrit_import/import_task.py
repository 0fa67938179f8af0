from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from gerrit_import.git_repo import GitRepositoryManager, configure_repository, fetch_all_refs
from gerrit_import.import_lock import ImportLock

logger = logging.getLogger(__name__)


class TaskStatus(str, enum.Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskResult:
    project: str
    status: TaskStatus
    message: str


@dataclass(frozen=True)
class ImportProjectTask:
    """Fire-and-forget repository import of one project.

    Unlike `ProjectImporter.import_project`, an existing repository is not an
    error: the task reports it as skipped. Failures are reported, not raised.
    """

    project: str
    from_url: str
    user: str
    password: str = field(repr=False)
    repos: GitRepositoryManager = field(repr=False)
    lock_root: Path = field(repr=False)

    def run(self) -> TaskResult:
        if self.repos.exists(self.project):
            return self._result(TaskStatus.SKIPPED, f"Repository {self.project} already exists")
        try:
            with ImportLock(self.lock_root, self.project) as lock:
                with self.repos.create_repository(self.project) as repo:
                    lock.persist({"from": self.from_url, "user": self.user})
                    configure_repository(repo, project=self.project, source_url=self.from_url)
                    summary = fetch_all_refs(repo, username=self.user, password=self.password)
        except Exception as err:
            logger.exception("Background import of %s failed", self.project)
            return self._result(TaskStatus.FAILED, f"Unable to import {self.project}: {err}")
        message = f"Repository {self.project} imported"
        if summary:
            message = f"{message}: {summary}"
        return self._result(TaskStatus.IMPORTED, message)

    def _result(self, status: TaskStatus, message: str) -> TaskResult:
        logger.info("%s: %s", self.project, message)
        return TaskResult(project=self.project, status=status, message=message)


def run_import_tasks(
    tasks: Iterable[ImportProjectTask], *, max_workers: int = 4
) -> list[TaskResult]:
    """Run tasks concurrently; results come back in submission order."""
    if max_workers < 1:
        raise ValueError(f"max_workers must be >= 1, got {max_workers}")
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="import") as pool:
        futures = [pool.submit(task.run) for task in tasks]
        results = [f.result() for f in futures]

    counts: dict[TaskStatus, int] = {}
    for r in results:
        counts[r.status] = counts.get(r.status, 0) + 1
    logger.info(
        "Background imports done: imported=%d skipped=%d failed=%d",
        counts.get(TaskStatus.IMPORTED, 0),
        counts.get(TaskStatus.SKIPPED, 0),
        counts.get(TaskStatus.FAILED, 0),
    )
    return results
