from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gerrit_import.accounts import IdentityResolver
from gerrit_import.caches import AccountCache
from gerrit_import.change_index import ChangeIndexer
from gerrit_import.change_replay import ReplaySummary, replay_changes
from gerrit_import.errors import BadRequest
from gerrit_import.git_repo import GitRepositoryManager, configure_repository, fetch_all_refs
from gerrit_import.import_lock import ImportLock, read_import_status
from gerrit_import.import_log import Actor, ImportLog
from gerrit_import.project_config import check_parent_exists, configure_project, resolve_parent
from gerrit_import.remote_api import RemoteApi, validate_source
from gerrit_import.review_db import ReviewDb

logger = logging.getLogger(__name__)


@contextmanager
def _phase(name: str) -> Iterator[None]:
    start = time.monotonic()
    logger.info("==> %s", name)
    try:
        yield
    finally:
        elapsed = time.monotonic() - start
        logger.info("<== %s (%.1fs)", name, elapsed)


@dataclass(frozen=True)
class ProjectImportInput:
    from_url: str | None
    user: str | None
    password: str | None = field(default=None, repr=False)
    parent: str | None = None

    def persisted_params(self) -> dict[str, Any]:
        """Parameters kept in the import-status file; never the password."""
        params: dict[str, Any] = {"from": self.from_url, "user": self.user}
        if self.parent:
            params["parent"] = self.parent
        return params


@dataclass(frozen=True)
class ImportResult:
    project: str
    parent: str
    fetch_summary: str
    replay: ReplaySummary


class ProjectImporter:
    """Imports a project: repository, parent configuration and review data.

    Each import holds the project's `ImportLock` from start to finish. The
    outcome of every attempt that got the lock is written to the Import Log.
    """

    def __init__(
        self,
        *,
        db: ReviewDb,
        repos: GitRepositoryManager,
        lock_root: Path,
        import_log: ImportLog,
        api_factory: Callable[..., RemoteApi] = RemoteApi,
        account_cache: AccountCache | None = None,
        create_missing_accounts: bool = True,
    ) -> None:
        self._db = db
        self._repos = repos
        self._lock_root = lock_root
        self._import_log = import_log
        self._api_factory = api_factory
        self._account_cache = account_cache
        self._create_missing_accounts = create_missing_accounts
        self._indexer = ChangeIndexer(db)

    @property
    def repos(self) -> GitRepositoryManager:
        return self._repos

    @property
    def lock_root(self) -> Path:
        return self._lock_root

    def import_project(
        self, project: str, inp: ProjectImportInput, *, actor: Actor
    ) -> ImportResult:
        validate_source(from_url=inp.from_url, user=inp.user, password=inp.password)
        return self._run(project, inp, actor=actor)

    def resume_project_import(
        self,
        project: str,
        *,
        password: str | None,
        actor: Actor,
        user: str | None = None,
        force: bool = False,
    ) -> ImportResult:
        """Re-run a previous import of `project` with its persisted parameters.

        The password is never persisted, so it must be passed again. Without
        `force` the repository of the previous attempt must still exist.
        """
        status = read_import_status(self._lock_root, project)
        if status is None:
            raise BadRequest(f"no previous import of project {project} to resume")
        if not force and not self._repos.exists(project):
            raise BadRequest(f"repository {project} does not exist; use force to re-import")

        inp = ProjectImportInput(
            from_url=status.get("from"),
            user=user or status.get("user"),
            password=password,
            parent=status.get("parent"),
        )
        validate_source(from_url=inp.from_url, user=inp.user, password=inp.password)
        logger.info("Resuming import of %s from %s (force=%s)", project, inp.from_url, force)
        return self._run(project, inp, actor=actor)

    def _run(self, project: str, inp: ProjectImportInput, *, actor: Actor) -> ImportResult:
        assert inp.from_url is not None and inp.user is not None and inp.password is not None
        # A concurrent import keeps its lock and never reaches the Import Log.
        lock = ImportLock(self._lock_root, project)
        lock.acquire()
        try:
            with _phase(f"Import {project}"):
                result = self._import(project, inp, lock=lock)
        except Exception as err:
            logger.exception("Import of %s from %s failed", project, inp.from_url)
            try:
                self._import_log.on_import(
                    actor,
                    src_project=project,
                    target_project=project,
                    source_url=inp.from_url,
                    error=err,
                )
            except Exception:
                # The caller gets the import error, not the logging one.
                logger.exception("Failed to record import failure of %s", project)
            raise
        finally:
            lock.release()

        self._import_log.on_import(
            actor, src_project=project, target_project=project, source_url=inp.from_url
        )
        return result

    def _import(self, project: str, inp: ProjectImportInput, *, lock: ImportLock) -> ImportResult:
        assert inp.from_url is not None and inp.user is not None and inp.password is not None
        api = self._api_factory(base_url=inp.from_url, user=inp.user, password=inp.password)

        parent = resolve_parent(project, explicit_parent=inp.parent, api=api)
        check_parent_exists(self._db, parent)

        with self._repos.open_or_create(project) as repo:
            lock.persist(inp.persisted_params())

            with _phase("Repository transfer"):
                configure_repository(repo, project=project, source_url=inp.from_url)
                fetch_summary = fetch_all_refs(repo, username=inp.user, password=inp.password)

            with _phase("Project configuration"):
                configure_project(self._db, project=project, parent=parent)

            with _phase("Change replay"):
                resolver = IdentityResolver(
                    self._db,
                    api=api,
                    account_cache=self._account_cache,
                    create_missing=self._create_missing_accounts,
                )
                summary = replay_changes(
                    project=project,
                    source_url=inp.from_url,
                    api=api,
                    db=self._db,
                    repo=repo,
                    resolver=resolver,
                    indexer=self._indexer,
                )

        logger.info(
            "Imported %s (parent=%s changes=%d completed=%d skipped=%d)",
            project,
            parent,
            len(summary.replayed),
            len(summary.completed),
            len(summary.skipped),
        )
        return ImportResult(
            project=project, parent=parent, fetch_summary=fetch_summary, replay=summary
        )
