from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from gerrit_import.caches import AccountCache, GroupCache, GroupIncludeCache
from gerrit_import.errors import BadRequest, ImporterError
from gerrit_import.git_repo import GitRepositoryManager
from gerrit_import.group_import import GroupImportInput, import_group
from gerrit_import.import_log import Actor, DbAuditSink, ImportLog, create_import_logger
from gerrit_import.import_task import ImportProjectTask, TaskStatus, run_import_tasks
from gerrit_import.project_import import ProjectImporter, ProjectImportInput
from gerrit_import.remote_api import validate_source
from gerrit_import.review_db import ReviewDb, create_review_db

logger = logging.getLogger(__name__)


def _default_database_url() -> str:
    return os.environ.get("GERRIT_IMPORT_DATABASE_URL", "sqlite:///gerrit-import.db")


def _default_git_root() -> Path:
    return Path(os.environ.get("GERRIT_IMPORT_GIT_ROOT", "git")).expanduser()


def _default_lock_root() -> Path:
    return Path(os.environ.get("GERRIT_IMPORT_LOCK_ROOT", "data/import-status")).expanduser()


def _default_import_log() -> Path:
    return Path(os.environ.get("GERRIT_IMPORT_LOG", "logs/import_log")).expanduser()


def _default_actor() -> str:
    return os.environ.get("GERRIT_IMPORT_ACTOR") or os.environ.get("USER") or "gerrit-import"


def _read_pass_file(path: Path) -> str:
    password = path.read_text(encoding="utf-8", errors="replace").strip()
    if not password:
        raise ValueError(f"pass file is empty: {path}")
    return password


def _password(args: argparse.Namespace) -> str | None:
    if args.pass_file is not None:
        return _read_pass_file(args.pass_file.expanduser())
    return args.password or None


def _add_store_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--database-url", default=_default_database_url())
    parser.add_argument("--git-root", type=Path, default=_default_git_root())
    parser.add_argument("--lock-root", type=Path, default=_default_lock_root())
    parser.add_argument("--import-log", type=Path, default=_default_import_log())
    parser.add_argument(
        "--actor",
        default=_default_actor(),
        help="User recorded in the import log (default: GERRIT_IMPORT_ACTOR or OS user)",
    )


def _add_source_options(parser: argparse.ArgumentParser, *, with_from: bool = True) -> None:
    if with_from:
        parser.add_argument(
            "--from",
            dest="from_url",
            default=os.environ.get("GERRIT_IMPORT_FROM"),
            help="Base URL of the source server (default: GERRIT_IMPORT_FROM)",
        )
    parser.add_argument("--user", default=os.environ.get("GERRIT_IMPORT_USER"))
    pass_group = parser.add_mutually_exclusive_group()
    pass_group.add_argument("--pass", dest="password", default=os.environ.get("GERRIT_IMPORT_PASS"))
    pass_group.add_argument("--pass-file", type=Path, default=None)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gerrit-import")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    project = sub.add_parser("import-project", help="Import a project with its review data")
    project.add_argument("project")
    _add_source_options(project)
    project.add_argument(
        "--parent", default=None, help="Local parent project (default: the source's parent)"
    )
    _add_store_options(project)

    resume = sub.add_parser("resume-project", help="Resume a previous project import")
    resume.add_argument("project")
    _add_source_options(resume, with_from=False)
    resume.add_argument(
        "--force",
        action="store_true",
        help="Recreate the repository if it no longer exists",
    )
    _add_store_options(resume)

    group = sub.add_parser("import-group", help="Import a group by name or UUID")
    group.add_argument("group")
    _add_source_options(group)
    group.add_argument("--import-owner-group", action="store_true")
    group.add_argument("--import-included-groups", action="store_true")
    group.add_argument(
        "--new-groups-visible-to-all",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Make every imported group visible to all users",
    )
    _add_store_options(group)

    batch = sub.add_parser(
        "import-projects", help="Mirror the repositories of several projects in the background"
    )
    batch.add_argument("projects", nargs="+")
    _add_source_options(batch)
    batch.add_argument("--workers", type=int, default=4)
    _add_store_options(batch)

    return parser


def _project_importer(
    args: argparse.Namespace, db: ReviewDb, import_log: ImportLog
) -> ProjectImporter:
    return ProjectImporter(
        db=db,
        repos=GitRepositoryManager(args.git_root),
        lock_root=args.lock_root,
        import_log=import_log,
        account_cache=AccountCache(db),
    )


def _run_project_command(args: argparse.Namespace) -> int:
    db = create_review_db(args.database_url)
    import_log = ImportLog(create_import_logger(args.import_log), audit=DbAuditSink(db))
    try:
        return _run_project_import(args, _project_importer(args, db, import_log))
    finally:
        import_log.close()
        db.dispose()


def _run_project_import(args: argparse.Namespace, importer: ProjectImporter) -> int:
    if args.command == "import-project":
        result = importer.import_project(
            args.project,
            ProjectImportInput(
                from_url=args.from_url,
                user=args.user,
                password=_password(args),
                parent=args.parent,
            ),
            actor=Actor(args.actor),
        )
        print(
            f"Imported {result.project} (parent {result.parent}): "
            f"{len(result.replay.replayed)} changes, {len(result.replay.skipped)} skipped"
        )
        return 0

    result = importer.resume_project_import(
        args.project,
        user=args.user,
        password=_password(args),
        actor=Actor(args.actor),
        force=args.force,
    )
    print(
        f"Resumed {result.project}: {len(result.replay.replayed)} changes, "
        f"{len(result.replay.completed)} completed"
    )
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command in ("import-project", "resume-project"):
        return _run_project_command(args)

    if args.command == "import-group":
        db = create_review_db(args.database_url)
        try:
            group = import_group(
                args.group,
                GroupImportInput(
                    from_url=args.from_url,
                    user=args.user,
                    password=_password(args) or "",
                    import_owner_group=args.import_owner_group,
                    import_included_groups=args.import_included_groups,
                ),
                db=db,
                group_cache=GroupCache(db),
                account_cache=AccountCache(db),
                include_cache=GroupIncludeCache(db),
                new_groups_visible_to_all=args.new_groups_visible_to_all,
            )
        finally:
            db.dispose()
        print(f"Imported group {group.name} ({group.group_uuid})")
        return 0

    if args.command == "import-projects":
        password = _password(args)
        validate_source(from_url=args.from_url, user=args.user, password=password)
        repos = GitRepositoryManager(args.git_root)
        tasks = [
            ImportProjectTask(
                project=name,
                from_url=args.from_url,
                user=args.user,
                password=password or "",
                repos=repos,
                lock_root=args.lock_root,
            )
            for name in args.projects
        ]
        results = run_import_tasks(tasks, max_workers=args.workers)
        for r in results:
            print(f"{r.status.value}: {r.message}")
        return 1 if any(r.status is TaskStatus.FAILED for r in results) else 0

    raise AssertionError(f"unhandled command: {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return _run(args)
    except BadRequest as err:
        parser.error(str(err))
    except ImporterError as err:
        logger.error("%s: %s", type(err).__name__, err)
        return 1
