from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
import responses

from gerrit_import.errors import BadRequest, Conflict, ValidationFailed
from gerrit_import.git_repo import GitRepositoryManager
from gerrit_import.import_lock import ImportLock, read_import_status
from gerrit_import.import_log import (
    Actor,
    AuditEvent,
    DbAuditSink,
    ImportLog,
    create_import_logger,
)
from gerrit_import.project_import import ProjectImporter, ProjectImportInput
from gerrit_import.review_db import Project, ReviewDb

SOURCE = "http://gerrit.test"
ADMIN = Actor("admin", account_id=1)


def _body(data: object) -> str:
    return ")]}'\n" + json.dumps(data)


def _change() -> dict[str, object]:
    owner = {"_account_id": 1000, "username": "alice", "email": "alice@example.test"}
    return {
        "id": "foo~master~I1",
        "change_id": "I1",
        "_number": 1,
        "project": "foo",
        "branch": "master",
        "owner": owner,
        "created": "2015-03-10 12:00:00.000000000",
        "status": "NEW",
        "subject": "Add foo",
        "current_revision": "aaa",
        "revisions": {"aaa": {"_number": 1, "ref": "refs/changes/01/1/1", "uploader": owner}},
    }


def _add_remote(parent: str | None = "Public-Projects") -> None:
    project: dict[str, object] = {"name": "foo"}
    if parent:
        project["parent"] = parent
    responses.add(responses.GET, f"{SOURCE}/a/projects/foo", body=_body(project), status=200)
    responses.add(responses.GET, f"{SOURCE}/a/changes/", body=_body([_change()]), status=200)
    responses.add(
        responses.GET, f"{SOURCE}/a/changes/foo~master~I1/comments", body=_body({}), status=200
    )


class _FakeGit:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def run_git(self, argv: list[str], *, env: dict[str, str] | None = None) -> str:
        self.calls.append(argv)
        if argv[1:3] == ["init", "--bare"]:
            path = Path(argv[-1])
            path.mkdir(parents=True, exist_ok=True)
            (path / "HEAD").write_text("ref: refs/heads/master\n", encoding="utf-8")
        if "fetch" in argv:
            return " * [new ref] refs/changes/01/1/1 -> refs/changes/01/1/1"
        return ""


@pytest.fixture
def fake_git() -> Iterator[_FakeGit]:
    git = _FakeGit()
    with (
        patch("gerrit_import.git_repo._run_git", side_effect=git.run_git),
        patch("gerrit_import.git_repo._git_succeeds", return_value=True),
    ):
        yield git


class _Env:
    def __init__(self, db: ReviewDb, tmp_path: Path) -> None:
        self.db = db
        self.log_path = tmp_path / "logs" / "import_log"
        self.lock_root = tmp_path / "import-status"
        self.import_log = ImportLog(create_import_logger(self.log_path), audit=DbAuditSink(db))
        self.importer = ProjectImporter(
            db=db,
            repos=GitRepositoryManager(tmp_path / "git"),
            lock_root=self.lock_root,
            import_log=self.import_log,
        )

    def log_records(self) -> list[dict[str, object]]:
        self.import_log.close()
        text = self.log_path.read_text(encoding="utf-8")
        return [json.loads(line) for line in text.splitlines()]


@pytest.fixture
def env(db: ReviewDb, tmp_path: Path) -> _Env:
    db.upsert_project(
        Project(name="Public-Projects", parent="All-Projects", config={"submit_type": "MERGE"})
    )
    return _Env(db, tmp_path)


def _input(**overrides: str | None) -> ProjectImportInput:
    values: dict[str, str | None] = {
        "from_url": SOURCE,
        "user": "admin",
        "password": "secret",
        "parent": None,
    }
    values.update(overrides)
    return ProjectImportInput(**values)


@responses.activate
def test_import_project_end_to_end(env: _Env, fake_git: _FakeGit) -> None:
    _add_remote()

    result = env.importer.import_project("foo", _input(), actor=ADMIN)

    assert result.parent == "Public-Projects"
    assert "[new ref]" in result.fetch_summary
    assert len(result.replay.replayed) == 1

    assert env.importer.repos.exists("foo")
    git_dir = str(env.importer.repos.path_for("foo"))
    assert ["git", "--git-dir", git_dir, "config", "remote.origin.fetch", "+refs/*:refs/*"] in (
        fake_git.calls
    )
    assert any(argv[-2:] == ["fetch", "origin"] for argv in fake_git.calls)

    project = env.db.get_project("foo")
    assert project is not None
    assert project.parent == "Public-Projects"
    assert project.config == {"submit_type": "MERGE"}
    assert [c.change_key for c in env.db.changes_of_project("foo")] == ["I1"]

    records = env.log_records()
    assert len(records) == 1
    assert records[0]["result"] == "OK"
    assert records[0]["target_project_name"] == "foo"
    assert records[0]["from"] == SOURCE
    assert [e["what"] for e in env.db.audit_events()] == ["ProjectImport"]


@responses.activate
def test_lock_is_released_and_status_kept(env: _Env, fake_git: _FakeGit) -> None:
    _add_remote()

    env.importer.import_project("foo", _input(), actor=ADMIN)

    assert not (env.lock_root / "foo.lock").exists()
    assert read_import_status(env.lock_root, "foo") == {"from": SOURCE, "user": "admin"}
    assert "secret" not in (env.lock_root / "foo").read_text(encoding="utf-8")


@responses.activate
def test_concurrent_import_conflicts_without_touching_lock(
    env: _Env, fake_git: _FakeGit
) -> None:
    _add_remote()
    held = ImportLock(env.lock_root, "foo").acquire()
    held.persist({"from": "http://other.test", "user": "bob"})
    before = held.lock_path.read_bytes()

    with pytest.raises(Conflict):
        env.importer.import_project("foo", _input(), actor=ADMIN)

    assert held.lock_path.read_bytes() == before
    assert fake_git.calls == []
    assert len(responses.calls) == 0
    assert env.log_records() == []
    held.release()


@responses.activate
def test_missing_parent_is_logged_as_failure(env: _Env, fake_git: _FakeGit) -> None:
    _add_remote(parent="Private-Projects")

    with pytest.raises(ValidationFailed, match="Parent project Private-Projects"):
        env.importer.import_project("foo", _input(), actor=ADMIN)

    assert not (env.lock_root / "foo.lock").exists()
    assert not env.importer.repos.exists("foo")
    [record] = env.log_records()
    assert record["result"] == "FAIL"
    assert "Private-Projects" in str(record["error"])
    assert [e["what"] for e in env.db.audit_events()] == ["ProjectImportFailure"]


class _BrokenAuditSink:
    def dispatch(self, event: AuditEvent) -> None:
        raise RuntimeError("audit store unavailable")


@responses.activate
def test_audit_failure_does_not_hide_import_error(
    env: _Env, fake_git: _FakeGit, caplog: pytest.LogCaptureFixture
) -> None:
    _add_remote(parent="Private-Projects")
    env.import_log.close()
    env.import_log = ImportLog(create_import_logger(env.log_path), audit=_BrokenAuditSink())
    importer = ProjectImporter(
        db=env.db,
        repos=env.importer.repos,
        lock_root=env.lock_root,
        import_log=env.import_log,
    )

    with pytest.raises(ValidationFailed, match="Parent project Private-Projects"):
        importer.import_project("foo", _input(), actor=ADMIN)

    assert not (env.lock_root / "foo.lock").exists()
    assert "Failed to record import failure of foo" in caplog.text
    [record] = env.log_records()
    assert record["result"] == "FAIL"


@responses.activate
def test_explicit_parent_wins_over_remote(env: _Env, fake_git: _FakeGit) -> None:
    _add_remote(parent="Private-Projects")

    result = env.importer.import_project("foo", _input(parent="Public-Projects"), actor=ADMIN)

    assert result.parent == "Public-Projects"
    assert read_import_status(env.lock_root, "foo") == {
        "from": SOURCE,
        "user": "admin",
        "parent": "Public-Projects",
    }


@responses.activate
def test_fetch_failure_releases_lock_and_logs(env: _Env, fake_git: _FakeGit) -> None:
    _add_remote()

    def _failing_git(argv: list[str], *, env: dict[str, str] | None = None) -> str:
        if "fetch" in argv:
            raise OSError("network unreachable")
        return fake_git.run_git(argv, env=env)

    with patch("gerrit_import.git_repo._run_git", side_effect=_failing_git):
        with pytest.raises(OSError, match="network unreachable"):
            env.importer.import_project("foo", _input(), actor=ADMIN)

    assert not (env.lock_root / "foo.lock").exists()
    assert read_import_status(env.lock_root, "foo") == {"from": SOURCE, "user": "admin"}
    [record] = env.log_records()
    assert record["error"] == "OSError: network unreachable"


def test_missing_credentials_are_rejected_before_locking(env: _Env) -> None:
    with pytest.raises(BadRequest, match="pass is required"):
        env.importer.import_project("foo", _input(password=None), actor=ADMIN)

    assert not env.lock_root.exists()


@responses.activate
def test_resume_reuses_persisted_parameters(env: _Env, fake_git: _FakeGit) -> None:
    _add_remote()
    env.importer.import_project("foo", _input(), actor=ADMIN)

    result = env.importer.resume_project_import("foo", password="secret", actor=ADMIN)

    assert result.replay.replayed == []
    assert result.replay.skipped == ["I1"]
    assert len(env.log_records()) == 2


def test_resume_without_previous_import_is_bad_request(env: _Env) -> None:
    with pytest.raises(BadRequest, match="no previous import"):
        env.importer.resume_project_import("foo", password="secret", actor=ADMIN)


def test_resume_requires_password(env: _Env) -> None:
    with ImportLock(env.lock_root, "foo") as lock:
        lock.persist({"from": SOURCE, "user": "admin"})

    with pytest.raises(BadRequest, match="pass is required"):
        env.importer.resume_project_import("foo", password=None, actor=ADMIN, force=True)


def test_resume_without_repository_needs_force(env: _Env) -> None:
    with ImportLock(env.lock_root, "foo") as lock:
        lock.persist({"from": SOURCE, "user": "admin"})

    with pytest.raises(BadRequest, match="use force"):
        env.importer.resume_project_import("foo", password="secret", actor=ADMIN)


@responses.activate
def test_forced_resume_recreates_repository(env: _Env, fake_git: _FakeGit) -> None:
    _add_remote()
    with ImportLock(env.lock_root, "foo") as lock:
        lock.persist({"from": SOURCE, "user": "admin", "parent": "Public-Projects"})

    result = env.importer.resume_project_import("foo", password="secret", actor=ADMIN, force=True)

    assert result.parent == "Public-Projects"
    assert env.importer.repos.exists("foo")
    assert len(result.replay.replayed) == 1
