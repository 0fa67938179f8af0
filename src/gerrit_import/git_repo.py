from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)

ORIGIN = "origin"
MIRROR_ALL_REFS = "+refs/*:refs/*"


class RepositoryNotFound(FileNotFoundError):
    pass


def _run_git(argv: list[str], *, env: dict[str, str] | None = None) -> str:
    proc = subprocess.run(argv, check=True, env=env, capture_output=True, text=True)
    return "\n".join(s for s in (proc.stdout.strip(), proc.stderr.strip()) if s)


def _git_succeeds(argv: list[str]) -> bool:
    return subprocess.run(argv, capture_output=True).returncode == 0


def _write_askpass_script(dir_path: Path) -> Path:
    path = dir_path / "askpass.sh"
    path.write_text(
        "\n".join(
            [
                "#!/bin/sh",
                'case "$1" in',
                '*Username*) echo "$GERRIT_IMPORT_GIT_USERNAME" ;;',
                '*Password*) echo "$GERRIT_IMPORT_GIT_PASSWORD" ;;',
                "*) echo ;;",
                "esac",
                "",
            ]
        ),
        encoding="utf-8",
    )
    path.chmod(0o700)
    return path


def _git_http_auth_env(*, askpass_path: Path, username: str, password: str) -> dict[str, str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_ASKPASS"] = str(askpass_path)
    env["GERRIT_IMPORT_GIT_USERNAME"] = username
    env["GERRIT_IMPORT_GIT_PASSWORD"] = password
    return env


class GitRepository:
    """Handle on a local bare repository; close it on every exit path."""

    def __init__(self, name: str, path: Path) -> None:
        self.name = name
        self.path = path
        self._closed = False

    def _git(self, *args: str) -> list[str]:
        if self._closed:
            raise ValueError(f"repository {self.name} is closed")
        return ["git", "--git-dir", str(self.path), *args]

    def set_config(self, key: str, value: str) -> None:
        _run_git(self._git("config", key, value))

    def get_config(self, key: str) -> str | None:
        try:
            return _run_git(self._git("config", "--get", key)) or None
        except subprocess.CalledProcessError:
            return None

    def has_commit(self, sha: str) -> bool:
        return _git_succeeds(self._git("cat-file", "-e", f"{sha}^{{commit}}"))

    def fetch(self, *, remote: str, username: str, password: str) -> str:
        with tempfile.TemporaryDirectory(prefix="gerrit-import-") as tmp:
            askpass = _write_askpass_script(Path(tmp))
            env = _git_http_auth_env(askpass_path=askpass, username=username, password=password)
            return _run_git(
                ["git", "-c", "credential.helper=", *self._git("fetch", remote)[1:]],
                env=env,
            )

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> GitRepository:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class GitRepositoryManager:
    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, name: str) -> Path:
        if not name or name.startswith("/") or ".." in Path(name).parts:
            raise ValueError(f"invalid repository name: {name!r}")
        return self.root / f"{name}.git"

    def exists(self, name: str) -> bool:
        return (self.path_for(name) / "HEAD").exists()

    def open_repository(self, name: str) -> GitRepository:
        if not self.exists(name):
            raise RepositoryNotFound(f"repository {name} not found under {self.root}")
        return GitRepository(name, self.path_for(name))

    def create_repository(self, name: str) -> GitRepository:
        path = self.path_for(name)
        if self.exists(name):
            raise FileExistsError(f"repository {name} already exists at {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        _run_git(["git", "init", "--bare", "--quiet", str(path)])
        logger.info("Created repository %s", path)
        return GitRepository(name, path)

    def open_or_create(self, name: str) -> GitRepository:
        try:
            return self.open_repository(name)
        except RepositoryNotFound:
            return self.create_repository(name)


def origin_url(source_url: str, project: str) -> str:
    return f"{source_url.rstrip('/')}/{project}"


def configure_repository(repo: GitRepository, *, project: str, source_url: str) -> None:
    """Point `origin` at the source project and mirror all of its refs.

    TLS verification is switched off for the origin URL only. This trusts the
    network path to the source host.
    """
    url = origin_url(source_url, project)
    repo.set_config(f"remote.{ORIGIN}.url", url)
    repo.set_config(f"remote.{ORIGIN}.fetch", MIRROR_ALL_REFS)
    repo.set_config(f"http.{url}.sslVerify", "false")


def fetch_all_refs(repo: GitRepository, *, username: str, password: str) -> str:
    """Fetch every ref of `origin`; returns git's summary output."""
    summary = repo.fetch(remote=ORIGIN, username=username, password=password)
    logger.info("Fetched %s: %s", repo.name, summary or "(no output)")
    return summary
