from __future__ import annotations

import datetime as dt
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote


@dataclass(frozen=True)
class RemoteAccount:
    account_id: int | None
    username: str | None = None
    email: str | None = None
    name: str | None = None

    def describe(self) -> str:
        for hint in (self.username, self.email, self.name):
            if hint:
                return hint
        return f"account {self.account_id}" if self.account_id is not None else "unknown account"


@dataclass(frozen=True)
class RemoteProject:
    name: str
    parent: str | None


@dataclass(frozen=True)
class RemoteGroupRef:
    uuid: str
    name: str | None


@dataclass(frozen=True)
class RemoteGroup:
    uuid: str
    name: str
    description: str | None
    owner_uuid: str
    owner_name: str | None
    visible_to_all: bool
    members: tuple[RemoteAccount, ...]
    includes: tuple[RemoteGroupRef, ...]

    @property
    def is_self_owned(self) -> bool:
        return self.owner_uuid == self.uuid


@dataclass(frozen=True)
class RemoteRevision:
    sha: str
    number: int
    created: dt.datetime | None
    uploader: RemoteAccount | None
    ref: str
    kind: str | None = None
    subject: str | None = None


@dataclass(frozen=True)
class RemoteComment:
    uuid: str
    path: str
    patch_set: int | None
    message: str
    updated: dt.datetime | None
    author: RemoteAccount | None
    in_reply_to: str | None = None
    side: str = "REVISION"
    line: int | None = None
    range: tuple[int, int, int, int] | None = None
    unresolved: bool = False


@dataclass(frozen=True)
class RemoteMessage:
    uuid: str
    author: RemoteAccount | None
    date: dt.datetime | None
    message: str
    revision_number: int | None = None
    tag: str | None = None


@dataclass(frozen=True)
class RemoteApproval:
    label: str
    account: RemoteAccount
    value: int
    date: dt.datetime | None


@dataclass(frozen=True)
class RemoteChange:
    id: str
    change_key: str
    number: int
    project: str
    branch: str
    owner: RemoteAccount
    created: dt.datetime | None
    updated: dt.datetime | None
    status: str
    topic: str | None
    subject: str
    current_revision: str | None
    revisions: tuple[RemoteRevision, ...]
    messages: tuple[RemoteMessage, ...]
    approvals: tuple[RemoteApproval, ...]
    hashtags: tuple[str, ...]
    more_changes: bool = False


_NANOS_RE = re.compile(r"\.(\d+)$")


def parse_timestamp(raw: str | None) -> dt.datetime | None:
    """Parse a remote timestamp (`2015-03-10 12:34:56.000000000`, always UTC)."""
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None

    # fromisoformat() accepts at most microseconds.
    m = _NANOS_RE.search(value)
    if m:
        value = value[: m.start()] + "." + m.group(1)[:6].ljust(6, "0")

    parsed = dt.datetime.fromisoformat(value.replace(" ", "T", 1))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def parse_account(data: Any) -> RemoteAccount | None:
    if not isinstance(data, Mapping):
        return None
    account_id = data.get("_account_id")
    return RemoteAccount(
        account_id=int(account_id) if account_id is not None else None,
        username=data.get("username") or None,
        email=data.get("email") or None,
        name=data.get("name") or None,
    )


def _require_account(data: Any, *, what: str) -> RemoteAccount:
    account = parse_account(data)
    if account is None:
        raise ValueError(f"{what} is missing account information")
    return account


def parse_project(data: Mapping[str, Any]) -> RemoteProject:
    return RemoteProject(name=str(data["name"]), parent=data.get("parent") or None)


def _group_uuid(raw: str) -> str:
    # Group ids are returned URL-encoded (e.g. `ldap%3Acn%3Ddevs`).
    return unquote(raw)


def parse_group(data: Mapping[str, Any]) -> RemoteGroup:
    uuid = _group_uuid(str(data["id"]))
    owner_raw = data.get("owner_id")
    options = data.get("options") or {}

    members: list[RemoteAccount] = []
    for raw in data.get("members") or []:
        if (member := parse_account(raw)) is not None:
            members.append(member)

    includes: list[RemoteGroupRef] = []
    for raw in data.get("includes") or []:
        if isinstance(raw, Mapping) and raw.get("id"):
            includes.append(
                RemoteGroupRef(uuid=_group_uuid(str(raw["id"])), name=raw.get("name") or None)
            )

    return RemoteGroup(
        uuid=uuid,
        name=str(data["name"]),
        description=data.get("description") or None,
        owner_uuid=_group_uuid(str(owner_raw)) if owner_raw else uuid,
        owner_name=data.get("owner") or None,
        visible_to_all=bool(options.get("visible_to_all", False)),
        members=tuple(members),
        includes=tuple(includes),
    )


def _parse_revisions(data: Mapping[str, Any]) -> tuple[RemoteRevision, ...]:
    out: list[RemoteRevision] = []
    for sha, rev in (data.get("revisions") or {}).items():
        if not isinstance(rev, Mapping):
            continue
        commit = rev.get("commit") or {}
        number = int(rev["_number"])
        out.append(
            RemoteRevision(
                sha=str(sha),
                number=number,
                created=parse_timestamp(rev.get("created")),
                uploader=parse_account(rev.get("uploader")),
                ref=rev.get("ref") or "",
                kind=rev.get("kind") or None,
                subject=commit.get("subject") if isinstance(commit, Mapping) else None,
            )
        )
    out.sort(key=lambda r: r.number)
    return tuple(out)


def _parse_messages(data: Mapping[str, Any]) -> tuple[RemoteMessage, ...]:
    out: list[RemoteMessage] = []
    for raw in data.get("messages") or []:
        if not isinstance(raw, Mapping):
            continue
        rev_number = raw.get("_revision_number")
        out.append(
            RemoteMessage(
                uuid=str(raw["id"]),
                author=parse_account(raw.get("author")),
                date=parse_timestamp(raw.get("date")),
                message=raw.get("message") or "",
                revision_number=int(rev_number) if rev_number is not None else None,
                tag=raw.get("tag") or None,
            )
        )
    return tuple(out)


def _parse_approvals(data: Mapping[str, Any]) -> tuple[RemoteApproval, ...]:
    out: list[RemoteApproval] = []
    for label, info in (data.get("labels") or {}).items():
        if not isinstance(info, Mapping):
            continue
        for raw in info.get("all") or []:
            value = raw.get("value") if isinstance(raw, Mapping) else None
            # Reviewers without a vote are listed with value 0 (or no value).
            if not value:
                continue
            out.append(
                RemoteApproval(
                    label=str(label),
                    account=_require_account(raw, what=f"approval on label {label}"),
                    value=int(value),
                    date=parse_timestamp(raw.get("date")),
                )
            )
    return tuple(out)


def parse_change(data: Mapping[str, Any]) -> RemoteChange:
    return RemoteChange(
        id=str(data["id"]),
        change_key=str(data["change_id"]),
        number=int(data["_number"]),
        project=str(data["project"]),
        branch=str(data["branch"]),
        owner=_require_account(data.get("owner"), what=f"owner of change {data['_number']}"),
        created=parse_timestamp(data.get("created")),
        updated=parse_timestamp(data.get("updated")),
        status=str(data["status"]),
        topic=data.get("topic") or None,
        subject=data.get("subject") or "",
        current_revision=data.get("current_revision") or None,
        revisions=_parse_revisions(data),
        messages=_parse_messages(data),
        approvals=_parse_approvals(data),
        hashtags=tuple(str(h) for h in data.get("hashtags") or []),
        more_changes=bool(data.get("_more_changes", False)),
    )


def parse_comments(data: Mapping[str, Any]) -> list[RemoteComment]:
    """Flatten a `{path: [comment, ...]}` mapping into a list of comments."""
    out: list[RemoteComment] = []
    for path, items in data.items():
        if not isinstance(items, list):
            continue
        for raw in items:
            if not isinstance(raw, Mapping):
                continue
            rng = raw.get("range")
            patch_set = raw.get("patch_set")
            out.append(
                RemoteComment(
                    uuid=str(raw["id"]),
                    path=str(path),
                    patch_set=int(patch_set) if patch_set is not None else None,
                    message=raw.get("message") or "",
                    updated=parse_timestamp(raw.get("updated")),
                    author=parse_account(raw.get("author")),
                    in_reply_to=raw.get("in_reply_to") or None,
                    side=raw.get("side") or "REVISION",
                    line=int(raw["line"]) if raw.get("line") is not None else None,
                    range=(
                        (
                            int(rng["start_line"]),
                            int(rng["start_character"]),
                            int(rng["end_line"]),
                            int(rng["end_character"]),
                        )
                        if isinstance(rng, Mapping)
                        else None
                    ),
                    unresolved=bool(raw.get("unresolved", False)),
                )
            )
    return out
