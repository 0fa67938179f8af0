from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Protocol
from urllib.parse import urlsplit

from gerrit_import.accounts import IdentityResolver
from gerrit_import.change_index import ChangeIndexer
from gerrit_import.errors import ImporterError, NoSuchAccount
from gerrit_import.remote_model import RemoteChange, RemoteComment
from gerrit_import.review_db import (
    Change,
    ChangeMessage,
    ChangeStatus,
    OriginLink,
    PatchLineComment,
    PatchSet,
    PatchSetApproval,
    ReviewDb,
)

logger = logging.getLogger(__name__)

R_HEADS = "refs/heads/"

_EPOCH = dt.datetime.min.replace(tzinfo=dt.UTC)


class MissingCommit(ImporterError):
    pass


class _ReplayApi(Protocol):
    def iter_changes(self, project: str) -> Iterable[RemoteChange]: ...

    def get_comments(self, change_id: str) -> list[RemoteComment]: ...


class _Repository(Protocol):
    def has_commit(self, sha: str) -> bool: ...


@dataclass
class ReplaySummary:
    replayed: list[int] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    completed: list[int] = field(default_factory=list)


def _progress_step(total: int, *, target_messages: int = 50, min_step: int = 25) -> int:
    if total <= 0:
        return 1
    step = max(1, total // target_messages)
    return max(min_step, step)


def _format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "0s"
    total = int(round(seconds))
    parts: list[str] = []
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


def full_branch_name(branch: str) -> str:
    if branch.startswith(R_HEADS):
        return branch
    return R_HEADS + branch


def create_change(
    c: RemoteChange, *, project: str, db: ReviewDb, resolver: IdentityResolver
) -> Change:
    change_id = db.next_change_id()
    return Change(
        change_id=change_id,
        change_key=c.change_key,
        project=project,
        dest_branch=full_branch_name(c.branch),
        owner_account_id=resolver.resolve(c.owner),
        created_on=c.created,
        status=ChangeStatus.from_remote(c.status),
        topic=c.topic,
        subject=c.subject,
        last_updated_on=c.updated,
    )


def replay_revisions(
    change: Change,
    c: RemoteChange,
    *,
    db: ReviewDb,
    repo: _Repository,
    resolver: IdentityResolver,
) -> Change:
    """Write the patch sets of `change`; their commits must already be fetched."""
    if not c.revisions:
        raise ImporterError(f"change {c.number} ({c.change_key}) has no revisions")

    uploaders = resolver.resolve_all(r.uploader for r in c.revisions if r.uploader is not None)
    for rev in c.revisions:
        if not repo.has_commit(rev.sha):
            raise MissingCommit(
                f"commit {rev.sha} of change {c.number} patch set {rev.number} "
                "is missing from the repository"
            )

    rows = [
        PatchSet(
            change_id=change.change_id,
            patch_set_id=rev.number,
            revision=rev.sha,
            uploader_account_id=(
                uploaders[rev.uploader] if rev.uploader is not None else change.owner_account_id
            ),
            created_on=rev.created,
            ref=rev.ref,
            kind=rev.kind,
            subject=rev.subject,
        )
        for rev in c.revisions
    ]
    db.insert_patch_sets(rows)

    current = max(rev.number for rev in c.revisions)
    for rev in c.revisions:
        if rev.sha == c.current_revision:
            current = rev.number
    return replace(change, current_patch_set_id=current)


def order_comment_threads(comments: Iterable[RemoteComment]) -> list[RemoteComment]:
    """Order comments so every reply follows the comment it answers."""
    items = list(comments)
    by_uuid = {c.uuid: c for c in items}
    children: dict[str | None, list[RemoteComment]] = {}
    for c in items:
        parent = c.in_reply_to if c.in_reply_to in by_uuid else None
        children.setdefault(parent, []).append(c)

    def key(c: RemoteComment) -> tuple[dt.datetime, str]:
        return (c.updated or _EPOCH, c.uuid)

    out: list[RemoteComment] = []
    seen: set[str] = set()
    pending = sorted(children.get(None, []), key=key, reverse=True)
    while pending:
        c = pending.pop()
        if c.uuid in seen:
            continue
        seen.add(c.uuid)
        out.append(c)
        pending.extend(sorted(children.get(c.uuid, []), key=key, reverse=True))

    # Replies that only reference each other never reach a root.
    out.extend(sorted((c for c in items if c.uuid not in seen), key=key))
    return out


def replay_inline_comments(
    change: Change,
    c: RemoteChange,
    *,
    api: _ReplayApi,
    db: ReviewDb,
    resolver: IdentityResolver,
) -> int:
    comments = order_comment_threads(api.get_comments(c.id))
    for comment in comments:
        if comment.author is None:
            raise NoSuchAccount(f"comment {comment.uuid} on change {c.number} has no author")
    authors = resolver.resolve_all(x.author for x in comments if x.author is not None)

    rows = [
        PatchLineComment(
            change_id=change.change_id,
            uuid=x.uuid,
            patch_set_id=x.patch_set or change.current_patch_set_id,
            file_name=x.path,
            side=0 if x.side == "PARENT" else 1,
            line_nbr=x.line,
            message=x.message,
            author_account_id=authors[x.author],
            written_on=x.updated,
            parent_uuid=x.in_reply_to,
            range=x.range,
            unresolved=x.unresolved,
        )
        for x in comments
        if x.author is not None
    ]
    db.insert_comments(rows)
    return len(rows)


def replay_messages(
    change: Change, c: RemoteChange, *, db: ReviewDb, resolver: IdentityResolver
) -> int:
    messages = sorted(c.messages, key=lambda m: (m.date or _EPOCH, m.uuid))
    authors = resolver.resolve_all(m.author for m in messages if m.author is not None)
    rows = [
        ChangeMessage(
            change_id=change.change_id,
            uuid=m.uuid,
            # Messages without an author were written by the server itself.
            author_account_id=authors[m.author] if m.author is not None else None,
            written_on=m.date,
            message=m.message,
            patch_set_id=m.revision_number,
            tag=m.tag,
        )
        for m in messages
    ]
    db.insert_messages(rows)
    return len(rows)


def add_approvals(
    change: Change, c: RemoteChange, *, db: ReviewDb, resolver: IdentityResolver
) -> int:
    assert change.current_patch_set_id is not None
    voters = resolver.resolve_all(a.account for a in c.approvals)
    rows = [
        PatchSetApproval(
            change_id=change.change_id,
            patch_set_id=change.current_patch_set_id,
            account_id=voters[a.account],
            category_id=a.label,
            value=a.value,
            granted=a.date,
        )
        for a in c.approvals
    ]
    db.insert_approvals(rows)
    return len(rows)


def add_hashtags(change: Change, c: RemoteChange, *, db: ReviewDb) -> int:
    db.insert_hashtags(change.change_id, c.hashtags)
    return len(set(c.hashtags))


def insert_link_to_original_change(
    change: Change, c: RemoteChange, *, source_url: str, db: ReviewDb
) -> OriginLink:
    base = source_url.rstrip("/")
    link = OriginLink(
        change_id=change.change_id,
        source_host=urlsplit(base).netloc or base,
        source_change=c.id,
        source_url=f"{base}/#/c/{c.number}/",
    )
    db.insert_origin(link)
    return link


def replay_change(
    c: RemoteChange,
    *,
    project: str,
    source_url: str,
    api: _ReplayApi,
    db: ReviewDb,
    repo: _Repository,
    resolver: IdentityResolver,
    indexer: ChangeIndexer,
) -> Change:
    change = create_change(c, project=project, db=db, resolver=resolver)
    change = replay_revisions(change, c, db=db, repo=repo, resolver=resolver)
    # Readers only see the change once its patch sets exist.
    db.insert_change(change)

    replay_change_details(
        change, c, source_url=source_url, api=api, db=db, resolver=resolver, indexer=indexer
    )
    return change


def replay_change_details(
    change: Change,
    c: RemoteChange,
    *,
    source_url: str,
    api: _ReplayApi,
    db: ReviewDb,
    resolver: IdentityResolver,
    indexer: ChangeIndexer,
) -> None:
    """Write everything that hangs off an existing change row.

    The origin link goes last: a change without one was interrupted and is
    completed by the next run.
    """
    replay_inline_comments(change, c, api=api, db=db, resolver=resolver)
    replay_messages(change, c, db=db, resolver=resolver)
    add_approvals(change, c, db=db, resolver=resolver)
    add_hashtags(change, c, db=db)
    insert_link_to_original_change(change, c, source_url=source_url, db=db)

    indexer.index(change.change_id)


def replay_changes(
    *,
    project: str,
    source_url: str,
    api: _ReplayApi,
    db: ReviewDb,
    repo: _Repository,
    resolver: IdentityResolver,
    indexer: ChangeIndexer,
) -> ReplaySummary:
    """Replay every remote change of `project`, one at a time, in query order.

    The first failure aborts the run. Changes replayed before it stay in the
    store. A later run skips changes whose key already exists on the same
    branch and finishes the one that was interrupted.
    """
    remote_changes = list(api.iter_changes(project))
    summary = ReplaySummary()

    total = len(remote_changes)
    if total:
        logger.info("Replaying changes of %s (%d)", project, total)
    step = _progress_step(total)
    started = time.monotonic()

    for idx, c in enumerate(remote_changes, start=1):
        if total and (idx == 1 or idx % step == 0 or idx == total):
            elapsed = time.monotonic() - started
            avg = elapsed / idx if idx else 0.0
            logger.info(
                "Changes progress: %d/%d (avg %.2fs, eta %s)",
                idx,
                total,
                avg,
                _format_duration(avg * (total - idx)),
            )

        existing = db.find_change(
            project=project, dest_branch=full_branch_name(c.branch), change_key=c.change_key
        )
        if existing is not None and not db.has_origin(existing.change_id):
            logger.info(
                "Completing change %s (%s): interrupted while importing as %d",
                c.number,
                c.change_key,
                existing.change_id,
            )
            db.delete_change_details(existing.change_id)
            replay_change_details(
                existing,
                c,
                source_url=source_url,
                api=api,
                db=db,
                resolver=resolver,
                indexer=indexer,
            )
            summary.completed.append(existing.change_id)
            continue
        if existing is not None:
            logger.info(
                "Skipping change %s (%s): already imported as %d",
                c.number,
                c.change_key,
                existing.change_id,
            )
            summary.skipped.append(c.change_key)
            continue

        change = replay_change(
            c,
            project=project,
            source_url=source_url,
            api=api,
            db=db,
            repo=repo,
            resolver=resolver,
            indexer=indexer,
        )
        summary.replayed.append(change.change_id)

    return summary
