from __future__ import annotations

import datetime as dt
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Engine,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    insert,
    pool,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from gerrit_import.errors import ImporterError

logger = logging.getLogger(__name__)


class DuplicateKey(ImporterError):
    def __init__(self, table: str, key: object) -> None:
        self.table = table
        self.key = key
        super().__init__(f"duplicate key in {table}: {key!r}")


class ChangeStatus(str, enum.Enum):
    NEW = "n"
    DRAFT = "d"
    MERGED = "M"
    ABANDONED = "A"

    @classmethod
    def from_remote(cls, status: str) -> ChangeStatus:
        try:
            return cls[status.upper()]
        except KeyError:
            raise ValueError(f"unknown change status: {status!r}") from None


class UtcDateTime(TypeDecorator[dt.datetime]):
    """Timezone-aware UTC timestamps, also on backends that store them naive (SQLite)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect: Any) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.UTC)
        value = value.astimezone(dt.UTC)
        return value.replace(tzinfo=None) if dialect.name == "sqlite" else value

    def process_result_value(self, value: dt.datetime | None, dialect: Any) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.UTC)
        return value.astimezone(dt.UTC)


metadata = MetaData()

sequences = Table(
    "sequences",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("value", Integer, nullable=False),
)

projects = Table(
    "projects",
    metadata,
    Column("name", String(255), primary_key=True),
    Column("parent", String(255), nullable=True),
    Column("description", Text, nullable=True),
    Column("config", JSON, nullable=False, default=dict),
)

accounts = Table(
    "accounts",
    metadata,
    Column("account_id", Integer, primary_key=True),
    Column("username", String(255), nullable=True, unique=True),
    Column("email", String(255), nullable=True, index=True),
    Column("full_name", String(255), nullable=True),
    Column("registered_on", UtcDateTime(), nullable=False),
)

account_groups = Table(
    "account_groups",
    metadata,
    Column("group_id", Integer, primary_key=True),
    Column("group_uuid", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("description", Text, nullable=True),
    Column("owner_group_uuid", String(255), nullable=False),
    Column("visible_to_all", Boolean, nullable=False, default=False),
    Column("created_on", UtcDateTime(), nullable=False),
)

account_group_names = Table(
    "account_group_names",
    metadata,
    Column("name", String(255), primary_key=True),
    Column("group_id", Integer, nullable=False),
)

account_group_members = Table(
    "account_group_members",
    metadata,
    Column("account_id", Integer, ForeignKey("accounts.account_id"), nullable=False),
    Column("group_id", Integer, ForeignKey("account_groups.group_id"), nullable=False),
    PrimaryKeyConstraint("account_id", "group_id"),
)

account_group_by_id = Table(
    "account_group_by_id",
    metadata,
    Column("group_id", Integer, ForeignKey("account_groups.group_id"), nullable=False),
    Column("include_uuid", String(255), nullable=False),
    PrimaryKeyConstraint("group_id", "include_uuid"),
)

# No foreign keys between changes and patch sets: patch sets are written
# before the change row that points at them.
changes = Table(
    "changes",
    metadata,
    Column("change_id", Integer, primary_key=True),
    Column("change_key", String(64), nullable=False),
    Column("project", String(255), nullable=False, index=True),
    Column("dest_branch", String(255), nullable=False),
    Column("owner_account_id", Integer, nullable=False),
    Column("created_on", UtcDateTime(), nullable=True),
    Column("last_updated_on", UtcDateTime(), nullable=True),
    Column("status", String(1), nullable=False),
    Column("topic", String(255), nullable=True),
    Column("subject", Text, nullable=False, default=""),
    Column("current_patch_set_id", Integer, nullable=True),
    UniqueConstraint("project", "dest_branch", "change_key"),
)

patch_sets = Table(
    "patch_sets",
    metadata,
    Column("change_id", Integer, nullable=False),
    Column("patch_set_id", Integer, nullable=False),
    Column("revision", String(64), nullable=False),
    Column("uploader_account_id", Integer, nullable=True),
    Column("created_on", UtcDateTime(), nullable=True),
    Column("ref", String(255), nullable=False),
    Column("kind", String(64), nullable=True),
    Column("subject", Text, nullable=True),
    PrimaryKeyConstraint("change_id", "patch_set_id"),
)

patch_comments = Table(
    "patch_comments",
    metadata,
    Column("change_id", Integer, nullable=False),
    Column("uuid", String(64), nullable=False),
    Column("patch_set_id", Integer, nullable=True),
    Column("file_name", Text, nullable=False),
    Column("side", Integer, nullable=False),
    Column("line_nbr", Integer, nullable=True),
    Column("range", JSON, nullable=True),
    Column("parent_uuid", String(64), nullable=True),
    Column("message", Text, nullable=False),
    Column("author_account_id", Integer, nullable=False),
    Column("written_on", UtcDateTime(), nullable=True),
    Column("unresolved", Boolean, nullable=False, default=False),
    PrimaryKeyConstraint("change_id", "uuid"),
)

change_messages = Table(
    "change_messages",
    metadata,
    Column("change_id", Integer, nullable=False),
    Column("uuid", String(64), nullable=False),
    Column("author_account_id", Integer, nullable=True),
    Column("written_on", UtcDateTime(), nullable=True),
    Column("message", Text, nullable=False),
    Column("patch_set_id", Integer, nullable=True),
    Column("tag", String(255), nullable=True),
    PrimaryKeyConstraint("change_id", "uuid"),
)

patch_set_approvals = Table(
    "patch_set_approvals",
    metadata,
    Column("change_id", Integer, nullable=False),
    Column("patch_set_id", Integer, nullable=False),
    Column("account_id", Integer, nullable=False),
    Column("category_id", String(255), nullable=False),
    Column("value", Integer, nullable=False),
    Column("granted", UtcDateTime(), nullable=True),
    PrimaryKeyConstraint("change_id", "patch_set_id", "account_id", "category_id"),
)

change_hashtags = Table(
    "change_hashtags",
    metadata,
    Column("change_id", Integer, nullable=False),
    Column("hashtag", String(255), nullable=False),
    PrimaryKeyConstraint("change_id", "hashtag"),
)

change_origins = Table(
    "change_origins",
    metadata,
    Column("change_id", Integer, primary_key=True),
    Column("source_host", String(255), nullable=False),
    Column("source_change", String(512), nullable=False),
    Column("source_url", Text, nullable=False),
)

change_index = Table(
    "change_index",
    metadata,
    Column("change_id", Integer, primary_key=True),
    Column("project", String(255), nullable=False, index=True),
    Column("document", JSON, nullable=False),
    Column("indexed_on", UtcDateTime(), nullable=False),
)

audit_events = Table(
    "audit_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("who", String(255), nullable=False),
    Column("what", String(64), nullable=False, index=True),
    Column("ts", UtcDateTime(), nullable=False),
    Column("params", JSON, nullable=False),
    Column("result", Text, nullable=False),
)

_SEQUENCE_NAMES = ("account_id", "account_group_id", "change_id")


@dataclass(frozen=True)
class Project:
    name: str
    parent: str | None
    description: str | None = None
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Account:
    account_id: int
    username: str | None
    email: str | None
    full_name: str | None
    registered_on: dt.datetime | None = None


@dataclass(frozen=True)
class AccountGroup:
    group_id: int
    group_uuid: str
    name: str
    description: str | None
    owner_group_uuid: str
    visible_to_all: bool = False
    created_on: dt.datetime | None = None


@dataclass(frozen=True)
class Change:
    change_id: int
    change_key: str
    project: str
    dest_branch: str
    owner_account_id: int
    created_on: dt.datetime | None
    status: ChangeStatus
    topic: str | None = None
    subject: str = ""
    last_updated_on: dt.datetime | None = None
    current_patch_set_id: int | None = None


@dataclass(frozen=True)
class PatchSet:
    change_id: int
    patch_set_id: int
    revision: str
    uploader_account_id: int | None
    created_on: dt.datetime | None
    ref: str
    kind: str | None = None
    subject: str | None = None


@dataclass(frozen=True)
class PatchLineComment:
    change_id: int
    uuid: str
    patch_set_id: int | None
    file_name: str
    side: int
    line_nbr: int | None
    message: str
    author_account_id: int
    written_on: dt.datetime | None
    parent_uuid: str | None = None
    range: tuple[int, int, int, int] | None = None
    unresolved: bool = False


@dataclass(frozen=True)
class ChangeMessage:
    change_id: int
    uuid: str
    author_account_id: int | None
    written_on: dt.datetime | None
    message: str
    patch_set_id: int | None = None
    tag: str | None = None


@dataclass(frozen=True)
class PatchSetApproval:
    change_id: int
    patch_set_id: int
    account_id: int
    category_id: str
    value: int
    granted: dt.datetime | None


@dataclass(frozen=True)
class OriginLink:
    change_id: int
    source_host: str
    source_change: str
    source_url: str


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _enable_sqlite_foreign_keys(dbapi_conn: Any, connection_record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_review_db(database_url: str, *, echo: bool = False) -> ReviewDb:
    """Open (and create the schema of) the local review database."""
    if not database_url:
        raise ValueError("database URL must not be empty")

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=pool.StaticPool if ":memory:" in database_url else pool.NullPool,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    else:
        engine = create_engine(database_url, echo=echo, pool_pre_ping=True)

    db = ReviewDb(engine)
    db.create_schema()
    return db


class ReviewDb:
    """Local review store.

    Every write runs in its own transaction and commits immediately; there is
    no cross-entity transaction and no rollback of earlier writes.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        metadata.create_all(self._engine)
        with self._engine.begin() as conn:
            existing = set(conn.scalars(select(sequences.c.name)))
            missing = [{"name": n, "value": 0} for n in _SEQUENCE_NAMES if n not in existing]
            if missing:
                conn.execute(insert(sequences), missing)

    def dispose(self) -> None:
        self._engine.dispose()

    def _insert(self, table: Table, rows: list[dict[str, Any]], *, key: object) -> None:
        if not rows:
            return
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(table), rows)
        except IntegrityError as err:
            raise DuplicateKey(table.name, key) from err

    def _next(self, name: str) -> int:
        with self._engine.begin() as conn:
            conn.execute(
                update(sequences)
                .where(sequences.c.name == name)
                .values(value=sequences.c.value + 1)
            )
            value = conn.scalar(select(sequences.c.value).where(sequences.c.name == name))
        assert value is not None
        return int(value)

    def next_account_id(self) -> int:
        return self._next("account_id")

    def next_account_group_id(self) -> int:
        return self._next("account_group_id")

    def next_change_id(self) -> int:
        return self._next("change_id")

    # projects

    def get_project(self, name: str) -> Project | None:
        with self._engine.connect() as conn:
            row = conn.execute(select(projects).where(projects.c.name == name)).mappings().first()
        if row is None:
            return None
        return Project(
            name=row["name"],
            parent=row["parent"],
            description=row["description"],
            config=dict(row["config"] or {}),
        )

    def upsert_project(self, project: Project) -> None:
        values = {
            "parent": project.parent,
            "description": project.description,
            "config": dict(project.config),
        }
        with self._engine.begin() as conn:
            result = conn.execute(
                update(projects).where(projects.c.name == project.name).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(projects).values(name=project.name, **values))

    # accounts

    def _account(self, where: Any) -> Account | None:
        with self._engine.connect() as conn:
            row = conn.execute(select(accounts).where(where)).mappings().first()
        if row is None:
            return None
        return Account(
            account_id=row["account_id"],
            username=row["username"],
            email=row["email"],
            full_name=row["full_name"],
            registered_on=row["registered_on"],
        )

    def get_account(self, account_id: int) -> Account | None:
        return self._account(accounts.c.account_id == account_id)

    def find_account_by_username(self, username: str) -> Account | None:
        return self._account(accounts.c.username == username)

    def find_account_by_email(self, email: str) -> Account | None:
        return self._account(accounts.c.email == email)

    def insert_account(self, account: Account) -> None:
        self._insert(
            accounts,
            [
                {
                    "account_id": account.account_id,
                    "username": account.username,
                    "email": account.email,
                    "full_name": account.full_name,
                    "registered_on": account.registered_on or _now(),
                }
            ],
            key=account.username or account.account_id,
        )

    # groups

    def _group(self, where: Any) -> AccountGroup | None:
        with self._engine.connect() as conn:
            row = conn.execute(select(account_groups).where(where)).mappings().first()
        if row is None:
            return None
        return AccountGroup(
            group_id=row["group_id"],
            group_uuid=row["group_uuid"],
            name=row["name"],
            description=row["description"],
            owner_group_uuid=row["owner_group_uuid"],
            visible_to_all=bool(row["visible_to_all"]),
            created_on=row["created_on"],
        )

    def get_group_by_name(self, name: str) -> AccountGroup | None:
        return self._group(account_groups.c.name == name)

    def get_group_by_uuid(self, uuid: str) -> AccountGroup | None:
        return self._group(account_groups.c.group_uuid == uuid)

    def insert_group_name(self, name: str, group_id: int) -> None:
        self._insert(account_group_names, [{"name": name, "group_id": group_id}], key=name)

    def delete_group_name(self, name: str, group_id: int) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                delete(account_group_names).where(
                    account_group_names.c.name == name,
                    account_group_names.c.group_id == group_id,
                )
            )

    def group_name_owner(self, name: str) -> int | None:
        stmt = select(account_group_names.c.group_id).where(account_group_names.c.name == name)
        with self._engine.connect() as conn:
            return conn.scalar(stmt)

    def insert_group(self, group: AccountGroup) -> None:
        self._insert(
            account_groups,
            [
                {
                    "group_id": group.group_id,
                    "group_uuid": group.group_uuid,
                    "name": group.name,
                    "description": group.description,
                    "owner_group_uuid": group.owner_group_uuid,
                    "visible_to_all": group.visible_to_all,
                    "created_on": group.created_on or _now(),
                }
            ],
            key=group.group_uuid,
        )

    def update_group_owner(self, group_id: int, owner_group_uuid: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                update(account_groups)
                .where(account_groups.c.group_id == group_id)
                .values(owner_group_uuid=owner_group_uuid)
            )

    def insert_group_members(self, group_id: int, account_ids: Iterable[int]) -> None:
        rows = [{"account_id": a, "group_id": group_id} for a in sorted(set(account_ids))]
        self._insert(account_group_members, rows, key=group_id)

    def insert_group_includes(self, group_id: int, include_uuids: Iterable[str]) -> None:
        rows = [{"group_id": group_id, "include_uuid": u} for u in sorted(set(include_uuids))]
        self._insert(account_group_by_id, rows, key=group_id)

    def group_members(self, group_id: int) -> set[int]:
        with self._engine.connect() as conn:
            return set(
                conn.scalars(
                    select(account_group_members.c.account_id).where(
                        account_group_members.c.group_id == group_id
                    )
                )
            )

    def group_includes(self, group_id: int) -> set[str]:
        with self._engine.connect() as conn:
            return set(
                conn.scalars(
                    select(account_group_by_id.c.include_uuid).where(
                        account_group_by_id.c.group_id == group_id
                    )
                )
            )

    def groups_of_account(self, account_id: int) -> set[str]:
        stmt = (
            select(account_groups.c.group_uuid)
            .join(
                account_group_members,
                account_group_members.c.group_id == account_groups.c.group_id,
            )
            .where(account_group_members.c.account_id == account_id)
        )
        with self._engine.connect() as conn:
            return set(conn.scalars(stmt))

    def parent_groups_of(self, include_uuid: str) -> set[str]:
        stmt = (
            select(account_groups.c.group_uuid)
            .join(account_group_by_id, account_group_by_id.c.group_id == account_groups.c.group_id)
            .where(account_group_by_id.c.include_uuid == include_uuid)
        )
        with self._engine.connect() as conn:
            return set(conn.scalars(stmt))

    def count_groups(self) -> int:
        with self._engine.connect() as conn:
            return int(conn.scalar(select(func.count()).select_from(account_groups)) or 0)

    # changes

    def _change_from_row(self, row: Any) -> Change:
        return Change(
            change_id=row["change_id"],
            change_key=row["change_key"],
            project=row["project"],
            dest_branch=row["dest_branch"],
            owner_account_id=row["owner_account_id"],
            created_on=row["created_on"],
            status=ChangeStatus(row["status"]),
            topic=row["topic"],
            subject=row["subject"],
            last_updated_on=row["last_updated_on"],
            current_patch_set_id=row["current_patch_set_id"],
        )

    def get_change(self, change_id: int) -> Change | None:
        with self._engine.connect() as conn:
            row = (
                conn.execute(select(changes).where(changes.c.change_id == change_id))
                .mappings()
                .first()
            )
        return self._change_from_row(row) if row is not None else None

    def find_change(self, *, project: str, dest_branch: str, change_key: str) -> Change | None:
        stmt = select(changes).where(
            changes.c.project == project,
            changes.c.dest_branch == dest_branch,
            changes.c.change_key == change_key,
        )
        with self._engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return self._change_from_row(row) if row is not None else None

    def changes_of_project(self, project: str) -> list[Change]:
        stmt = select(changes).where(changes.c.project == project).order_by(changes.c.change_id)
        with self._engine.connect() as conn:
            return [self._change_from_row(r) for r in conn.execute(stmt).mappings()]

    def insert_change(self, change: Change) -> None:
        self._insert(
            changes,
            [
                {
                    "change_id": change.change_id,
                    "change_key": change.change_key,
                    "project": change.project,
                    "dest_branch": change.dest_branch,
                    "owner_account_id": change.owner_account_id,
                    "created_on": change.created_on,
                    "last_updated_on": change.last_updated_on,
                    "status": change.status.value,
                    "topic": change.topic,
                    "subject": change.subject,
                    "current_patch_set_id": change.current_patch_set_id,
                }
            ],
            key=change.change_key,
        )

    def insert_patch_sets(self, rows: Iterable[PatchSet]) -> None:
        items = [
            {
                "change_id": ps.change_id,
                "patch_set_id": ps.patch_set_id,
                "revision": ps.revision,
                "uploader_account_id": ps.uploader_account_id,
                "created_on": ps.created_on,
                "ref": ps.ref,
                "kind": ps.kind,
                "subject": ps.subject,
            }
            for ps in rows
        ]
        self._insert(patch_sets, items, key=[i["patch_set_id"] for i in items])

    def patch_sets(self, change_id: int) -> list[PatchSet]:
        stmt = (
            select(patch_sets)
            .where(patch_sets.c.change_id == change_id)
            .order_by(patch_sets.c.patch_set_id)
        )
        with self._engine.connect() as conn:
            return [PatchSet(**dict(r)) for r in conn.execute(stmt).mappings()]

    def insert_comments(self, rows: Iterable[PatchLineComment]) -> None:
        items = [
            {
                "change_id": c.change_id,
                "uuid": c.uuid,
                "patch_set_id": c.patch_set_id,
                "file_name": c.file_name,
                "side": c.side,
                "line_nbr": c.line_nbr,
                "range": list(c.range) if c.range is not None else None,
                "parent_uuid": c.parent_uuid,
                "message": c.message,
                "author_account_id": c.author_account_id,
                "written_on": c.written_on,
                "unresolved": c.unresolved,
            }
            for c in rows
        ]
        self._insert(patch_comments, items, key=[i["uuid"] for i in items])

    def comments(self, change_id: int) -> list[PatchLineComment]:
        stmt = select(patch_comments).where(patch_comments.c.change_id == change_id)
        out: list[PatchLineComment] = []
        with self._engine.connect() as conn:
            for r in conn.execute(stmt).mappings():
                values = dict(r)
                rng = values.pop("range")
                out.append(PatchLineComment(range=tuple(rng) if rng else None, **values))
        return out

    def insert_messages(self, rows: Iterable[ChangeMessage]) -> None:
        items = [
            {
                "change_id": m.change_id,
                "uuid": m.uuid,
                "author_account_id": m.author_account_id,
                "written_on": m.written_on,
                "message": m.message,
                "patch_set_id": m.patch_set_id,
                "tag": m.tag,
            }
            for m in rows
        ]
        self._insert(change_messages, items, key=[i["uuid"] for i in items])

    def messages(self, change_id: int) -> list[ChangeMessage]:
        stmt = select(change_messages).where(change_messages.c.change_id == change_id)
        with self._engine.connect() as conn:
            return [ChangeMessage(**dict(r)) for r in conn.execute(stmt).mappings()]

    def insert_approvals(self, rows: Iterable[PatchSetApproval]) -> None:
        items = [
            {
                "change_id": a.change_id,
                "patch_set_id": a.patch_set_id,
                "account_id": a.account_id,
                "category_id": a.category_id,
                "value": a.value,
                "granted": a.granted,
            }
            for a in rows
        ]
        self._insert(patch_set_approvals, items, key=[i["category_id"] for i in items])

    def approvals(self, change_id: int) -> list[PatchSetApproval]:
        stmt = select(patch_set_approvals).where(patch_set_approvals.c.change_id == change_id)
        with self._engine.connect() as conn:
            return [PatchSetApproval(**dict(r)) for r in conn.execute(stmt).mappings()]

    def insert_hashtags(self, change_id: int, hashtags: Iterable[str]) -> None:
        rows = [{"change_id": change_id, "hashtag": h} for h in sorted(set(hashtags))]
        self._insert(change_hashtags, rows, key=change_id)

    def hashtags(self, change_id: int) -> set[str]:
        stmt = select(change_hashtags.c.hashtag).where(change_hashtags.c.change_id == change_id)
        with self._engine.connect() as conn:
            return set(conn.scalars(stmt))

    def insert_origin(self, link: OriginLink) -> None:
        self._insert(
            change_origins,
            [
                {
                    "change_id": link.change_id,
                    "source_host": link.source_host,
                    "source_change": link.source_change,
                    "source_url": link.source_url,
                }
            ],
            key=link.change_id,
        )

    def origins(self, change_id: int) -> list[OriginLink]:
        stmt = select(change_origins).where(change_origins.c.change_id == change_id)
        with self._engine.connect() as conn:
            return [OriginLink(**dict(r)) for r in conn.execute(stmt).mappings()]

    def has_origin(self, change_id: int) -> bool:
        stmt = select(func.count()).select_from(change_origins).where(
            change_origins.c.change_id == change_id
        )
        with self._engine.connect() as conn:
            return bool(conn.scalar(stmt))

    def delete_change_details(self, change_id: int) -> None:
        """Drop everything written after the change row, keeping the row and its patch sets."""
        with self._engine.begin() as conn:
            for table in (
                patch_comments,
                change_messages,
                patch_set_approvals,
                change_hashtags,
                change_origins,
                change_index,
            ):
                conn.execute(delete(table).where(table.c.change_id == change_id))

    # search index

    def upsert_index_document(self, change_id: int, project: str, document: dict[str, Any]) -> None:
        values = {"project": project, "document": document, "indexed_on": _now()}
        with self._engine.begin() as conn:
            result = conn.execute(
                update(change_index).where(change_index.c.change_id == change_id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(change_index).values(change_id=change_id, **values))

    def index_document(self, change_id: int) -> dict[str, Any] | None:
        stmt = select(change_index.c.document).where(change_index.c.change_id == change_id)
        with self._engine.connect() as conn:
            doc = conn.scalar(stmt)
        return dict(doc) if doc is not None else None

    # audit

    def insert_audit_event(
        self, *, who: str, what: str, ts: dt.datetime, params: dict[str, Any], result: str
    ) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                insert(audit_events).values(
                    who=who, what=what, ts=ts, params=params, result=result
                )
            )

    def audit_events(self) -> list[dict[str, Any]]:
        stmt = select(audit_events).order_by(audit_events.c.id)
        with self._engine.connect() as conn:
            return [dict(r) for r in conn.execute(stmt).mappings()]
