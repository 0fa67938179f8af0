from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Protocol

from gerrit_import.accounts import IdentityResolver
from gerrit_import.caches import AccountCache, GroupCache, GroupIncludeCache
from gerrit_import.errors import (
    Conflict,
    GroupCycle,
    NoSuchAccount,
    PreconditionFailed,
    ValidationFailed,
)
from gerrit_import.remote_api import RemoteApi, validate_source
from gerrit_import.remote_model import RemoteAccount, RemoteGroup
from gerrit_import.review_db import AccountGroup, DuplicateKey, ReviewDb

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupImportOptions:
    import_owner_group: bool = False
    import_included_groups: bool = False


@dataclass(frozen=True)
class CreateGroupArgs:
    name: str
    uuid: str
    description: str | None
    visible_to_all: bool
    owner_group_uuid: str
    initial_members: frozenset[int]
    initial_groups: frozenset[str]


class GroupCreationValidator(Protocol):
    def validate_new_group(self, args: CreateGroupArgs) -> None:
        """Raise `ValidationFailed` to reject the group."""
        ...


class _GroupApi(Protocol):
    def get_group(self, id_or_name: str) -> RemoteGroup: ...


class GroupImporter:
    """Materialize a remote group locally, importing its owner and included
    groups first when the options allow it.

    Validation runs to completion before any dependency is imported or any
    row is written. Nested imports share the caller's options and the set
    of groups currently being imported, so an owner/include cycle fails
    with `GroupCycle` instead of recursing forever.
    """

    def __init__(
        self,
        *,
        db: ReviewDb,
        api: _GroupApi,
        resolver: IdentityResolver,
        group_cache: GroupCache,
        account_cache: AccountCache,
        include_cache: GroupIncludeCache,
        validators: Iterable[GroupCreationValidator] = (),
        new_groups_visible_to_all: bool = False,
    ) -> None:
        self._db = db
        self._api = api
        self._resolver = resolver
        self._groups = group_cache
        self._accounts = account_cache
        self._includes = include_cache
        self._validators = list(validators)
        self._new_groups_visible_to_all = new_groups_visible_to_all

    def import_group(self, name_or_uuid: str, options: GroupImportOptions) -> AccountGroup:
        return self._import(self._api.get_group(name_or_uuid), options, visiting=())

    def _import(
        self, info: RemoteGroup, options: GroupImportOptions, *, visiting: tuple[str, ...]
    ) -> AccountGroup:
        if info.uuid in visiting:
            raise GroupCycle(info.uuid, list(visiting))
        visiting = (*visiting, info.uuid)

        member_ids = self._validate(info, options)

        if not info.is_self_owned and self._groups.get_by_uuid(info.owner_uuid) is None:
            logger.info("Importing owner group %s of %s", info.owner_uuid, info.name)
            self._import_dependency(info.owner_uuid, options, visiting=visiting)
        for ref in info.includes:
            if self._groups.get_by_uuid(ref.uuid) is None:
                logger.info("Importing included group %s of %s", ref.uuid, info.name)
                self._import_dependency(ref.uuid, options, visiting=visiting)

        return self._create(info, member_ids)

    def _import_dependency(
        self, uuid: str, options: GroupImportOptions, *, visiting: tuple[str, ...]
    ) -> AccountGroup:
        if uuid in visiting:
            raise GroupCycle(uuid, list(visiting))
        return self._import(self._api.get_group(uuid), options, visiting=visiting)

    def _group_name(self, uuid: str, known: str | None) -> str:
        return known or self._api.get_group(uuid).name

    def _validate(
        self, info: RemoteGroup, options: GroupImportOptions
    ) -> Mapping[RemoteAccount, int]:
        if self._groups.get_by_name(info.name) is not None:
            raise Conflict(f"Group with name {info.name} already exists")
        if self._groups.get_by_uuid(info.uuid) is not None:
            raise Conflict(f"Group with UUID {info.uuid} already exists")

        if (
            not info.is_self_owned
            and not options.import_owner_group
            and self._groups.get_by_uuid(info.owner_uuid) is None
        ):
            raise PreconditionFailed(
                f"Owner group {self._group_name(info.owner_uuid, info.owner_name)} "
                f"with UUID {info.owner_uuid} does not exist"
            )

        try:
            member_ids = self._resolver.resolve_all(info.members)
        except NoSuchAccount as err:
            raise PreconditionFailed(str(err)) from err

        if not options.import_included_groups:
            for ref in info.includes:
                if self._groups.get_by_uuid(ref.uuid) is None:
                    raise PreconditionFailed(
                        f"Included group {self._group_name(ref.uuid, ref.name)} "
                        f"with UUID {ref.uuid} does not exist"
                    )

        args = CreateGroupArgs(
            name=info.name,
            uuid=info.uuid,
            description=info.description,
            visible_to_all=self._visible_to_all(info),
            owner_group_uuid=info.owner_uuid,
            initial_members=frozenset(member_ids.values()),
            initial_groups=frozenset(ref.uuid for ref in info.includes),
        )
        for validator in self._validators:
            try:
                validator.validate_new_group(args)
            except ValidationFailed as err:
                raise Conflict(str(err)) from err

        return member_ids

    def _visible_to_all(self, info: RemoteGroup) -> bool:
        return info.visible_to_all or self._new_groups_visible_to_all

    def _create(self, info: RemoteGroup, member_ids: Mapping[RemoteAccount, int]) -> AccountGroup:
        group_id = self._db.next_account_group_id()
        # Self-owned until the row exists; re-pointed to the real owner below.
        group = AccountGroup(
            group_id=group_id,
            group_uuid=info.uuid,
            name=info.name,
            description=info.description,
            owner_group_uuid=info.uuid,
            visible_to_all=self._visible_to_all(info),
        )

        # The name reservation goes first so a concurrent import of the same
        # name fails here instead of leaving two groups behind.
        try:
            self._db.insert_group_name(info.name, group_id)
        except DuplicateKey:
            raise Conflict(f"Group with name {info.name} already exists") from None
        try:
            self._db.insert_group(group)
        except DuplicateKey:
            self._db.delete_group_name(info.name, group_id)
            raise Conflict(f"Group with UUID {info.uuid} already exists") from None
        self._groups.evict(group)

        if not info.is_self_owned:
            group = replace(group, owner_group_uuid=info.owner_uuid)
            self._db.update_group_owner(group_id, info.owner_uuid)

        account_ids = sorted(set(member_ids.values()))
        self._db.insert_group_members(group_id, account_ids)
        for account_id in account_ids:
            self._accounts.evict(account_id)

        include_uuids = [ref.uuid for ref in info.includes]
        self._db.insert_group_includes(group_id, include_uuids)
        for uuid in include_uuids:
            self._includes.evict_parent_groups_of(uuid)

        self._groups.evict(group)
        logger.info(
            "Imported group %s (uuid=%s owner=%s members=%d includes=%d)",
            info.name,
            info.uuid,
            group.owner_group_uuid,
            len(account_ids),
            len(include_uuids),
        )
        return group


@dataclass(frozen=True)
class GroupImportInput:
    from_url: str
    user: str
    password: str = field(repr=False)
    import_owner_group: bool = False
    import_included_groups: bool = False

    @property
    def options(self) -> GroupImportOptions:
        return GroupImportOptions(
            import_owner_group=self.import_owner_group,
            import_included_groups=self.import_included_groups,
        )


def import_group(
    name: str,
    inp: GroupImportInput,
    *,
    db: ReviewDb,
    group_cache: GroupCache,
    account_cache: AccountCache,
    include_cache: GroupIncludeCache,
    validators: Iterable[GroupCreationValidator] = (),
    new_groups_visible_to_all: bool = False,
    api_factory: Callable[..., RemoteApi] = RemoteApi,
) -> AccountGroup:
    """Import the remote group `name` (or UUID) with fresh remote credentials."""
    validate_source(from_url=inp.from_url, user=inp.user, password=inp.password)
    api = api_factory(base_url=inp.from_url, user=inp.user, password=inp.password)
    importer = GroupImporter(
        db=db,
        api=api,
        resolver=IdentityResolver(db, api=api, account_cache=account_cache),
        group_cache=group_cache,
        account_cache=account_cache,
        include_cache=include_cache,
        validators=validators,
        new_groups_visible_to_all=new_groups_visible_to_all,
    )
    return importer.import_group(name, inp.options)
