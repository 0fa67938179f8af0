from __future__ import annotations

import threading

from gerrit_import.review_db import Account, AccountGroup, ReviewDb


class GroupCache:
    """Groups by name and by UUID. Misses are not cached."""

    def __init__(self, db: ReviewDb) -> None:
        self._db = db
        self._lock = threading.Lock()
        self._by_name: dict[str, AccountGroup] = {}
        self._by_uuid: dict[str, AccountGroup] = {}

    def get_by_name(self, name: str) -> AccountGroup | None:
        with self._lock:
            if name in self._by_name:
                return self._by_name[name]
        group = self._db.get_group_by_name(name)
        if group is not None:
            self._put(group)
        return group

    def get_by_uuid(self, uuid: str) -> AccountGroup | None:
        with self._lock:
            if uuid in self._by_uuid:
                return self._by_uuid[uuid]
        group = self._db.get_group_by_uuid(uuid)
        if group is not None:
            self._put(group)
        return group

    def _put(self, group: AccountGroup) -> None:
        with self._lock:
            self._by_name[group.name] = group
            self._by_uuid[group.group_uuid] = group

    def evict(self, group: AccountGroup) -> None:
        with self._lock:
            self._by_name.pop(group.name, None)
            self._by_uuid.pop(group.group_uuid, None)


class AccountCache:
    """Accounts and the UUIDs of the groups they are a direct member of."""

    def __init__(self, db: ReviewDb) -> None:
        self._db = db
        self._lock = threading.Lock()
        self._accounts: dict[int, Account] = {}
        self._groups: dict[int, frozenset[str]] = {}

    def get(self, account_id: int) -> Account | None:
        with self._lock:
            if account_id in self._accounts:
                return self._accounts[account_id]
        account = self._db.get_account(account_id)
        if account is not None:
            with self._lock:
                self._accounts[account_id] = account
        return account

    def groups_of(self, account_id: int) -> frozenset[str]:
        with self._lock:
            if account_id in self._groups:
                return self._groups[account_id]
        groups = frozenset(self._db.groups_of_account(account_id))
        with self._lock:
            self._groups[account_id] = groups
        return groups

    def evict(self, account_id: int) -> None:
        with self._lock:
            self._accounts.pop(account_id, None)
            self._groups.pop(account_id, None)


class GroupIncludeCache:
    def __init__(self, db: ReviewDb) -> None:
        self._db = db
        self._lock = threading.Lock()
        self._parents: dict[str, frozenset[str]] = {}

    def parent_groups_of(self, uuid: str) -> frozenset[str]:
        with self._lock:
            if uuid in self._parents:
                return self._parents[uuid]
        parents = frozenset(self._db.parent_groups_of(uuid))
        with self._lock:
            self._parents[uuid] = parents
        return parents

    def evict_parent_groups_of(self, uuid: str) -> None:
        with self._lock:
            self._parents.pop(uuid, None)
