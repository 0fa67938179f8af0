from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from gerrit_import.caches import AccountCache
from gerrit_import.errors import NoSuchAccount
from gerrit_import.remote_api import RemoteNotFound
from gerrit_import.remote_model import RemoteAccount
from gerrit_import.review_db import Account, DuplicateKey, ReviewDb

logger = logging.getLogger(__name__)


class _AccountApi(Protocol):
    def get_account(self, account_id: int) -> RemoteAccount: ...


class IdentityResolver:
    """Map remote account references to local account ids.

    Lookup order is username, then email. When neither matches, the remote
    account detail is fetched to fill in missing hints, and a local account
    is created if `create_missing` is set and a username is known.

    Results are memoized per resolver; create one resolver per import.
    """

    def __init__(
        self,
        db: ReviewDb,
        *,
        api: _AccountApi | None = None,
        account_cache: AccountCache | None = None,
        create_missing: bool = True,
    ) -> None:
        self._db = db
        self._api = api
        self._account_cache = account_cache
        self._create_missing = create_missing
        self._resolved: dict[RemoteAccount, int] = {}

    def resolve(self, ref: RemoteAccount) -> int:
        if ref in self._resolved:
            return self._resolved[ref]

        account = self._lookup(ref)
        if account is None:
            completed = self._complete(ref)
            account = self._lookup(completed) or self._create(completed)

        self._resolved[ref] = account.account_id
        return account.account_id

    def resolve_all(self, refs: Iterable[RemoteAccount]) -> dict[RemoteAccount, int]:
        """Resolve every reference before the caller writes anything."""
        return {ref: self.resolve(ref) for ref in refs}

    def _lookup(self, ref: RemoteAccount) -> Account | None:
        if ref.username:
            if (account := self._db.find_account_by_username(ref.username)) is not None:
                return account
        if ref.email:
            if (account := self._db.find_account_by_email(ref.email)) is not None:
                return account
        return None

    def _complete(self, ref: RemoteAccount) -> RemoteAccount:
        if self._api is None or ref.account_id is None:
            return ref
        if ref.username and ref.email:
            return ref
        try:
            detail = self._api.get_account(ref.account_id)
        except RemoteNotFound:
            return ref
        return RemoteAccount(
            account_id=ref.account_id,
            username=ref.username or detail.username,
            email=ref.email or detail.email,
            name=ref.name or detail.name,
        )

    def _create(self, ref: RemoteAccount) -> Account:
        if not self._create_missing or not ref.username:
            raise NoSuchAccount(f"User {ref.describe()} not found and cannot be created")

        account = Account(
            account_id=self._db.next_account_id(),
            username=ref.username,
            email=ref.email,
            full_name=ref.name,
        )
        try:
            self._db.insert_account(account)
        except DuplicateKey:
            # Created concurrently by another import.
            existing = self._db.find_account_by_username(ref.username)
            if existing is None:
                raise
            return existing

        logger.info(
            "Created account %s (id=%s) for remote account %s",
            ref.username,
            account.account_id,
            ref.account_id,
        )
        if self._account_cache is not None:
            self._account_cache.evict(account.account_id)
        return account
