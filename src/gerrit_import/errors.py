from __future__ import annotations


class ImporterError(Exception):
    pass


class BadRequest(ImporterError):
    """Missing or malformed input (source URL, credentials, ...)."""


class Conflict(ImporterError):
    """Target state conflicts with the import: lock held, duplicate group, policy rejection."""


class GroupCycle(Conflict):
    def __init__(self, uuid: str, path: list[str]) -> None:
        self.uuid = uuid
        self.path = list(path)
        chain = " -> ".join([*self.path, uuid])
        super().__init__(f"group {uuid} is part of an owner/include cycle: {chain}")


class PreconditionFailed(ImporterError):
    """A referenced owner group, included group or account is missing locally."""


class ValidationFailed(ImporterError):
    pass


class NoSuchAccount(ImporterError):
    pass


class LockError(OSError):
    """I/O failure while creating or writing the import lock artifact."""
