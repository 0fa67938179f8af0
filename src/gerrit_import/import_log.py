from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from gerrit_import.review_db import ReviewDb

IMPORT_LOG_NAME = "import_log"

ACCOUNT_ID = "account_id"
USER_NAME = "user_name"
FROM = "from"
SRC_PROJECT_NAME = "src_project_name"
TARGET_PROJECT_NAME = "target_project_name"
ERROR = "error"

_FIELDS = (ACCOUNT_ID, USER_NAME, FROM, SRC_PROJECT_NAME, TARGET_PROJECT_NAME, ERROR)


@dataclass(frozen=True)
class Actor:
    user_name: str
    account_id: int | None = None


@dataclass(frozen=True)
class AuditEvent:
    who: str
    what: str
    ts: dt.datetime
    params: dict[str, Any] = field(default_factory=dict)
    result: str = "OK"


class AuditSink(Protocol):
    def dispatch(self, event: AuditEvent) -> None: ...


class DbAuditSink:
    def __init__(self, db: ReviewDb) -> None:
        self._db = db

    def dispatch(self, event: AuditEvent) -> None:
        self._db.insert_audit_event(
            who=event.who, what=event.what, ts=event.ts, params=event.params, result=event.result
        )


class ImportLogFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, result and the import fields."""

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": dt.datetime.fromtimestamp(record.created, dt.UTC).isoformat(),
            "level": record.levelname,
            "result": record.getMessage(),
        }
        for name in _FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                out[name] = value
        return json.dumps(out, sort_keys=True)


def create_import_logger(path: Path | None = None) -> logging.Logger:
    """Build the Import Log sink.

    The logger is not registered with `logging.getLogger()`; the caller owns
    it and passes it to `ImportLog`. Without a path, records go to stderr.
    """
    logger = logging.Logger(IMPORT_LOG_NAME, level=logging.INFO)
    handler: logging.Handler
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(ImportLogFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


class ImportLog:
    def __init__(self, logger: logging.Logger, *, audit: AuditSink | None = None) -> None:
        self._logger = logger
        self._audit = audit

    def on_import(
        self,
        actor: Actor,
        *,
        src_project: str,
        target_project: str,
        source_url: str,
        error: BaseException | None = None,
    ) -> None:
        ts = dt.datetime.now(dt.UTC)
        extra: dict[str, Any] = {
            ACCOUNT_ID: actor.account_id,
            USER_NAME: actor.user_name,
            FROM: source_url,
            SRC_PROJECT_NAME: src_project,
            TARGET_PROJECT_NAME: target_project,
        }
        if error is not None:
            extra[ERROR] = f"{type(error).__name__}: {error}"
            self._logger.error("FAIL", extra=extra)
        else:
            self._logger.info("OK", extra=extra)

        if self._audit is not None:
            self._audit.dispatch(
                AuditEvent(
                    who=actor.user_name,
                    what="ProjectImport" if error is None else "ProjectImportFailure",
                    ts=ts,
                    params={
                        "class": type(self).__name__,
                        "project": src_project,
                        "from": source_url,
                    },
                    result="OK" if error is None else extra[ERROR],
                )
            )

    def close(self) -> None:
        for handler in list(self._logger.handlers):
            handler.close()
            self._logger.removeHandler(handler)
