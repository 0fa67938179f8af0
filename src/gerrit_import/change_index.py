from __future__ import annotations

import logging
from typing import Any

from gerrit_import.review_db import ReviewDb

logger = logging.getLogger(__name__)


class ChangeIndexer:
    """Writes the denormalized search document of a change."""

    def __init__(self, db: ReviewDb) -> None:
        self._db = db

    def build_document(self, change_id: int) -> dict[str, Any]:
        change = self._db.get_change(change_id)
        if change is None:
            raise LookupError(f"change {change_id} not found")

        labels: dict[str, list[int]] = {}
        for approval in self._db.approvals(change_id):
            if approval.patch_set_id == change.current_patch_set_id:
                labels.setdefault(approval.category_id, []).append(approval.value)

        return {
            "change_id": change.change_id,
            "change_key": change.change_key,
            "project": change.project,
            "branch": change.dest_branch,
            "owner": change.owner_account_id,
            "status": change.status.name.lower(),
            "topic": change.topic,
            "subject": change.subject,
            "current_patch_set": change.current_patch_set_id,
            "patch_sets": [ps.revision for ps in self._db.patch_sets(change_id)],
            "hashtags": sorted(self._db.hashtags(change_id)),
            "labels": {name: sorted(values) for name, values in sorted(labels.items())},
            "comment_count": len(self._db.comments(change_id)),
            "message_count": len(self._db.messages(change_id)),
        }

    def index(self, change_id: int) -> dict[str, Any]:
        document = self.build_document(change_id)
        self._db.upsert_index_document(change_id, document["project"], document)
        logger.debug("Indexed change %s", change_id)
        return document
