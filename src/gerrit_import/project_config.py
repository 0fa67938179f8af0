from __future__ import annotations

import logging
from typing import Any, Protocol

from gerrit_import.errors import ValidationFailed
from gerrit_import.remote_model import RemoteProject
from gerrit_import.review_db import Project, ReviewDb

logger = logging.getLogger(__name__)

# The remote reports no parent for projects directly under the root project.
ROOT_PROJECT = "All-Projects"

# Settings that describe the project itself rather than its inherited policy.
_NON_INHERITABLE_KEYS = frozenset({"description", "state"})


class _ProjectApi(Protocol):
    def get_project(self, name: str) -> RemoteProject: ...


def resolve_parent(project: str, *, explicit_parent: str | None, api: _ProjectApi) -> str:
    if explicit_parent:
        return explicit_parent
    remote = api.get_project(project)
    return remote.parent or ROOT_PROJECT


def check_parent_exists(db: ReviewDb, parent: str) -> Project:
    existing = db.get_project(parent)
    if existing is None:
        raise ValidationFailed(f"Parent project {parent} does not exist in target")
    return existing


def inherited_config(parent: Project) -> dict[str, Any]:
    return {k: v for k, v in parent.config.items() if k not in _NON_INHERITABLE_KEYS}


def configure_project(db: ReviewDb, *, project: str, parent: str) -> Project:
    """Create or update `project` under `parent` and apply the parent's settings.

    Settings already present on the local project take precedence.
    """
    parent_project = check_parent_exists(db, parent)
    existing = db.get_project(project)

    config = inherited_config(parent_project)
    description = None
    if existing is not None:
        config.update(existing.config)
        description = existing.description

    configured = Project(name=project, parent=parent, description=description, config=config)
    db.upsert_project(configured)
    logger.info("Configured project %s (parent=%s)", project, parent)
    return configured
