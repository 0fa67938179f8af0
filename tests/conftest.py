from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from gerrit_import.review_db import Project, ReviewDb, create_review_db


@pytest.fixture
def db(tmp_path: Path) -> Iterator[ReviewDb]:
    review_db = create_review_db(f"sqlite:///{tmp_path / 'review.db'}")
    review_db.upsert_project(Project(name="All-Projects", parent=None))
    yield review_db
    review_db.dispose()
