from __future__ import annotations

import pytest

from disclosure_engine.db import session as db_session


@pytest.fixture
def sqlite_db(tmp_path):
    """Fresh SQLite file database bound as the process-wide session factory."""
    url = f"sqlite:///{tmp_path / 'engine.db'}"
    db_session.reset_session_factory()
    db_session.get_session_factory(url)
    db_session.create_schema()
    yield url
    db_session.reset_session_factory()
