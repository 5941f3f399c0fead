"""
Tests for the database engine / session helpers.
"""

import pytest
from fastapi import HTTPException
from sqlalchemy import text

from bizcore.database import session as db


@pytest.fixture(autouse=True)
def _fresh_engine():
    db.reset_engine()
    yield
    db.reset_engine()


def test_db_session_without_url_is_503(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(HTTPException) as exc:
        next(db.get_db_session())
    assert exc.value.status_code == 503


def test_sync_session_without_url_raises(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        next(db.get_db_session_sync())


def test_postgres_scheme_is_normalised(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@localhost/bizcore")
    assert db._get_database_url() == "postgresql://user:pw@localhost/bizcore"


def test_sqlite_session(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    gen = db.get_db_session()
    session = next(gen)
    assert session.execute(text("SELECT 1")).scalar() == 1
    gen.close()
    assert db.get_engine() is db.get_engine()
