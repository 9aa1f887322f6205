# tests/conftest.py
from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Generator, Iterator
from datetime import datetime
from itertools import count
from pathlib import Path

import pytest

_TEST_DB_DIR = tempfile.mkdtemp(prefix="encore-tests-")

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TEST_DB_DIR) / 'encore-test.db'}"
os.environ["USE_TEST_DATABASE"] = "false"
os.environ["FEED_BACKEND"] = "memory"
os.environ["TRENDING_REFRESH_ENABLED"] = "false"
os.environ["VOTER_POLICY"] = "anonymous"

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from encore_stage.api.v1.dependencies import get_feed
from encore_stage.core.security import create_access_token
from encore_stage.db.session import Base, SessionLocal, create_tables, drop_tables
from encore_stage.db.session import engine as app_engine
from encore_stage.main import app as fastapi_app
from encore_stage.models import Setlist, SetlistSong
from encore_stage.services.feed import ChangeFeed
from encore_stage.services.ledger import VoteLedger

_SONG_POSITION_COUNTER = count(1)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    create_tables(app_engine)
    try:
        yield app_engine
    finally:
        drop_tables(app_engine)
        app_engine.dispose()


@pytest.fixture(autouse=True)
def clean_tables(engine: Engine) -> Iterator[None]:
    yield
    # Ensure each test sees a clean database even though the ledger commits.
    with engine.begin() as cleanup_conn:
        for table in reversed(Base.metadata.sorted_tables):
            cleanup_conn.execute(table.delete())


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return SessionLocal


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def feed() -> Iterator[ChangeFeed]:
    change_feed = ChangeFeed(max_workers=2)
    try:
        yield change_feed
    finally:
        change_feed.close()


@pytest.fixture()
def ledger(session_factory: sessionmaker[Session], feed: ChangeFeed) -> VoteLedger:
    return VoteLedger(
        session_factory,
        feed=feed,
        timeout_seconds=10.0,
        retry_backoff_seconds=0.0,
    )


@pytest.fixture()
def make_setlist(session_factory: sessionmaker[Session]) -> Callable[..., Setlist]:
    def _make_setlist(external_popularity: float = 0.0, **fields: object) -> Setlist:
        with session_factory() as session, session.begin():
            setlist = Setlist(external_popularity=external_popularity, **fields)
            session.add(setlist)
        return setlist

    return _make_setlist


@pytest.fixture()
def setlist(make_setlist: Callable[..., Setlist]) -> Setlist:
    return make_setlist(show_id=1001)


@pytest.fixture()
def make_song(session_factory: sessionmaker[Session], setlist: Setlist) -> Callable[..., SetlistSong]:
    def _make_song(
        setlist_id: int | None = None,
        *,
        external_popularity: float = 0.0,
        created_at: datetime | None = None,
    ) -> SetlistSong:
        fields: dict[str, object] = {}
        if created_at is not None:
            fields["created_at"] = created_at
        with session_factory() as session, session.begin():
            song = SetlistSong(
                setlist_id=setlist_id or setlist.id,
                position=next(_SONG_POSITION_COUNTER),
                external_popularity=external_popularity,
                **fields,
            )
            session.add(song)
        return song

    return _make_song


@pytest.fixture()
def song(make_song: Callable[..., SetlistSong]) -> SetlistSong:
    return make_song()


@pytest.fixture()
def seed_votes(ledger: VoteLedger) -> Callable[[int, int, int], None]:
    """Cast ``ups`` upvotes and ``downs`` downvotes from distinct throwaway voters."""

    def _seed(subject_id: int, ups: int, downs: int) -> None:
        for index in range(ups):
            ledger.cast_vote(f"seed-up-{subject_id}-{index}", subject_id, "up")
        for index in range(downs):
            ledger.cast_vote(f"seed-down-{subject_id}-{index}", subject_id, "down")

    return _seed


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_feed_dependency(app: FastAPI, feed: ChangeFeed) -> Iterator[None]:
    app.dependency_overrides[get_feed] = lambda: feed
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_feed, None)


@pytest.fixture()
def client(app: FastAPI, engine: Engine) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    token = create_access_token("user-42")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def anon_headers() -> dict[str, str]:
    return {"X-Voter-Token": "device-7f3a"}
