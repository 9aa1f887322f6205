# tests/test_security.py
"""Tests for JWT voter identity helpers and settings."""

from datetime import UTC, datetime, timedelta

from jose import jwt

from encore_stage.core.security import create_access_token, decode_voter_id
from encore_stage.core.settings import Settings, settings


def test_token_round_trip() -> None:
    token = create_access_token("user-7", {"scope": "vote"})
    assert decode_voter_id(token) == "user-7"


def test_expired_token_is_rejected() -> None:
    token = jwt.encode(
        {"sub": "user-7", "exp": datetime.now(UTC) - timedelta(minutes=1)},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    assert decode_voter_id(token) is None


def test_token_signed_with_other_key_is_rejected() -> None:
    token = jwt.encode({"sub": "user-7"}, "another-key", algorithm=settings.jwt_algorithm)
    assert decode_voter_id(token) is None


def test_token_without_subject_is_rejected() -> None:
    token = jwt.encode({"scope": "vote"}, settings.secret_key, algorithm=settings.jwt_algorithm)
    assert decode_voter_id(token) is None
    assert decode_voter_id("garbage") is None


def test_settings_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("SECRET_KEY", "k")
    monkeypatch.setenv("VOTER_POLICY", "identified")
    monkeypatch.setenv("TRENDING_WEIGHT_RECENCY", "7.5")
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/encore")

    loaded = Settings()

    assert loaded.requires_identified_voters
    assert loaded.trending_weights == (1.0, 2.0, 7.5, 0.1)
    assert loaded.database_url_sync == "postgresql+psycopg://u:p@db/encore"


def test_testing_database_override(monkeypatch) -> None:
    monkeypatch.setenv("SECRET_KEY", "k")
    monkeypatch.setenv("USE_TEST_DATABASE", "true")
    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite:///./other.db")

    assert Settings().effective_database_url == "sqlite:///./other.db"
