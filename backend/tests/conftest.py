"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, Mock, patch

import fakeredis
import pytest
from cryptography.fernet import Fernet

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("TWITTER_CLIENT_ID", "test-client-id")
os.environ.setdefault("TWITTER_CLIENT_SECRET", "test-client-secret")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.config import settings
from app.db.session import get_db
from app.db.helpers import save_twitter_tokens, utcnow
from app.models import Base
from app.models.user import User
from app.services import ai_service
from app.services.auth_service import create_user
from app.db import redis as redis_module


TEST_PASSWORD = "TestPassword123"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Every Redis access goes to fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # closed by the db_session fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry export in tests
        with patch("app.core.otel.initialize_otel", return_value=False):
            with patch("app.core.otel.setup_otel_logging", return_value=False):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    return create_user(email="delivered@resend.dev", password=TEST_PASSWORD, db=db_session)


@pytest.fixture(scope="function")
def two_users(db_session: Session) -> tuple[User, User]:
    """Two users for ownership tests"""
    user1 = create_user(email="delivered+user1@resend.dev", password=TEST_PASSWORD, db=db_session)
    user2 = create_user(email="delivered+user2@resend.dev", password=TEST_PASSWORD, db=db_session)
    return user1, user2


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User) -> TestClient:
    """Client logged in as test_user, sending its CSRF token on every request"""
    login_response = client.post(
        "/api/auth/login",
        json={"email": test_user.email, "password": TEST_PASSWORD}
    )
    assert login_response.status_code == 200

    csrf_token = login_response.headers.get("X-CSRF-Token") or login_response.json().get("csrf_token")
    assert csrf_token
    client.headers.update({"X-CSRF-Token": csrf_token})
    return client


@pytest.fixture(scope="function")
def twitter_user() -> dict:
    return {"id": "1234567890", "username": "tweetwise_test", "name": "TweetWise Test"}


@pytest.fixture(scope="function")
def connected_user(test_user: User, db_session: Session, twitter_user: dict) -> User:
    """test_user with freshly verified Twitter credentials (no validation call needed)"""
    save_twitter_tokens(
        test_user.id,
        access_token="access-token-abc",
        refresh_token="refresh-token-xyz",
        expires_at=utcnow() + timedelta(hours=2),
        twitter_user=twitter_user,
        db=db_session,
    )
    return test_user


@pytest.fixture(scope="function")
def mock_twitter_client(twitter_user: dict):
    """Patch every network call of the Twitter client"""
    with patch("app.services.twitter_client.post_tweet", new_callable=AsyncMock) as post_tweet, \
            patch("app.services.twitter_client.get_me", new_callable=AsyncMock) as get_me, \
            patch("app.services.twitter_client.exchange_code", new_callable=AsyncMock) as exchange_code, \
            patch("app.services.twitter_client.refresh_access_token", new_callable=AsyncMock) as refresh:
        post_tweet.return_value = {"id": "1790000000000000001", "text": "Hello Twitter"}
        get_me.return_value = dict(twitter_user)
        exchange_code.return_value = {
            "access_token": "new-access-token",
            "refresh_token": "new-refresh-token",
            "expires_at": utcnow() + timedelta(hours=2),
            "scope": "tweet.read tweet.write users.read offline.access",
        }
        refresh.return_value = {
            "access_token": "refreshed-access-token",
            "refresh_token": "refreshed-refresh-token",
            "expires_at": utcnow() + timedelta(hours=2),
            "scope": "tweet.read tweet.write users.read offline.access",
        }
        yield Mock(post_tweet=post_tweet, get_me=get_me, exchange_code=exchange_code, refresh_access_token=refresh)


def completion(content):
    """Chat completion response carrying one message"""
    return Mock(choices=[Mock(message=Mock(content=content))])


@pytest.fixture(scope="function")
def mock_openai():
    """OpenAI client whose chat completions are an AsyncMock"""
    openai_client = Mock()
    openai_client.chat.completions.create = AsyncMock(return_value=completion('{"corrections": []}'))
    with patch.object(ai_service, "get_openai_client", return_value=openai_client):
        yield openai_client.chat.completions.create


@pytest.fixture(scope="function")
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch("app.services.email_service.resend") as mock_resend, \
            patch.object(settings, "RESEND_API_KEY", "re_test_key"):
        mock_resend.Emails.send = Mock(return_value={"id": "email_test123"})
        yield mock_resend
