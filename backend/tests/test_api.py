"""API route tests"""
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, Mock, patch
from urllib.parse import urlparse, parse_qs
from fastapi import status

from app.core.exceptions import TwitterAPIError
from app.db.helpers import utcnow
from app.models.tweet import Tweet


def completion(content):
    return Mock(choices=[Mock(message=Mock(content=content))])


def iso_in(**delta) -> str:
    return (datetime.now(timezone.utc) + timedelta(**delta)).isoformat()


@pytest.mark.critical
class TestAuthentication:
    """Test authentication and protected routes"""

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/tweets"),
        ("get", "/api/twitter/status"),
        ("get", "/api/twitter/schedule"),
        ("get", "/api/twitter/post"),
    ])
    def test_protected_route_requires_auth(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["success"] is False

    def test_register_and_login(self, client):
        response = client.post("/api/auth/register", json={"email": "new@example.com", "password": "ValidPass123"})
        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["user"]["email"] == "new@example.com"

        response = client.post("/api/auth/login", json={"email": "new@example.com", "password": "ValidPass123"})
        assert response.status_code == status.HTTP_200_OK
        assert response.cookies.get("session_id")
        assert response.json()["csrf_token"] == response.headers["X-CSRF-Token"]

    def test_register_duplicate_email(self, client, test_user):
        response = client.post("/api/auth/register", json={"email": test_user.email, "password": "ValidPass123"})
        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json() == {
            "success": False, "error": "User with this email already exists", "code": "USER_EXISTS"
        }

    def test_register_weak_password(self, client):
        response = client.post("/api/auth/register", json={"email": "weak@example.com", "password": "weakpass"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "uppercase" in response.json()["error"]

    def test_register_invalid_email(self, client):
        response = client.post("/api/auth/register", json={"email": "not-an-email", "password": "ValidPass123"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]

    def test_login_invalid_credentials(self, client, test_user):
        response = client.post("/api/auth/login", json={"email": test_user.email, "password": "WrongPass123"})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "Invalid email or password"

    def test_me_anonymous_and_authenticated(self, client, test_user):
        assert client.get("/api/auth/me").json() == {"success": True, "user": None}

        client.post("/api/auth/login", json={"email": test_user.email, "password": "TestPassword123"})
        assert client.get("/api/auth/me").json()["user"]["id"] == test_user.id

    def test_logout_ends_session(self, authenticated_client):
        response = authenticated_client.post("/api/auth/logout")
        assert response.status_code == status.HTTP_200_OK
        assert authenticated_client.get("/api/tweets").status_code == status.HTTP_401_UNAUTHORIZED

    def test_forgot_password_always_succeeds(self, client, mock_email_service):
        response = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
        assert response.status_code == status.HTTP_200_OK
        assert "If an account with that email exists" in response.json()["message"]

    def test_reset_password_bad_token(self, client):
        response = client.post("/api/auth/reset-password", json={"token": "nope", "password": "ValidPass123"})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid or expired reset token"


@pytest.mark.critical
class TestCSRFProtection:
    """Test CSRF and origin protection on state-changing endpoints"""

    def test_post_without_csrf_token(self, authenticated_client):
        del authenticated_client.headers["X-CSRF-Token"]
        response = authenticated_client.post("/api/tweets", json={"content": "Hello"})
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert "Invalid or missing CSRF token" in response.json()["error"]

    def test_post_with_invalid_csrf_token(self, authenticated_client):
        response = authenticated_client.post(
            "/api/tweets", json={"content": "Hello"}, headers={"X-CSRF-Token": "invalid_token"}
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_csrf_token_echoed_on_responses(self, authenticated_client):
        response = authenticated_client.get("/api/tweets")
        assert response.headers["X-CSRF-Token"] == authenticated_client.headers["X-CSRF-Token"]

    def test_foreign_origin_rejected(self, authenticated_client):
        response = authenticated_client.post(
            "/api/tweets", json={"content": "Hello"}, headers={"Origin": "https://evil.example.com"}
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["code"] == "INVALID_ORIGIN"

    def test_csrf_endpoint_issues_anonymous_session(self, client):
        response = client.get("/api/auth/csrf")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["csrf_token"]
        assert response.cookies.get("session_id")


@pytest.mark.high
class TestTweetRoutes:
    """Composer tweet CRUD"""

    def test_create_update_list_delete(self, authenticated_client):
        response = authenticated_client.post("/api/tweets", json={"content": "  My first draft  "})
        assert response.status_code == status.HTTP_200_OK
        tweet = response.json()["tweet"]
        assert tweet["content"] == "My first draft"
        assert tweet["status"] == "draft"

        response = authenticated_client.post(
            "/api/tweets", json={"id": tweet["id"], "content": "Done", "status": "completed"}
        )
        assert response.json()["tweet"]["status"] == "completed"

        tweets = authenticated_client.get("/api/tweets", params={"status": "completed"}).json()["tweets"]
        assert [t["id"] for t in tweets] == [tweet["id"]]

        response = authenticated_client.delete("/api/tweets", params={"id": tweet["id"]})
        assert response.status_code == status.HTTP_200_OK
        assert authenticated_client.get("/api/tweets").json()["tweets"] == []

    def test_content_over_280_characters(self, authenticated_client):
        response = authenticated_client.post("/api/tweets", json={"content": "x" * 281})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_280_characters_with_surrounding_whitespace(self, authenticated_client):
        response = authenticated_client.post("/api/tweets", json={"content": "  " + "y" * 280 + "  "})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["tweet"]["content"] == "y" * 280

    def test_whitespace_only_content(self, authenticated_client):
        response = authenticated_client.post("/api/tweets", json={"content": "    "})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Tweet content cannot be empty"

    def test_update_sent_tweet_conflicts(self, authenticated_client, test_user, db_session):
        sent = Tweet(user_id=test_user.id, content="Posted", status="sent", tweet_id="1", sent_at=utcnow())
        db_session.add(sent)
        db_session.commit()

        response = authenticated_client.post("/api/tweets", json={"id": sent.id, "content": "Edit"})
        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["code"] == "INVALID_TRANSITION"

    def test_cannot_touch_other_users_tweet(self, authenticated_client, two_users, db_session):
        _, other = two_users
        tweet = Tweet(user_id=other.id, content="Not yours")
        db_session.add(tweet)
        db_session.commit()

        response = authenticated_client.delete("/api/tweets", params={"id": tweet.id})
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert db_session.query(Tweet).count() == 1


@pytest.mark.high
class TestAIRoutes:
    """AI suggestion endpoints"""

    def test_spell_check_cached_on_repeat(self, authenticated_client, mock_openai):
        mock_openai.return_value = completion(
            '{"corrections": [{"original": "wrld", "suggestion": "world", "startIndex": 6}]}'
        )

        first = authenticated_client.post("/api/ai/spell-check", json={"text": "hello wrld"}).json()
        second = authenticated_client.post("/api/ai/spell-check", json={"text": "hello wrld"}).json()

        assert first["success"] is True
        assert first["suggestions"][0]["suggestion"] == "world"
        assert first["cached"] is False
        assert second["cached"] is True
        assert mock_openai.await_count == 1

    def test_text_length_limit(self, authenticated_client, mock_openai):
        response = authenticated_client.post("/api/ai/writing-check", json={"text": "x" * 561})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        mock_openai.assert_not_called()

    def test_critique(self, authenticated_client, mock_openai):
        mock_openai.return_value = completion(
            '{"engagementScore": 7, "clarity": 8, "tone": "Casual", "suggestions": ["Ask a question"]}'
        )
        response = authenticated_client.post("/api/ai/critique", json={"content": "Shipping today"})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["critique"]["engagementScore"] == 7

    def test_openai_failure_is_500(self, authenticated_client, mock_openai):
        from app.core.exceptions import AIServiceError
        mock_openai.side_effect = AIServiceError("Empty response from OpenAI")

        response = authenticated_client.post("/api/ai/spell-check", json={"text": "hello"})
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["code"] == "SPELL_CHECK_ERROR"

    def test_unknown_tweet_id(self, authenticated_client, mock_openai):
        response = authenticated_client.post("/api/ai/critique", json={"content": "Hi", "tweetId": 9999})
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_non_finite_score_returns_fallback(self, authenticated_client, mock_openai):
        mock_openai.return_value = completion(
            '{"engagementScore": NaN, "clarity": 8, "tone": "Casual", "suggestions": []}'
        )
        response = authenticated_client.post("/api/ai/critique", json={"content": "Shipping today"})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["degraded"] is True
        assert response.json()["critique"]["engagementScore"] == 5

    def test_unexpected_error_is_500_not_404(self, authenticated_client):
        with patch("app.services.ai_service.critique", new_callable=AsyncMock) as critique:
            critique.side_effect = ValueError("cannot convert float NaN to integer")
            response = authenticated_client.post("/api/ai/critique", json={"content": "Shipping today"})
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["code"] == "CRITIQUE_ERROR"


@pytest.mark.critical
class TestTwitterRoutes:
    """Connection, posting and scheduling endpoints"""

    def test_post_not_connected(self, authenticated_client, mock_twitter_client):
        response = authenticated_client.post("/api/twitter/post", json={"content": "Hello"})
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["code"] == "NOT_CONNECTED"

    def test_post_success(self, authenticated_client, connected_user, mock_twitter_client):
        response = authenticated_client.post("/api/twitter/post", json={"content": "Hello Twitter"})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()["data"]
        assert data["tweetId"] == "1790000000000000001"

        history = authenticated_client.get("/api/twitter/post").json()["data"]
        assert [t["id"] for t in history["tweets"]] == [data["dbTweetId"]]
        assert history["pagination"] == {"limit": 10, "offset": 0, "hasMore": False}

    def test_post_existing_draft(self, authenticated_client, connected_user, db_session, mock_twitter_client):
        draft = Tweet(user_id=connected_user.id, content="Hello Twitter", status="draft")
        db_session.add(draft)
        db_session.commit()

        response = authenticated_client.post(
            "/api/twitter/post", json={"content": "Hello Twitter", "tweetId": draft.id}
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["dbTweetId"] == draft.id

        db_session.refresh(draft)
        assert draft.status == "sent"
        assert draft.tweet_id == "1790000000000000001"
        assert draft.sent_at is not None

        response = authenticated_client.post(
            "/api/twitter/post", json={"content": "Hello Twitter", "tweetId": draft.id}
        )
        assert response.status_code == status.HTTP_409_CONFLICT
        assert mock_twitter_client.post_tweet.await_count == 1

    def test_post_over_280_characters(self, authenticated_client, connected_user, mock_twitter_client):
        response = authenticated_client.post("/api/twitter/post", json={"content": "x" * 281})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "VALIDATION_ERROR"
        mock_twitter_client.post_tweet.assert_not_called()

    def test_post_trims_before_length_check(self, authenticated_client, connected_user, mock_twitter_client):
        response = authenticated_client.post("/api/twitter/post", json={"content": "x" * 280 + "  \n"})
        assert response.status_code == status.HTTP_200_OK
        mock_twitter_client.post_tweet.assert_awaited_once_with("access-token-abc", "x" * 280)

    def test_post_duplicate(self, authenticated_client, connected_user, mock_twitter_client):
        mock_twitter_client.post_tweet.side_effect = TwitterAPIError("dup", kind="duplicate", status_code=403)
        response = authenticated_client.post("/api/twitter/post", json={"content": "Hello"})
        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["code"] == "DUPLICATE_TWEET"

    def test_post_rate_limited(self, authenticated_client, connected_user, mock_twitter_client):
        mock_twitter_client.post_tweet.side_effect = TwitterAPIError("slow down", kind="rate_limit", status_code=429)
        response = authenticated_client.post("/api/twitter/post", json={"content": "Hello"})
        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.json()["code"] == "RATE_LIMITED"

    def test_schedule_in_past(self, authenticated_client, connected_user):
        response = authenticated_client.post(
            "/api/twitter/schedule", json={"content": "Late", "scheduledFor": iso_in(minutes=-5)}
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Scheduled time must be in the future"

    def test_schedule_too_far_ahead(self, authenticated_client, connected_user):
        response = authenticated_client.post(
            "/api/twitter/schedule", json={"content": "Way later", "scheduledFor": iso_in(days=400)}
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "1 year" in response.json()["error"]

    def test_schedule_update_cancel_delete(self, authenticated_client, connected_user):
        response = authenticated_client.post(
            "/api/twitter/schedule", json={"content": "Later", "scheduledFor": iso_in(hours=2)}
        )
        assert response.status_code == status.HTTP_200_OK
        tweet_id = response.json()["data"]["dbTweetId"]

        listed = authenticated_client.get("/api/twitter/schedule").json()["data"]["tweets"]
        assert [t["id"] for t in listed] == [tweet_id]

        response = authenticated_client.put(
            "/api/twitter/schedule", json={"tweetId": tweet_id, "content": "Later, edited"}
        )
        assert response.json()["data"]["content"] == "Later, edited"

        response = authenticated_client.put("/api/twitter/schedule", json={"tweetId": tweet_id, "action": "cancel"})
        assert response.json()["data"]["status"] == "draft"

        response = authenticated_client.delete("/api/twitter/schedule", params={"tweetId": tweet_id})
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_status_and_disconnect(self, authenticated_client, connected_user):
        status_body = authenticated_client.get("/api/twitter/status").json()
        assert status_body["isConnected"] is True
        assert status_body["stats"]["sent"] == 0

        response = authenticated_client.post("/api/twitter/disconnect")
        assert response.json()["message"] == "Twitter account disconnected successfully"

        response = authenticated_client.post("/api/twitter/disconnect")
        assert response.json()["message"] == "No Twitter account was connected"
        assert authenticated_client.get("/api/twitter/status").json()["isConnected"] is False

    def test_start_auth_when_connected(self, authenticated_client, connected_user):
        response = authenticated_client.post("/api/twitter/auth")
        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["code"] == "ALREADY_CONNECTED"

    def test_full_oauth_callback(self, authenticated_client, mock_twitter_client):
        response = authenticated_client.post("/api/twitter/auth")
        assert response.status_code == status.HTTP_200_OK
        state = response.json()["state"]
        assert "code_challenge" in response.json()["authUrl"]

        response = authenticated_client.get(
            "/api/twitter/callback", params={"code": "abc", "state": state}, follow_redirects=False
        )
        assert response.status_code == status.HTTP_302_FOUND
        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["twitter_connected"] == ["true"]
        assert query["twitter_username"] == ["tweetwise_test"]

        # State is single-use
        response = authenticated_client.get(
            "/api/twitter/callback", params={"code": "abc", "state": state}, follow_redirects=False
        )
        assert parse_qs(urlparse(response.headers["location"]).query)["twitter_error"] == ["invalid_state"]

    def test_callback_requires_login(self, client):
        response = client.get("/api/twitter/callback", params={"code": "abc", "state": "s"}, follow_redirects=False)
        assert response.status_code == status.HTTP_302_FOUND
        assert urlparse(response.headers["location"]).path == "/auth/login"

    def test_callback_denied_by_user(self, authenticated_client):
        response = authenticated_client.get(
            "/api/twitter/callback",
            params={"error": "access_denied", "error_description": "User denied"},
            follow_redirects=False
        )
        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["twitter_error"] == ["access_denied"]


@pytest.mark.medium
class TestOperationalEndpoints:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == status.HTTP_200_OK
        assert "tweetwise_login_attempts" in response.text
