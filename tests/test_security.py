"""
Unit tests for login token verification.
"""

from datetime import timedelta

import jwt
import pytest

from lawfirm_chat.app.core.exceptions import AuthenticationError, ErrorCode
from lawfirm_chat.app.utils.security import (
    TokenManager,
    extract_bearer_token,
    resolve_connection_token
)
from lawfirm_chat.config.settings import AuthSettings

from conftest import TEST_SECRET, make_token


class TestTokenManager:
    """Test suite for TokenManager."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.manager = TokenManager(AuthSettings(jwt_secret=TEST_SECRET))

    def test_authenticate_valid_token(self):
        """Test a token issued with the login claims."""
        token = self.manager.create_access_token(
            "u1", "lawyer", name="Bob", email="bob@example.com"
        )
        identity = self.manager.authenticate(token)

        assert identity.user_id == "u1"
        assert identity.role == "lawyer"
        assert identity.name == "Bob"
        assert identity.email == "bob@example.com"

    def test_missing_token(self):
        """Test an absent token."""
        with pytest.raises(AuthenticationError) as exc_info:
            self.manager.verify_token(None)

        assert exc_info.value.error_code == ErrorCode.AUTH_TOKEN_MISSING
        assert exc_info.value.user_message == "Authentication error"

    def test_expired_token(self):
        """Test an expired token."""
        token = make_token("u1", "client", expires_in=timedelta(seconds=-30))

        with pytest.raises(AuthenticationError) as exc_info:
            self.manager.verify_token(token)

        assert exc_info.value.error_code == ErrorCode.AUTH_TOKEN_EXPIRED

    def test_wrong_signature(self):
        """Test a token signed with another secret."""
        token = make_token("u1", "client", secret="some-other-secret")

        with pytest.raises(AuthenticationError) as exc_info:
            self.manager.verify_token(token)

        assert exc_info.value.error_code == ErrorCode.AUTH_INVALID_CREDENTIALS

    def test_garbage_token(self):
        """Test a value that is not a JWT at all."""
        with pytest.raises(AuthenticationError):
            self.manager.verify_token("not-a-jwt")

    def test_missing_user_id_claim(self):
        """Test a correctly signed token without a userId."""
        token = jwt.encode({"name": "Nobody", "type": "client"}, TEST_SECRET, algorithm="HS256")

        with pytest.raises(AuthenticationError) as exc_info:
            self.manager.verify_token(token)

        assert "userId" in exc_info.value.message

    def test_issuer_checked_when_configured(self):
        """Test tokens from another issuer are rejected."""
        manager = TokenManager(AuthSettings(jwt_secret=TEST_SECRET, jwt_issuer="lawfirm"))
        foreign = TokenManager(AuthSettings(jwt_secret=TEST_SECRET, jwt_issuer="elsewhere"))

        assert manager.authenticate(manager.create_access_token("u1", "client")).user_id == "u1"
        with pytest.raises(AuthenticationError):
            manager.verify_token(foreign.create_access_token("u1", "client"))


class TestTokenResolution:
    """Test suite for finding the token on a request or handshake."""

    def test_extract_bearer_token(self):
        """Test parsing of Authorization header values."""
        assert extract_bearer_token("Bearer abc.def") == "abc.def"
        assert extract_bearer_token("bearer abc.def") == "abc.def"
        assert extract_bearer_token("Basic dXNlcjpwYXNz") is None
        assert extract_bearer_token("Bearer ") is None
        assert extract_bearer_token(None) is None

    def test_query_parameter_wins(self):
        """Test the query parameter takes precedence over the header."""
        token = resolve_connection_token(
            {"token": "from-query"},
            {"authorization": "Bearer from-header"}
        )

        assert token == "from-query"

    def test_header_fallback(self):
        """Test the Authorization header is used without a query parameter."""
        token = resolve_connection_token({}, {"authorization": "Bearer from-header"})

        assert token == "from-header"

    def test_custom_query_parameter(self):
        """Test a configured query parameter name."""
        assert resolve_connection_token({"auth": "t"}, {}, query_param="auth") == "t"
        assert resolve_connection_token({"token": "t"}, {}, query_param="auth") is None
