"""
Token handling for the case chat service.

Login tokens are issued by the case-management application's HTTP login
flow and signed with a shared secret. They carry the claims:

    userId  user identifier (required)
    name    display name
    type    account type: client, lawyer or admin
    email   account email

The chat service only verifies them: once per socket connection at the
connection gate, and once per request on the chat HTTP endpoints.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import jwt

from lawfirm_chat.app.core.exceptions import ErrorCode, raise_auth_error
from lawfirm_chat.app.models.domain.user import ConnectionIdentity
from lawfirm_chat.app.utils.logging import get_logger
from lawfirm_chat.config.settings import AuthSettings

logger = get_logger(__name__)

TOKEN_EXPIRY_HOURS = 24
BEARER_PREFIX = "bearer "


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token of an `Authorization: Bearer <token>` header value."""
    if not authorization:
        return None
    if not authorization.lower().startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


def resolve_connection_token(
    query_params: Mapping[str, str],
    headers: Mapping[str, str],
    query_param: str = "token"
) -> Optional[str]:
    """
    Find the token presented on a socket handshake.

    The query parameter wins; an Authorization header is accepted as an
    equivalent for clients that can set handshake headers.
    """
    token = query_params.get(query_param)
    if token:
        return token
    return extract_bearer_token(headers.get("authorization"))


class TokenManager:
    """JWT verification bound to the shared login secret."""

    def __init__(self, settings: AuthSettings):
        self.secret_key = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.issuer = settings.jwt_issuer

    def create_access_token(
        self,
        user_id: str,
        role: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        expires_in: timedelta = timedelta(hours=TOKEN_EXPIRY_HOURS),
        additional_claims: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Create a token with the login flow's claim names.

        Used by operational tooling and tests; production tokens come from
        the login flow.
        """
        now = datetime.now(timezone.utc)

        payload: Dict[str, Any] = {
            "userId": user_id,
            "name": name,
            "type": role,
            "email": email,
            "iat": now,
            "exp": now + expires_in,
        }
        if self.issuer:
            payload["iss"] = self.issuer
        if additional_claims:
            payload.update(additional_claims)

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Verify and decode a login token.

        Args:
            token: Encoded JWT

        Returns:
            Decoded claims

        Raises:
            AuthenticationError: If the token is missing, expired, wrongly
                signed, from another issuer or lacks a userId claim
        """
        if not token:
            raise_auth_error("Token is missing", error_code=ErrorCode.AUTH_TOKEN_MISSING)

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer
            )
        except jwt.ExpiredSignatureError:
            raise_auth_error("Token has expired", error_code=ErrorCode.AUTH_TOKEN_EXPIRED)
        except jwt.InvalidTokenError as e:
            logger.warning("Invalid token", error=str(e))
            raise_auth_error("Invalid token")

        if not payload.get("userId"):
            raise_auth_error("Token has no userId claim")

        return payload

    def authenticate(self, token: Optional[str]) -> ConnectionIdentity:
        """Verify a token and return the identity it asserts."""
        return ConnectionIdentity.from_claims(self.verify_token(token))
