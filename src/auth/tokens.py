"""
JWT issuance and verification.

Three token kinds share one claim shape {userId, email, role, type}:

- access: short-lived bearer token for API calls (access secret)
- 2fa_challenge: proves a password check passed while 2FA is still pending
  (access secret, role "2fa-pending"); never accepted as an access token
- refresh: long-lived, carried in the refreshToken cookie (refresh secret,
  isRefreshToken=True); only accepted by the refresh operation

Access and refresh keys are separate secrets, so rotating one does not
invalidate tokens signed with the other.
"""
import os
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

import jwt as pyjwt

from ..utils.secrets import get_jwt_access_secret, get_jwt_refresh_secret

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(minutes=int(os.getenv("JWT_ACCESS_EXPIRATION_MINUTES", "15")))
REFRESH_TOKEN_TTL = timedelta(days=int(os.getenv("JWT_REFRESH_EXPIRATION_DAYS", "7")))
CHALLENGE_TOKEN_TTL = timedelta(minutes=5)

PENDING_2FA_ROLE = "2fa-pending"

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_CHALLENGE = "2fa_challenge"


class TokenFailure(str, Enum):
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"


class TokenError(Exception):
    """Token failed verification."""

    def __init__(self, reason: TokenFailure, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason


@dataclass
class TokenClaims:
    """Verified token contents."""
    user_id: int
    email: str
    role: str
    token_type: str
    expires_at: datetime


class TokenIssuer:
    """
    Mints and verifies portal JWTs.

    Example usage:
        issuer = TokenIssuer(access_secret="...", refresh_secret="...")
        token = issuer.issue_access(user)
        claims = issuer.verify_access(token)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = ACCESS_TOKEN_TTL,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
        challenge_ttl: timedelta = CHALLENGE_TOKEN_TTL,
    ):
        if not access_secret or not refresh_secret:
            raise ValueError("Both access and refresh signing secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh signing secrets must differ")

        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.challenge_ttl = challenge_ttl

    @property
    def refresh_max_age(self) -> int:
        """Refresh lifetime in seconds (cookie Max-Age)."""
        return int(self.refresh_ttl.total_seconds())

    # ==========================================
    # Issuance
    # ==========================================

    def _encode(
        self,
        user: Dict[str, Any],
        secret: str,
        ttl: timedelta,
        token_type: str,
        role: Optional[str] = None,
        **extra: Any,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "userId": user["id"],
            "email": user["email"],
            "role": role or user.get("role") or "client",
            "type": token_type,
            "iat": now,
            "exp": now + ttl,
            **extra,
        }
        return pyjwt.encode(payload, secret, algorithm=JWT_ALGORITHM)

    def issue_access(self, user: Dict[str, Any]) -> str:
        return self._encode(user, self._access_secret, self.access_ttl, TOKEN_TYPE_ACCESS)

    def issue_refresh(self, user: Dict[str, Any]) -> str:
        return self._encode(
            user,
            self._refresh_secret,
            self.refresh_ttl,
            TOKEN_TYPE_REFRESH,
            isRefreshToken=True,
        )

    def issue_challenge(self, user: Dict[str, Any]) -> str:
        """Short-lived token returned as tempToken while 2FA is pending."""
        return self._encode(
            user,
            self._access_secret,
            self.challenge_ttl,
            TOKEN_TYPE_CHALLENGE,
            role=PENDING_2FA_ROLE,
        )

    # ==========================================
    # Verification
    # ==========================================

    def _decode(self, token: Optional[str], secret: str) -> Dict[str, Any]:
        if not token:
            raise TokenError(TokenFailure.INVALID, "Token missing")
        try:
            payload = pyjwt.decode(
                token,
                secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except pyjwt.ExpiredSignatureError:
            raise TokenError(TokenFailure.EXPIRED, "Token has expired")
        except pyjwt.InvalidTokenError as e:
            raise TokenError(TokenFailure.INVALID, f"Token is invalid: {e}")

        if not isinstance(payload.get("userId"), int) or isinstance(payload.get("userId"), bool):
            raise TokenError(TokenFailure.INVALID, "Token payload has no numeric userId")
        if not isinstance(payload.get("email"), str) or not isinstance(payload.get("role"), str):
            raise TokenError(TokenFailure.INVALID, "Token payload structure is invalid")
        return payload

    @staticmethod
    def _claims(payload: Dict[str, Any]) -> TokenClaims:
        return TokenClaims(
            user_id=payload["userId"],
            email=payload["email"],
            role=payload["role"],
            token_type=payload.get("type", ""),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify_access(self, token: Optional[str]) -> TokenClaims:
        """
        Verify a bearer access token.

        Raises:
            TokenError: EXPIRED, or INVALID for bad signatures, malformed
                payloads, challenge tokens and the pending-2FA role.
        """
        payload = self._decode(token, self._access_secret)
        if payload.get("type") != TOKEN_TYPE_ACCESS or payload["role"] == PENDING_2FA_ROLE:
            raise TokenError(TokenFailure.INVALID, "Not an access token")
        return self._claims(payload)

    def verify_refresh(self, token: Optional[str]) -> TokenClaims:
        """
        Verify a refresh token from the cookie.

        Raises:
            TokenError: EXPIRED, or INVALID when the isRefreshToken flag is absent.
        """
        payload = self._decode(token, self._refresh_secret)
        if payload.get("isRefreshToken") is not True or payload.get("type") != TOKEN_TYPE_REFRESH:
            raise TokenError(TokenFailure.INVALID, "Not a refresh token")
        return self._claims(payload)

    def verify_challenge(self, token: Optional[str]) -> TokenClaims:
        payload = self._decode(token, self._access_secret)
        if payload.get("type") != TOKEN_TYPE_CHALLENGE or payload["role"] != PENDING_2FA_ROLE:
            raise TokenError(TokenFailure.INVALID, "Not a 2FA challenge token")
        return self._claims(payload)


# Singleton instance
_token_issuer: Optional[TokenIssuer] = None


def get_token_issuer() -> TokenIssuer:
    """
    Get singleton TokenIssuer built from JWT_ACCESS_SECRET / JWT_REFRESH_SECRET.

    Raises:
        ValueError: If either secret is missing.
    """
    global _token_issuer
    if _token_issuer is None:
        _token_issuer = TokenIssuer(
            access_secret=get_jwt_access_secret(),
            refresh_secret=get_jwt_refresh_secret(),
        )
        logger.info(
            f"Token issuer ready (access ttl={ACCESS_TOKEN_TTL}, refresh ttl={REFRESH_TOKEN_TTL})"
        )
    return _token_issuer
