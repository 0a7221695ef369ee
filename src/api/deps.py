"""
FastAPI Dependencies for the client portal API.

Provides:
- Database, token issuer, email and AuthService dependencies
- Bearer access-token authentication
- Rate limiting per policy (Redis-backed, in-memory fallback)
- Redis client
"""
import os
import time
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, List, Set, Tuple

import redis
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..auth.service import AuthService
from ..auth.tokens import TokenClaims, TokenError, TokenFailure, TokenIssuer, get_token_issuer
from ..database.user_db import UserDB, get_user_db
from ..errors import AuthenticationError, AuthorizationError, RateLimitError
from ..notifications.email import EmailService, get_email_service

logger = logging.getLogger(__name__)


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if Redis is not configured or unavailable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", "6379"))
    password = os.getenv("REDIS_PASSWORD", "") or None
    db = int(os.getenv("REDIS_DB", "0"))

    try:
        _redis_client = redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        _redis_client.ping()
        logger.info(f"Redis connected: {host}:{port}")
        return _redis_client
    except redis.ConnectionError as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will use in-memory fallback.")
        _redis_client = None
        return None


# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Service Dependencies
# ============================================

def get_db() -> UserDB:
    """Get database connection."""
    return get_user_db()


def get_tokens() -> TokenIssuer:
    return get_token_issuer()


def get_email() -> EmailService:
    return get_email_service()


def get_auth_service(
    db: UserDB = Depends(get_db),
    tokens: TokenIssuer = Depends(get_tokens),
    email: EmailService = Depends(get_email),
) -> AuthService:
    return AuthService(db, tokens, email)


# ============================================
# Authentication Dependencies
# ============================================

def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    tokens: TokenIssuer = Depends(get_tokens),
) -> TokenClaims:
    """
    Validate the bearer access token and return its claims.

    The role is taken from the token for its short lifetime; the database is
    not consulted here. 2FA challenge tokens are rejected.

    Raises:
        AuthenticationError: If token is missing, invalid, or expired.
    """
    if credentials is None:
        raise AuthenticationError("Authorization token required", code="TOKEN_REQUIRED")

    try:
        return tokens.verify_access(credentials.credentials)
    except TokenError as e:
        code = "TOKEN_EXPIRED" if e.reason == TokenFailure.EXPIRED else "INVALID_TOKEN"
        raise AuthenticationError("Invalid or expired token", code=code)


def require_admin(user: TokenClaims = Depends(get_current_user)) -> TokenClaims:
    """
    Raises:
        AuthorizationError: If the token's role is not admin.
    """
    if user.role != "admin":
        raise AuthorizationError("Admin access required", code="ADMIN_REQUIRED")
    return user


# ============================================
# Rate Limiting (Redis-backed with in-memory fallback)
# ============================================

@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_seconds: int
    max_requests: int
    message: str


AUTH_POLICY = RateLimitPolicy(
    "auth", 15 * 60, 5,
    "Too many authentication attempts. Please try again later.",
)
TWO_FACTOR_POLICY = RateLimitPolicy(
    "two_factor", 15 * 60, 5,
    "Too many 2FA attempts. Please try again later.",
)
PASSWORD_RESET_POLICY = RateLimitPolicy(
    "password_reset", 60 * 60, 3,
    "Too many password reset requests. Please try again later.",
)
EMAIL_VERIFICATION_POLICY = RateLimitPolicy(
    "email_verification", 15 * 60, 3,
    "Too many verification email requests. Please try again later.",
)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int
    limit: int


class AuthRateLimiter:
    """
    Fixed-window attempt counter for unauthenticated endpoints.

    Each (policy, identity) pair gets a Redis counter that expires with its
    window, so no sweep is needed and every instance shares the count.
    Uses an in-memory sliding window if Redis is unavailable.
    """

    KEY_PREFIX = "portal:ratelimit"
    SWEEP_INTERVAL_SECONDS = 60

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client
        # In-memory fallback storage, shared by threadpool workers
        self._memory_store: Dict[str, List[float]] = {}
        self._memory_windows: Dict[str, int] = {}
        self._memory_lock = threading.Lock()
        self._last_sweep = 0.0

    def _sweep_memory(self, now: float) -> None:
        """Drop every key whose attempts have all aged out of its window."""
        for key in list(self._memory_store):
            window = self._memory_windows[key]
            live = [ts for ts in self._memory_store[key] if now - ts < window]
            if live:
                self._memory_store[key] = live
            else:
                del self._memory_store[key]
                del self._memory_windows[key]
        self._last_sweep = now

    def _increment(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """
        Count one attempt.

        Returns:
            Tuple of (count in current window, seconds until the window resets)
        """
        if self.redis is not None:
            try:
                full_key = f"{self.KEY_PREFIX}:{key}"
                pipe = self.redis.pipeline()
                pipe.incr(full_key)
                pipe.ttl(full_key)
                count, ttl = pipe.execute()
                if ttl is None or ttl < 0:
                    # First hit in this window (or a key that lost its TTL)
                    self.redis.expire(full_key, window_seconds)
                    ttl = window_seconds
                return int(count), int(ttl)
            except redis.RedisError as e:
                logger.warning(f"Redis error in rate limit increment: {e}")

        # In-memory fallback
        now = time.time()
        with self._memory_lock:
            if now - self._last_sweep >= self.SWEEP_INTERVAL_SECONDS:
                self._sweep_memory(now)

            attempts = [
                ts for ts in self._memory_store.get(key, [])
                if now - ts < window_seconds
            ]
            attempts.append(now)
            self._memory_store[key] = attempts
            self._memory_windows[key] = window_seconds
            return len(attempts), max(1, int(window_seconds - (now - attempts[0])))

    def check_or_block(self, identity: str, policy: RateLimitPolicy) -> RateLimitDecision:
        """Record an attempt and decide whether it is allowed."""
        count, retry_after = self._increment(f"{policy.name}:{identity}", policy.window_seconds)
        return RateLimitDecision(
            allowed=count <= policy.max_requests,
            remaining=max(0, policy.max_requests - count),
            retry_after=retry_after,
            limit=policy.max_requests,
        )


# Singleton auth rate limiter
_auth_rate_limiter: Optional[AuthRateLimiter] = None


def get_auth_rate_limiter() -> AuthRateLimiter:
    """Get singleton auth rate limiter."""
    global _auth_rate_limiter
    if _auth_rate_limiter is None:
        _auth_rate_limiter = AuthRateLimiter(get_redis_client())
    return _auth_rate_limiter


def rate_limiting_enabled() -> bool:
    return os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"


def trusted_proxies() -> Set[str]:
    """Peers allowed to report the client address (TRUSTED_PROXIES, comma separated)."""
    return {host.strip() for host in os.getenv("TRUSTED_PROXIES", "").split(",") if host.strip()}


def get_client_identity(request: Request) -> str:
    """
    Client IP used as the rate-limit key.

    The socket peer, unless the peer is a trusted proxy. Then the last
    X-Forwarded-For entry is used, which is the address that proxy saw;
    earlier entries come from the client and can be forged.
    """
    peer = request.client.host if request.client else "unknown"
    if peer not in trusted_proxies():
        return peer

    forwarded = request.headers.get("X-Forwarded-For", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    return hops[-1] if hops else peer


def _enforce(request: Request, limiter: AuthRateLimiter, policy: RateLimitPolicy) -> None:
    if not rate_limiting_enabled():
        return

    identity = get_client_identity(request)
    decision = limiter.check_or_block(identity, policy)
    if not decision.allowed:
        logger.warning(f"Rate limit '{policy.name}' exceeded for {identity}")
        raise RateLimitError(
            policy.message,
            retry_after=decision.retry_after,
            limit=decision.limit,
        )


def check_auth_rate_limit(
    request: Request,
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    """Login and registration attempts per IP."""
    _enforce(request, limiter, AUTH_POLICY)


def check_two_factor_rate_limit(
    request: Request,
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    _enforce(request, limiter, TWO_FACTOR_POLICY)


def check_password_reset_rate_limit(
    request: Request,
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    _enforce(request, limiter, PASSWORD_RESET_POLICY)


def check_email_verification_rate_limit(
    request: Request,
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    _enforce(request, limiter, EMAIL_VERIFICATION_POLICY)
