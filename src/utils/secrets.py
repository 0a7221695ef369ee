"""
Secrets management utilities for the client portal.

Supports multiple secret sources:
1. Environment variables (development)
2. Docker secrets files (production)

Usage:
    from src.utils.secrets import get_secret

    # Automatically checks JWT_ACCESS_SECRET_FILE, then JWT_ACCESS_SECRET
    access_secret = get_secret("JWT_ACCESS_SECRET")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret value from various sources.

    Priority:
    1. {NAME}_FILE environment variable (path to file containing secret)
    2. {NAME} environment variable (direct value)
    3. /run/secrets/{name.lower()} file (Docker secrets default path)
    4. Default value

    Args:
        name: Secret name (e.g., "JWT_REFRESH_SECRET")
        default: Default value if secret not found

    Returns:
        Secret value or default
    """
    file_env = f"{name}_FILE"
    file_path = os.environ.get(file_env)

    if file_path and os.path.isfile(file_path):
        try:
            with open(file_path, 'r') as f:
                secret = f.read().strip()
                logger.debug(f"Loaded secret {name} from file")
                return secret
        except OSError as e:
            logger.warning(f"Failed to read secret file {file_path}: {e}")

    env_value = os.environ.get(name)
    if env_value:
        logger.debug(f"Loaded secret {name} from environment")
        return env_value

    docker_secret_path = f"/run/secrets/{name.lower()}"
    if os.path.isfile(docker_secret_path):
        try:
            with open(docker_secret_path, 'r') as f:
                secret = f.read().strip()
                logger.debug(f"Loaded secret {name} from Docker secrets")
                return secret
        except OSError as e:
            logger.warning(f"Failed to read Docker secret {docker_secret_path}: {e}")

    if default is None:
        logger.warning(f"Secret {name} not found, no default provided")
    return default


def get_required_secret(name: str) -> str:
    """
    Get a required secret, raising an error if not found.

    Raises:
        ValueError: If secret not found
    """
    value = get_secret(name)
    if value is None:
        raise ValueError(
            f"Required secret '{name}' not found. "
            f"Set {name} or {name}_FILE environment variable."
        )
    return value


def get_postgres_password() -> str:
    """Get PostgreSQL password."""
    return get_secret("POSTGRES_PASSWORD", "") or ""


def get_jwt_access_secret() -> str:
    """Signing key for access and 2FA challenge tokens."""
    return get_required_secret("JWT_ACCESS_SECRET")


def get_jwt_refresh_secret() -> str:
    """Signing key for refresh tokens. Must differ from the access key."""
    return get_required_secret("JWT_REFRESH_SECRET")


def mask_secret(secret: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask a secret for safe logging.

    Args:
        secret: The secret to mask
        visible_chars: Number of characters to show at start and end

    Returns:
        Masked string like "abc...xyz"
    """
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
