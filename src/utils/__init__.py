"""
Shared utilities for the client portal.

This package provides:
- Secrets management
- Common helper functions
"""
from .secrets import get_secret, get_required_secret, mask_secret

__all__ = ["get_secret", "get_required_secret", "mask_secret"]
