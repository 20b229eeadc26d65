"""CI API key authentication for Report Hub."""

from .auth import parse_api_keys, require_ci_api_key, resolve_api_key
from .models import CIApiKey

__all__ = ["parse_api_keys", "require_ci_api_key", "resolve_api_key", "CIApiKey"]
