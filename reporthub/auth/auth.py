"""API key authentication for the CI upload endpoint.

CI jobs send ``Authorization: Bearer <key>`` (a bare key is accepted too).
Keys are configured through ``API_KEYS`` as comma-separated
``key:project_id`` pairs; each key scopes its uploads to one project.

Security Model:
    - Constant-time comparison (``hmac.compare_digest``) against every
      configured key, so lookup time does not depend on which key matched
    - Failed attempts are logged with key length and a 4-character prefix
      only, never the key itself
    - Missing or invalid keys answer 401 with a ``WWW-Authenticate`` challenge

Used by:
    - reporthub.config: parsing ``API_KEYS``
    - reporthub.service.main: ``/ci-upload`` dependency
"""

import hmac
from typing import Optional

import structlog
from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from .models import CIApiKey

logger = structlog.get_logger()

# auto_error=False so a missing header gets our own 401 message
api_key_header = APIKeyHeader(name="Authorization", auto_error=False)

BEARER_PREFIX = "bearer "


def parse_api_keys(raw: Optional[str]) -> dict[str, str]:
    """Parse ``key:project_id`` pairs into a key → project mapping.

    Malformed entries (no colon, empty key or project) are skipped with a
    warning.
    """
    keys: dict[str, str] = {}
    if not raw:
        return keys
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, project_id = entry.partition(":")
        key, project_id = key.strip(), project_id.strip()
        if not sep or not key or not project_id:
            logger.warning("Ignoring malformed API_KEYS entry", entry_length=len(entry))
            continue
        keys[key] = project_id
    return keys


def _extract_key(header_value: str) -> str:
    value = header_value.strip()
    if value.lower().startswith(BEARER_PREFIX):
        return value[len(BEARER_PREFIX):].strip()
    return value


def _key_prefix(key: str) -> str:
    return key[:4] + "..." if len(key) > 4 else "***"


def resolve_api_key(header_value: Optional[str], api_keys: dict[str, str]) -> Optional[CIApiKey]:
    """Validate an ``Authorization`` header value against configured keys.

    Args:
        header_value: Raw header, ``Bearer <key>`` or the bare key
        api_keys: Mapping of key to project id

    Returns:
        CIApiKey for a valid key, None otherwise
    """
    if not header_value:
        return None
    candidate = _extract_key(header_value)
    if not candidate:
        return None

    matched: Optional[str] = None
    for key, project_id in api_keys.items():
        if hmac.compare_digest(candidate.encode("utf-8"), key.encode("utf-8")):
            matched = project_id
    if matched is None:
        return None
    return CIApiKey(key_id=_key_prefix(candidate), project_id=matched)


async def require_ci_api_key(
    authorization: Optional[str] = Security(api_key_header),
) -> CIApiKey:
    """FastAPI dependency: authenticate a CI upload and return its project scope.

    Raises:
        HTTPException: 401 when the key is missing or unknown
    """
    from ..container import get_settings

    if not authorization:
        logger.warning("Missing API key in CI upload request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    api_key = resolve_api_key(authorization, get_settings().api_keys)
    if api_key is None:
        candidate = _extract_key(authorization)
        logger.warning(
            "Invalid API key attempted",
            key_length=len(candidate),
            key_prefix=_key_prefix(candidate),
            security_event=True,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info("CI API key authenticated", key_id=api_key.key_id, project_id=api_key.project_id)
    return api_key
