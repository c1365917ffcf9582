"""
API Key Authorization Module
============================

Checks the ``Authorization: Bearer <key>`` credential of inbound requests
against the configured set of accepted keys.

Two credential modes exist:
- single-key (API_KEY): the header must equal ``Bearer <API_KEY>``, every
  failure is answered with ``Unauthorized``
- multi-key (API_KEYS): a wrong scheme and an unknown key are reported with
  distinct messages

The check runs as a FastAPI dependency, before the request body is read and
before any upstream connection is made.
"""

import logging
import secrets
from typing import Iterable, Optional

from fastapi import HTTPException, Request, status

from ..config import Settings

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "

UNAUTHORIZED_DETAIL = "Unauthorized"
UNKNOWN_SCHEME_DETAIL = "Unknown authorization scheme - use Bearer <API_KEY>"
INVALID_KEY_DETAIL = "Invalid API key"


# =============================================================================
# Helper Functions
# =============================================================================

def extract_bearer_key(authorization: Optional[str]) -> Optional[str]:
    """
    Extract the key from an Authorization header value.

    The scheme prefix is matched literally (case-sensitive, one space) and the
    remainder is returned untouched, so ``"Bearer "`` yields an empty key.

    Args:
        authorization: Authorization header value, or None if absent

    Returns:
        Candidate key, or None if the header is absent or not a Bearer header
    """
    if authorization is None or not authorization.startswith(BEARER_PREFIX):
        return None

    return authorization[len(BEARER_PREFIX):]


def is_accepted_key(candidate: str, accepted_keys: Iterable[str]) -> bool:
    """
    Check a candidate key against the accepted keys by exact match.

    Every accepted key is compared in constant time so the response timing
    does not depend on which key, if any, matched.
    """
    if not candidate:
        return False

    candidate_bytes = candidate.encode("utf-8")
    matched = False
    for key in accepted_keys:
        if secrets.compare_digest(candidate_bytes, key.encode("utf-8")):
            matched = True
    return matched


def _reject(detail: str, request: Request) -> HTTPException:
    logger.warning(
        f"Rejected {request.method} {request.url.path}: {detail}",
        extra={"client": request.client.host if request.client else None},
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def check_authorization(authorization: Optional[str], settings: Settings) -> Optional[str]:
    """
    Decide whether an Authorization header grants access.

    Args:
        authorization: Authorization header value, or None if absent
        settings: Application settings holding the accepted keys

    Returns:
        None when access is granted, otherwise the rejection message
    """
    candidate = extract_bearer_key(authorization)

    if settings.auth_mode == "single":
        if candidate is None or not is_accepted_key(candidate, settings.accepted_keys):
            return UNAUTHORIZED_DETAIL
        return None

    if candidate is None:
        return UNKNOWN_SCHEME_DETAIL
    if not is_accepted_key(candidate, settings.accepted_keys):
        return INVALID_KEY_DETAIL
    return None


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def require_api_key(request: Request) -> str:
    """
    FastAPI dependency enforcing a valid Bearer key.

    Usage in routes:
        @router.get("/protected")
        async def protected_route(api_key: str = Depends(require_api_key)):
            ...

    Returns:
        The accepted key

    Raises:
        HTTPException: 401 with the plain-text reason for the rejection
    """
    settings: Settings = request.app.state.settings
    authorization = request.headers.get("authorization")

    detail = check_authorization(authorization, settings)
    if detail is not None:
        raise _reject(detail, request)

    return extract_bearer_key(authorization)


__all__ = [
    "extract_bearer_key",
    "is_accepted_key",
    "check_authorization",
    "require_api_key",
    "UNAUTHORIZED_DETAIL",
    "UNKNOWN_SCHEME_DETAIL",
    "INVALID_KEY_DETAIL",
]
