"""
Authentication Package

This package holds the Bearer key check that guards every proxied request.

Modules:
- keys: header parsing, key matching and the require_api_key dependency

The authorization flow:
1. Client sends ``Authorization: Bearer <key>``
2. require_api_key parses the header and matches the key against the
   configured set
3. On mismatch the request is answered with 401 and never reaches upstream
"""

from .keys import require_api_key

__all__ = [
    "require_api_key",
]
