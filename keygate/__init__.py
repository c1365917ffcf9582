"""
keygate - Bearer key authenticating reverse proxy.

Accepts any HTTP request, checks its ``Authorization: Bearer <key>`` header
against the configured keys and streams authorized requests to a single
upstream server.
"""

__version__ = "1.0.0"
