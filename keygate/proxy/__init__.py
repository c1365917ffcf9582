"""
Proxy Package
=============

This package implements the catch-all endpoint that forwards authorized
requests to the fixed upstream server.

Main Components:
----------------
- routes.py: FastAPI router with the /{path:path} proxy endpoint

Forwarding Features:
--------------------
- Bearer key enforcement before any upstream I/O
- Verbatim method, path, query and header pass-through
- Streaming request and response bodies

Usage:
------
    from keygate.proxy import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
