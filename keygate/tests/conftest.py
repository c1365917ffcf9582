"""
Shared fixtures for the keygate test suite.

The upstream server is replaced by an httpx transport that records every
request it receives, so tests can assert both what was forwarded and whether
the upstream was contacted at all.
"""

from typing import Callable, List, Optional, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from keygate.config import Settings, get_settings
from keygate.main import create_app


SETTINGS_ENV_VARS = [
    "TARGET_HOST",
    "TARGET_PORT",
    "HOST",
    "PORT",
    "API_KEY",
    "API_KEYS",
    "LOG_LEVEL",
    "UPSTREAM_CONNECT_TIMEOUT",
    "UPSTREAM_READ_TIMEOUT",
    "UPSTREAM_WRITE_TIMEOUT",
]


class ChunkedBody(httpx.AsyncByteStream):
    """Upstream body delivered as separate chunks"""

    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


def streamed_response(
    status_code: int = 200,
    headers=None,
    content: Union[bytes, List[bytes]] = b"",
) -> httpx.Response:
    """
    Build an upstream response whose body is still unread, the way a real
    transport hands it over. ``httpx.Response(content=...)`` reads the body
    up front, which a client sending with ``stream=True`` never sees.
    """
    headers = httpx.Headers(headers)
    if isinstance(content, bytes):
        headers.setdefault("Content-Length", str(len(content)))
        stream = httpx.ByteStream(content)
    else:
        stream = ChunkedBody(content)
    return httpx.Response(status_code, headers=headers, stream=stream)


class RecordingUpstream:
    """
    Stand-in upstream server.

    Every forwarded request is stored (body already read) in ``requests``;
    ``respond`` builds the answer and may be replaced per test, usually
    through ``respond_with``.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.respond_with(
            200,
            headers={"Content-Type": "application/json"},
            content=b'{"models":[]}',
        )

    def respond_with(self, status_code: int = 200, headers=None, content=b"") -> None:
        self.respond: Callable[[httpx.Request], httpx.Response] = lambda request: streamed_response(
            status_code, headers=headers, content=content
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def called(self) -> bool:
        return bool(self.requests)

    @property
    def last_request(self) -> Optional[httpx.Request]:
        return self.requests[-1] if self.requests else None


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    """Keep the developer's environment and .env file out of the tests"""
    for name in SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_settings():
    """Multi-key settings pointing at a fake upstream host"""
    return Settings(
        _env_file=None,
        API_KEYS="abc,def",
        TARGET_HOST="upstream.test",
        TARGET_PORT=11434,
    )


@pytest.fixture
def single_key_settings():
    """Single-key (API_KEY) settings"""
    return Settings(
        _env_file=None,
        API_KEY="secret-key",
        TARGET_HOST="upstream.test",
    )


@pytest.fixture
def upstream():
    return RecordingUpstream()


@pytest.fixture
def app(mock_settings, upstream):
    """Create test FastAPI application wired to the recording upstream"""
    return create_app(mock_settings, transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def client(app):
    """Create test client (runs the lifespan so the upstream client exists)"""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers():
    """Authorization headers carrying an accepted key"""
    return {"Authorization": "Bearer abc"}
