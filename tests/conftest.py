"""Pytest configuration and fixtures for ti-client tests.

This file provides:
- StubService: MockTransport handler replaying canned responses
- Fixtures: complete client config, client factory over the stub, PEM paths
"""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Any, Callable, Generator, Iterable
from unittest.mock import MagicMock, patch

import httpx
import pytest

from ti_client.client import TIClient
from ti_client.models import ClientConfig

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
CERTS_DIR = FIXTURES_DIR / "certs"
CLIENT_CERT_PATH = CERTS_DIR / "client.crt"
CLIENT_KEY_PATH = CERTS_DIR / "client.key"
CA_CERT_PATH = CERTS_DIR / "ca.crt"

ENDPOINT = "https://ti.example.com"


def make_response(
    status_code: int = 200,
    json: Any = None,
    content: bytes | str | None = None,
) -> httpx.Response:
    """Create an httpx.Response for the stub service.

    Prefer this over constructing httpx.Response directly - a JSON body is
    only attached when given, so an empty body stays empty.
    """
    if json is not None:
        return httpx.Response(status_code, json=json)
    return httpx.Response(status_code, content=content or b"")


class StubService:
    """MockTransport handler that records requests and replays responses.

    Each entry of ``responses`` is an httpx.Response factory result, an
    exception to raise (e.g. httpx.ConnectError) or a callable taking the
    request. The last entry repeats once the others are used up.

    Usage:
        stub = StubService([make_response(503), make_response(200, json={})])
        client = httpx.Client(transport=httpx.MockTransport(stub))
    """

    def __init__(self, responses: Iterable[Any] = ()) -> None:
        self._responses = list(responses) or [make_response(200)]
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entry = self._responses[0] if len(self._responses) == 1 else self._responses.pop(0)
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            return entry(request)
        # Hand out a fresh copy so a repeated entry can be read again.
        return httpx.Response(entry.status_code, headers=entry.headers, content=entry.content)


def query_items(request: httpx.Request) -> list[tuple[str, str]]:
    """Query parameters of a recorded request, in order."""
    return list(request.url.params.multi_items())


def b64_file(path: Path) -> str:
    return base64.b64encode(path.read_bytes()).decode("ascii")


@pytest.fixture
def client_config() -> ClientConfig:
    """A config with every scope field set."""
    return ClientConfig(
        endpoint=ENDPOINT,
        token="secret-token",
        account_id="acct",
        org_id="org",
        project_id="proj",
        pipeline_id="pipe",
        build_id="42",
        stage_id="stage",
        repo="https://github.com/example/repo",
        sha="abc123",
        commit_link="https://github.com/example/repo/commit/abc123",
    )


@pytest.fixture
def make_client(
    client_config: ClientConfig, tmp_path: Path
) -> Generator[Callable[..., tuple[TIClient, StubService]], None, None]:
    """Factory building a TIClient whose transport is a StubService.

    Default mTLS paths point into tmp_path so the host's /etc/mtls is never read.
    """
    created: list[httpx.Client] = []

    def factory(
        responses: Iterable[Any] = (),
        config: ClientConfig | None = None,
    ) -> tuple[TIClient, StubService]:
        stub = StubService(responses)
        http_client = httpx.Client(transport=httpx.MockTransport(stub))
        created.append(http_client)
        client = TIClient(
            config or client_config,
            http_client=http_client,
            mtls_cert_path=tmp_path / "missing.crt",
            mtls_key_path=tmp_path / "missing.key",
        )
        return client, stub

    yield factory

    for http_client in created:
        http_client.close()


@pytest.fixture
def no_sleep() -> Generator[MagicMock, None, None]:
    """Patch out retry sleeps in the executor."""
    with patch("ti_client.executor.time.sleep") as mock_sleep:
        yield mock_sleep
