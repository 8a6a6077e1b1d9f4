from __future__ import annotations

import json as _json
from contextlib import contextmanager
from http import HTTPStatus
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pipeline_analyzer.storage.database import Base
from pipeline_analyzer.telemetry import events


class FakeResponse:
    def __init__(
        self,
        status_code: int = HTTPStatus.OK,
        payload=None,
        text: str | None = None,
        headers: dict | None = None,
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self._text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    @property
    def is_error(self) -> bool:
        return self.status_code >= HTTPStatus.BAD_REQUEST

    @property
    def text(self) -> str:
        if self._text is not None:
            return self._text
        if self._payload is None:
            return ""
        return _json.dumps(self._payload)

    @property
    def content(self) -> bytes:
        return self.text.encode("utf-8")


@pytest.fixture(autouse=True)
def events_disabled(monkeypatch):
    """Keep provider and registry tests from writing telemetry rows."""

    monkeypatch.setattr(events, "_EVENTS_ENABLED", False)


@pytest.fixture
def events_db(monkeypatch, events_disabled):
    """Turn telemetry back on against an isolated in-memory database."""

    engine = create_engine("sqlite:///:memory:", future=True)
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    Base.metadata.create_all(engine)

    @contextmanager
    def session_scope():
        session = TestingSession()
        try:
            yield session
            session.commit()
        except Exception:  # pragma: no cover - defensive
            session.rollback()
            raise
        finally:
            session.close()

    monkeypatch.setattr(events, "session_scope", session_scope)
    monkeypatch.setattr(events, "_EVENTS_ENABLED", True)
    return session_scope


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def http_stub(monkeypatch):
    """Replace the shared httpx client with one answering from ``routes``.

    Routes are matched by URL suffix, longest first; a route may hold an
    exception to raise instead of a response. Unmatched URLs get a 404.
    """

    routes: dict = {}
    calls: list[dict] = []

    class _DummyAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            self.timeout = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, params=None, json=None, headers=None):
            calls.append(
                {
                    "method": method,
                    "url": url,
                    "params": params,
                    "json": json,
                    "headers": headers,
                    "timeout": self.timeout,
                }
            )
            for suffix in sorted(routes, key=len, reverse=True):
                if url.endswith(suffix):
                    result = routes[suffix]
                    if isinstance(result, Exception):
                        raise result
                    return result
            return FakeResponse(HTTPStatus.NOT_FOUND, {"message": "Not Found"})

    monkeypatch.setattr("pipeline_analyzer.providers.http.httpx.AsyncClient", _DummyAsyncClient)
    return SimpleNamespace(routes=routes, calls=calls)
