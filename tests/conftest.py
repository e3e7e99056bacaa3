"""Shared fixtures.

The Supabase Auth API is replaced with an httpx.MockTransport; async code is
driven with asyncio.run inside plain test functions.
"""
import json
import os
import time
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

# Must be set before importing app modules.
os.environ["SUPABASE_URL"] = "https://planify-test.supabase.co"
os.environ["SUPABASE_ANON_KEY"] = "test-anon-key-0123456789abcdef"
os.environ.pop("SUPABASE_JWT_SECRET", None)
os.environ["CALLBACK_MAX_ATTEMPTS"] = "4"
os.environ["CALLBACK_BASE_DELAY_MS"] = "1"
os.environ["CALLBACK_MAX_DELAY_MS"] = "5"

from planify_bff import main


def session_payload(access_token="access-1", refresh_token="refresh-1", expires_in=3600,
                    email="ada@example.com"):
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": expires_in,
        "expires_at": int(time.time()) + expires_in,
        "refresh_token": refresh_token,
        "user": {
            "id": "user-1",
            "email": email,
            "role": "authenticated",
            "aud": "authenticated",
            "user_metadata": {"first_name": "Ada"},
        },
    }


class FakeSupabase:
    """Scripted Supabase Auth. Routes are keyed like "POST /token?grant_type=pkce"."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, route, *responses):
        """Each response is (status, json_body) or an exception to raise. The last one repeats."""
        self.routes[route] = list(responses)

    def called(self, route):
        return [c for c in self.calls if c.route == route]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/auth/v1"):
            path = path[len("/auth/v1"):]
        grant_type = request.url.params.get("grant_type")
        route = f"{request.method} {path}" + (f"?grant_type={grant_type}" if grant_type else "")
        self.calls.append(SimpleNamespace(
            route=route,
            json=json.loads(request.content) if request.content else None,
            headers=request.headers,
        ))

        queue = self.routes.get(route)
        if not queue:
            return httpx.Response(404, json={"msg": f"unmocked route {route}"})
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        status_code, body = outcome
        return httpx.Response(status_code, json=body)


@pytest.fixture
def fake_supabase():
    fake = FakeSupabase()
    with patch("planify_bff.auth_utils.provider_transport", httpx.MockTransport(fake.handler)):
        yield fake


@pytest.fixture
def make_session():
    return session_payload


@pytest.fixture
def client(fake_supabase):
    from fastapi.testclient import TestClient

    main._in_memory_session_data_storage.clear()
    with TestClient(main.app) as test_client:
        yield test_client
    main._in_memory_session_data_storage.clear()


@pytest.fixture
def server_session(client):
    """Returns the server-side session dict behind the test client's cookie."""

    def _get():
        session_id = client.cookies.get(main.SESSION_COOKIE_NAME)
        return main._in_memory_session_data_storage.get(session_id, {})

    return _get
