import asyncio
import time

import httpx
import pytest

from planify_bff.auth_utils import SupabaseAuthClient
from planify_bff.callback_flow import SessionProber
from planify_bff.callback_models import (
    CONFIG_ERROR,
    OAUTH_FAILED,
    AttemptOutcome,
    CallbackParams,
    RetryPolicy,
)
from planify_bff.config import Settings
from planify_bff.session_data import AUTH_TOKEN_KEY, PKCE_VERIFIER_KEY, PROVIDER_SESSION_KEY

POLICY = RetryPolicy(max_attempts=8, refresh_after_attempt=3)


def _prober(storage, cfg=None):
    if cfg is None:
        return SessionProber(lambda: SupabaseAuthClient(storage), storage, POLICY)
    return SessionProber(lambda: SupabaseAuthClient(storage, cfg=cfg), storage, POLICY)


def test_code_exchange_stores_bearer_token(fake_supabase, make_session):
    fake_supabase.on("POST /token?grant_type=pkce", (200, make_session(access_token="from-code")))
    storage = {PKCE_VERIFIER_KEY: "verifier-123"}

    result = asyncio.run(_prober(storage).probe(CallbackParams(code="auth-code"), 0))

    assert result.outcome is AttemptOutcome.SESSION_FOUND
    assert storage[AUTH_TOKEN_KEY] == "from-code"
    assert storage[PROVIDER_SESSION_KEY]["user"]["email"] == "ada@example.com"
    assert PKCE_VERIFIER_KEY not in storage
    (call,) = fake_supabase.called("POST /token?grant_type=pkce")
    assert call.json == {"auth_code": "auth-code", "code_verifier": "verifier-123"}
    assert call.headers["apikey"] == "test-anon-key-0123456789abcdef"


def test_failed_exchange_falls_through_to_current_session(fake_supabase, make_session):
    fake_supabase.on("POST /token?grant_type=pkce", (400, {"error": "invalid_grant", "error_description": "used"}))
    storage = {PKCE_VERIFIER_KEY: "verifier-123", PROVIDER_SESSION_KEY: make_session(access_token="existing")}

    result = asyncio.run(_prober(storage).probe(CallbackParams(code="auth-code"), 0))

    assert result.outcome is AttemptOutcome.SESSION_FOUND
    assert storage[AUTH_TOKEN_KEY] == "existing"


def test_code_without_verifier_is_not_fatal(fake_supabase):
    storage = {}

    result = asyncio.run(_prober(storage).probe(CallbackParams(code="auth-code"), 0))

    assert result.outcome is AttemptOutcome.RETRYABLE
    assert fake_supabase.calls == []
    assert AUTH_TOKEN_KEY not in storage


def test_no_session_yet_is_retryable_and_writes_nothing(fake_supabase):
    storage = {}

    result = asyncio.run(_prober(storage).probe(CallbackParams(), 0))

    assert result.outcome is AttemptOutcome.RETRYABLE
    assert storage == {}


def test_fragment_tokens_are_checked_with_the_provider(fake_supabase, make_session):
    fake_supabase.on("GET /user", (200, make_session()["user"]))
    storage = {}
    params = CallbackParams(access_token="frag-access", refresh_token="frag-refresh", expires_in=3600)

    result = asyncio.run(_prober(storage).probe(params, 0))

    assert result.outcome is AttemptOutcome.SESSION_FOUND
    assert storage[AUTH_TOKEN_KEY] == "frag-access"
    assert storage[PROVIDER_SESSION_KEY]["refresh_token"] == "frag-refresh"
    assert storage[PROVIDER_SESSION_KEY]["expires_at"] > time.time()
    (call,) = fake_supabase.called("GET /user")
    assert call.headers["authorization"] == "Bearer frag-access"


def test_email_link_verification_signs_in(fake_supabase, make_session):
    fake_supabase.on("POST /verify", (200, make_session(access_token="verified")))
    storage = {}

    result = asyncio.run(_prober(storage).probe(CallbackParams(type="signup", token_hash="hash-1"), 0))

    assert result.outcome is AttemptOutcome.SESSION_FOUND
    assert storage[AUTH_TOKEN_KEY] == "verified"
    assert fake_supabase.called("POST /verify")[0].json == {"type": "signup", "token_hash": "hash-1"}


def test_provider_error_in_url_is_fatal(fake_supabase):
    params = CallbackParams(error="access_denied", error_description="User denied access")

    result = asyncio.run(_prober({}).probe(params, 0))

    assert result.outcome is AttemptOutcome.FATAL
    assert result.error_code == OAUTH_FAILED
    assert result.reason == "User denied access"
    assert fake_supabase.calls == []


def test_missing_configuration_is_fatal():
    cfg = Settings(SUPABASE_URL="", SUPABASE_ANON_KEY="")

    result = asyncio.run(_prober({}, cfg=cfg).probe(CallbackParams(code="abc"), 0))

    assert result.outcome is AttemptOutcome.FATAL
    assert result.error_code == CONFIG_ERROR


def test_rejected_api_key_is_fatal(fake_supabase, make_session):
    fake_supabase.on("POST /token?grant_type=refresh_token", (401, {"message": "Invalid API key"}))
    storage = {PROVIDER_SESSION_KEY: make_session(expires_in=-60)}

    result = asyncio.run(_prober(storage).probe(CallbackParams(), 0))

    assert result.outcome is AttemptOutcome.FATAL
    assert result.error_code == CONFIG_ERROR


@pytest.mark.parametrize("attempt_index", [0, 2, 3, 7])
def test_refresh_rejection_is_retryable_on_every_attempt(fake_supabase, make_session, attempt_index):
    fake_supabase.on("POST /token?grant_type=pkce", (400, {"error_description": "invalid flow state"}))
    fake_supabase.on("POST /token?grant_type=refresh_token", (400, {"error_description": "Invalid Refresh Token"}))
    storage = {PKCE_VERIFIER_KEY: "v", PROVIDER_SESSION_KEY: make_session(expires_in=-60)}

    result = asyncio.run(_prober(storage).probe(CallbackParams(code="auth-code"), attempt_index))

    assert result.outcome is AttemptOutcome.RETRYABLE
    assert result.reason == "Invalid Refresh Token"


def test_rejected_refresh_drops_the_stale_session(fake_supabase, make_session):
    fake_supabase.on("POST /token?grant_type=refresh_token", (400, {"error_description": "Invalid Refresh Token"}))
    storage = {PROVIDER_SESSION_KEY: make_session(expires_in=-60)}
    prober = _prober(storage)

    first = asyncio.run(prober.probe(CallbackParams(), 0))
    later = asyncio.run(prober.probe(CallbackParams(), 3))

    assert first.outcome is AttemptOutcome.RETRYABLE
    assert later.outcome is AttemptOutcome.RETRYABLE
    assert PROVIDER_SESSION_KEY not in storage
    assert AUTH_TOKEN_KEY not in storage
    assert len(fake_supabase.called("POST /token?grant_type=refresh_token")) == 1


def test_rejected_auth_code_is_not_exchanged_again(fake_supabase):
    fake_supabase.on("POST /token?grant_type=pkce", (400, {"error_description": "invalid flow state"}))
    prober = _prober({PKCE_VERIFIER_KEY: "verifier-123"})

    for attempt_index in range(4):
        result = asyncio.run(prober.probe(CallbackParams(code="auth-code"), attempt_index))
        assert result.outcome is AttemptOutcome.RETRYABLE

    assert len(fake_supabase.called("POST /token?grant_type=pkce")) == 1


def test_auth_code_exchange_is_retried_after_provider_outage(fake_supabase, make_session):
    fake_supabase.on(
        "POST /token?grant_type=pkce",
        (502, {"message": "bad gateway"}),
        (200, make_session(access_token="second-try")),
    )
    storage = {PKCE_VERIFIER_KEY: "verifier-123"}
    prober = _prober(storage)

    first = asyncio.run(prober.probe(CallbackParams(code="auth-code"), 0))
    second = asyncio.run(prober.probe(CallbackParams(code="auth-code"), 1))

    assert first.outcome is AttemptOutcome.RETRYABLE
    assert second.outcome is AttemptOutcome.SESSION_FOUND
    assert storage[AUTH_TOKEN_KEY] == "second-try"


def test_provider_outage_stays_retryable(fake_supabase, make_session):
    fake_supabase.on("POST /token?grant_type=refresh_token", (503, {"message": "upstream unavailable"}))
    storage = {PROVIDER_SESSION_KEY: make_session(expires_in=-60)}

    result = asyncio.run(_prober(storage).probe(CallbackParams(), 6))

    assert result.outcome is AttemptOutcome.RETRYABLE


def test_network_error_stays_retryable(fake_supabase, make_session):
    fake_supabase.on("POST /token?grant_type=refresh_token", httpx.ConnectError("connection refused"))
    storage = {PROVIDER_SESSION_KEY: make_session(expires_in=-60)}

    result = asyncio.run(_prober(storage).probe(CallbackParams(), 5))

    assert result.outcome is AttemptOutcome.RETRYABLE
    assert AUTH_TOKEN_KEY not in storage


def test_forced_refresh_recovers_a_failed_read_on_later_attempts(fake_supabase, make_session):
    fake_supabase.on(
        "POST /token?grant_type=refresh_token",
        (500, {"message": "flaky"}),
        (200, make_session(access_token="refreshed")),
    )
    storage = {PROVIDER_SESSION_KEY: make_session(expires_in=-60)}

    result = asyncio.run(_prober(storage).probe(CallbackParams(), 3))

    assert result.outcome is AttemptOutcome.SESSION_FOUND
    assert storage[AUTH_TOKEN_KEY] == "refreshed"
    assert len(fake_supabase.called("POST /token?grant_type=refresh_token")) == 2


def test_no_forced_refresh_on_early_attempts(fake_supabase, make_session):
    fake_supabase.on("POST /token?grant_type=refresh_token", (500, {"message": "flaky"}))
    storage = {PROVIDER_SESSION_KEY: make_session(expires_in=-60)}

    result = asyncio.run(_prober(storage).probe(CallbackParams(), 2))

    assert result.outcome is AttemptOutcome.RETRYABLE
    assert len(fake_supabase.called("POST /token?grant_type=refresh_token")) == 1


def test_verify_without_session_falls_through(fake_supabase):
    fake_supabase.on("POST /verify", (200, {"id": "user-1", "email": "ada@example.com"}))
    prober = _prober({})
    params = CallbackParams(type="signup", token="123456")

    first = asyncio.run(prober.probe(params, 0))
    second = asyncio.run(prober.probe(params, 1))

    assert first.outcome is AttemptOutcome.RETRYABLE
    assert second.outcome is AttemptOutcome.RETRYABLE
    (call,) = fake_supabase.called("POST /verify")
    assert call.json == {"type": "signup", "token": "123456"}
