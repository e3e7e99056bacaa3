# src/planify_bff/callback_flow.py
"""
Auth callback reconciliation.

One CallbackController per callback request wires a SessionProber (ordered
probe strategies), a RetryScheduler (bounded exponential backoff) and a
RedirectDispatcher (exactly one terminal redirect):

    Idle -> Probing -> Resolved(Session | Timeout | Fatal) -> Redirected

A teardown (client gone) moves the flow to Cancelled: pending waits are
woken, no further probes run and no redirect is dispatched.
"""

import asyncio
import logging
from typing import Awaitable, Callable, MutableMapping, Optional, Sequence
from urllib.parse import urlencode

from fastapi import status
from fastapi.responses import RedirectResponse

from .auth_utils import (
    ConfigurationError,
    ExchangeFailure,
    ProviderError,
    SupabaseAuthClient,
)
from .callback_models import (
    CALLBACK_FAILED,
    CONFIG_ERROR,
    OAUTH_FAILED,
    SESSION_TIMEOUT,
    AttemptOutcome,
    CallbackAttempt,
    CallbackParams,
    CallbackProfile,
    FlowState,
    ProbeResult,
    Resolution,
    ResolutionKind,
    RetryPolicy,
)
from .session_data import AUTH_TOKEN_KEY, FLASH_KEY, REDIRECT_PATH_KEY, AuthSession, FlashMessage

logger = logging.getLogger(__name__)

Storage = MutableMapping[str, object]
ClientFactory = Callable[[], SupabaseAuthClient]
Sleep = Callable[[float], Awaitable[None]]


# --- Probe strategies ---

class ProbeStrategy:
    """One way of obtaining a session. Tried in order by the SessionProber."""

    name = "strategy"
    # Consumes a credential from the URL that the provider accepts only once
    single_use = False

    def applies(self, params: CallbackParams, attempt_index: int) -> bool:
        return True

    async def attempt(self, client: SupabaseAuthClient, params: CallbackParams) -> Optional[AuthSession]:
        raise NotImplementedError


class ExchangeCodeStrategy(ProbeStrategy):
    name = "exchange_code"
    single_use = True

    def applies(self, params, attempt_index):
        return params.code is not None

    async def attempt(self, client, params):
        return await client.exchange_code_for_session(params.code)


class UrlTokensStrategy(ProbeStrategy):
    name = "url_tokens"

    def applies(self, params, attempt_index):
        return params.access_token is not None

    async def attempt(self, client, params):
        return await client.set_session_from_url(
            params.access_token,
            refresh_token=params.refresh_token,
            expires_in=params.expires_in,
            expires_at=params.expires_at,
            token_type=params.token_type,
        )


class VerifyOtpStrategy(ProbeStrategy):
    name = "verify_otp"
    single_use = True

    def applies(self, params, attempt_index):
        return params.type is not None and bool(params.token_hash or params.token)

    async def attempt(self, client, params):
        return await client.verify_otp(params.type, token_hash=params.token_hash, token=params.token)


class CurrentSessionStrategy(ProbeStrategy):
    name = "current_session"

    async def attempt(self, client, params):
        return await client.get_session()


class RefreshSessionStrategy(ProbeStrategy):
    name = "refresh_session"

    def __init__(self, min_attempt: int = 3):
        self.min_attempt = min_attempt

    def applies(self, params, attempt_index):
        return attempt_index >= self.min_attempt

    async def attempt(self, client, params):
        return await client.refresh_session()


def default_strategies(policy: RetryPolicy) -> Sequence[ProbeStrategy]:
    return (
        ExchangeCodeStrategy(),
        UrlTokensStrategy(),
        VerifyOtpStrategy(),
        CurrentSessionStrategy(),
        RefreshSessionStrategy(min_attempt=policy.refresh_after_attempt),
    )


# --- Session Prober ---

class SessionProber:
    """
    Runs the strategy chain once and classifies the outcome.

    Only configuration errors and a provider error in the URL are fatal.
    Every other failure is retryable, so a flow without a session ends in
    session_timeout once the attempt budget runs out.

    A strategy whose URL credential was definitely rejected is not run again
    on later attempts of the same flow. Neither is a single-use strategy that
    already ran without a retryable failure.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        storage: Storage,
        policy: RetryPolicy,
        strategies: Optional[Sequence[ProbeStrategy]] = None,
    ):
        self.client_factory = client_factory
        self.storage = storage
        self.policy = policy
        self.strategies = tuple(strategies) if strategies is not None else tuple(default_strategies(policy))
        self.spent = set()

    async def probe(self, params: CallbackParams, attempt_index: int) -> ProbeResult:
        if params.is_provider_error:
            return ProbeResult.fatal(OAUTH_FAILED, params.error_description or params.error)

        try:
            client = self.client_factory()
        except ConfigurationError as e:
            return ProbeResult.fatal(CONFIG_ERROR, str(e))

        reason = "No session yet"
        for strategy in self.strategies:
            if strategy.name in self.spent or not strategy.applies(params, attempt_index):
                continue
            try:
                session = await strategy.attempt(client, params)
            except ConfigurationError as e:
                return ProbeResult.fatal(CONFIG_ERROR, str(e))
            except ExchangeFailure as e:
                if not e.retryable:
                    self.spent.add(strategy.name)
                logger.info("Callback: %s gave no session, falling through (%s)", strategy.name, e.message)
                continue
            except ProviderError as e:
                logger.warning("Callback: %s failed on attempt %d: %s", strategy.name, attempt_index + 1, e.message)
                reason = e.message
                continue
            except Exception:
                logger.exception("Callback: unexpected error in %s on attempt %d", strategy.name, attempt_index + 1)
                reason = "Unexpected error while reading the session."
                continue

            if session is not None:
                self.storage[AUTH_TOKEN_KEY] = session.access_token
                logger.info("Callback: session found via %s on attempt %d", strategy.name, attempt_index + 1)
                return ProbeResult.found(session)
            if strategy.single_use:
                self.spent.add(strategy.name)

        return ProbeResult.retry(reason)


# --- Retry Scheduler ---

class RetryScheduler:
    """Drives the prober with bounded exponential backoff, one probe in flight at a time."""

    def __init__(self, prober: SessionProber, policy: RetryPolicy, sleep: Optional[Sleep] = None):
        self.prober = prober
        self.policy = policy
        self._sleep = sleep
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self, params: CallbackParams) -> Resolution:
        attempts = 0
        for index in range(self.policy.max_attempts):
            delay_ms = self.policy.delay_before(index)
            if delay_ms > 0:
                logger.debug("Callback: waiting %.0fms before attempt %d", delay_ms, index + 1)
                await self._wait(delay_ms / 1000.0)
            if self.cancelled:
                return Resolution(ResolutionKind.CANCELLED, attempts, reason="Torn down before resolution")

            attempt = CallbackAttempt(attempt_index=index, delay_ms=delay_ms)
            logger.info("Callback: attempt %d/%d", index + 1, self.policy.max_attempts)
            result = await self.prober.probe(params, index)
            attempts += 1
            attempt.outcome = result.outcome
            logger.debug("Callback: %s", attempt)

            if result.outcome is AttemptOutcome.SESSION_FOUND:
                return Resolution(ResolutionKind.SESSION, attempts, session=result.session)
            if result.outcome is AttemptOutcome.FATAL:
                return Resolution(ResolutionKind.FATAL, attempts, error_code=result.error_code, reason=result.reason)

        logger.info("Callback: no session after %d attempts", attempts)
        return Resolution(ResolutionKind.TIMEOUT, attempts, error_code=SESSION_TIMEOUT, reason="Session timeout")


# --- Redirect Dispatcher ---

FAILURE_MESSAGES = {
    CONFIG_ERROR: FlashMessage(
        title="Sign-in unavailable",
        description="Authentication is not configured right now. Please try again later.",
        variant="destructive",
    ),
    CALLBACK_FAILED: FlashMessage(
        title="Verification Failed",
        description="There was an issue completing your sign in. Please try again.",
        variant="destructive",
    ),
    SESSION_TIMEOUT: FlashMessage(
        title="Sign-in timed out",
        description="We could not confirm your session. Please sign in again.",
        variant="destructive",
    ),
    OAUTH_FAILED: FlashMessage(
        title="Sign-in cancelled",
        description="The sign-in provider did not complete the request. Please try again.",
        variant="destructive",
    ),
}


class RedirectDispatcher:
    """Issues the single terminal redirect of a callback request."""

    def __init__(self, profile: CallbackProfile, storage: Storage):
        self.profile = profile
        self.storage = storage
        self._dispatched = False

    @property
    def dispatched(self) -> bool:
        return self._dispatched

    def target_for(self, resolution: Resolution) -> str:
        if resolution.kind is ResolutionKind.SESSION:
            return self.storage.pop(REDIRECT_PATH_KEY, None) or self.profile.success_route
        code = resolution.error_code or CALLBACK_FAILED
        return f"{self.profile.sign_in_route}?{urlencode({'error': code})}"

    def flash_for(self, resolution: Resolution) -> FlashMessage:
        if resolution.kind is ResolutionKind.SESSION:
            return FlashMessage(title=self.profile.success_title, description=self.profile.success_description)
        return FAILURE_MESSAGES.get(resolution.error_code, FAILURE_MESSAGES[CALLBACK_FAILED])

    def dispatch(self, resolution: Resolution) -> Optional[RedirectResponse]:
        if resolution.kind is ResolutionKind.CANCELLED:
            logger.info("Callback: flow cancelled, no redirect")
            return None
        if self._dispatched:
            logger.warning("Callback: redirect already dispatched, ignoring %s", resolution.kind.value)
            return None
        self._dispatched = True

        url = self.target_for(resolution)
        self.storage[FLASH_KEY] = self.flash_for(resolution).model_dump()
        if resolution.kind is not ResolutionKind.SESSION:
            logger.info("Callback: %s (%s): %s", resolution.kind.value, resolution.error_code, resolution.reason)
        logger.info("Callback: redirecting to %s", url)

        # 303 replaces the callback URL in the browser history
        response = RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)
        response.headers["Cache-Control"] = "no-store"
        return response


# --- Controller ---

class CallbackController:
    """Owns one callback flow from first probe to redirect. Not reusable."""

    def __init__(self, prober: SessionProber, dispatcher: RedirectDispatcher, policy: RetryPolicy,
                 sleep: Optional[Sleep] = None):
        self.scheduler = RetryScheduler(prober, policy, sleep=sleep)
        self.dispatcher = dispatcher
        self.state = FlowState.IDLE
        self.resolution: Optional[Resolution] = None

    @classmethod
    def for_session(
        cls,
        storage: Storage,
        profile: CallbackProfile,
        policy: RetryPolicy,
        client_factory: Optional[ClientFactory] = None,
        strategies: Optional[Sequence[ProbeStrategy]] = None,
        sleep: Optional[Sleep] = None,
    ) -> "CallbackController":
        if client_factory is None:
            def client_factory():
                return SupabaseAuthClient(storage)
        prober = SessionProber(client_factory, storage, policy, strategies)
        return cls(prober, RedirectDispatcher(profile, storage), policy, sleep=sleep)

    async def run(self, params: CallbackParams) -> Optional[RedirectResponse]:
        if self.state is not FlowState.IDLE:
            raise RuntimeError(f"Callback flow already {self.state.value}")
        self.state = FlowState.PROBING
        try:
            resolution = await self.scheduler.run(params)
        except asyncio.CancelledError:
            self.teardown()
            raise
        except Exception:
            logger.exception("Callback: flow failed unexpectedly")
            resolution = Resolution(
                ResolutionKind.FATAL, 0, error_code=CALLBACK_FAILED, reason="Unexpected error in callback flow"
            )
        self.resolution = resolution

        if self.state is FlowState.CANCELLED or resolution.kind is ResolutionKind.CANCELLED:
            self.state = FlowState.CANCELLED
            return None
        self.state = FlowState.RESOLVED
        response = self.dispatcher.dispatch(resolution)
        if response is not None:
            self.state = FlowState.REDIRECTED
        return response

    def teardown(self) -> None:
        if self.state in (FlowState.REDIRECTED, FlowState.CANCELLED):
            return
        logger.info("Callback: torn down while %s", self.state.value)
        self.state = FlowState.CANCELLED
        self.scheduler.cancel()
