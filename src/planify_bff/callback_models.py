# src/planify_bff/callback_models.py

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from .session_data import AuthSession

# Error codes carried in the sign-in redirect
CONFIG_ERROR = "config_error"
CALLBACK_FAILED = "callback_failed"
SESSION_TIMEOUT = "session_timeout"
OAUTH_FAILED = "oauth_failed"


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SESSION_FOUND = "session_found"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class ResolutionKind(str, Enum):
    SESSION = "session"
    TIMEOUT = "timeout"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class FlowState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    RESOLVED = "resolved"
    REDIRECTED = "redirected"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallbackParams:
    """Auth parameters of a callback: its query string, or the fragment posted by the relay page."""

    code: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[int] = None
    token_type: Optional[str] = None
    type: Optional[str] = None
    token: Optional[str] = None
    token_hash: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "CallbackParams":
        def get(name: str) -> Optional[str]:
            value = values.get(name)
            return value or None

        def get_int(name: str) -> Optional[int]:
            value = get(name)
            return int(value) if value and value.isdigit() else None

        return cls(
            code=get("code"),
            access_token=get("access_token"),
            refresh_token=get("refresh_token"),
            expires_in=get_int("expires_in"),
            expires_at=get_int("expires_at"),
            token_type=get("token_type"),
            type=get("type"),
            token=get("token"),
            token_hash=get("token_hash"),
            error=get("error"),
            error_code=get("error_code"),
            error_description=get("error_description"),
        )

    @property
    def has_auth_params(self) -> bool:
        return bool(self.code or self.access_token or self.refresh_token or self.token_hash)

    @property
    def is_provider_error(self) -> bool:
        return bool(self.error or self.error_description)


@dataclass
class CallbackAttempt:
    attempt_index: int
    delay_ms: float
    outcome: AttemptOutcome = AttemptOutcome.PENDING


@dataclass(frozen=True)
class ProbeResult:
    outcome: AttemptOutcome
    session: Optional[AuthSession] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def found(cls, session: AuthSession) -> "ProbeResult":
        return cls(AttemptOutcome.SESSION_FOUND, session=session)

    @classmethod
    def retry(cls, reason: Optional[str] = None) -> "ProbeResult":
        return cls(AttemptOutcome.RETRYABLE, reason=reason)

    @classmethod
    def fatal(cls, error_code: str, reason: str) -> "ProbeResult":
        return cls(AttemptOutcome.FATAL, error_code=error_code, reason=reason)


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    attempts: int
    session: Optional[AuthSession] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 8
    base_delay_ms: float = 300
    backoff_factor: float = 1.5
    max_delay_ms: float = 5000
    refresh_after_attempt: int = 3

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.CALLBACK_MAX_ATTEMPTS,
            base_delay_ms=cfg.CALLBACK_BASE_DELAY_MS,
            backoff_factor=cfg.CALLBACK_BACKOFF_FACTOR,
            max_delay_ms=cfg.CALLBACK_MAX_DELAY_MS,
            refresh_after_attempt=cfg.REFRESH_AFTER_ATTEMPT,
        )

    def delay_before(self, attempt_index: int) -> float:
        """Milliseconds to wait before the given attempt. Attempt 0 starts immediately."""
        if attempt_index <= 0:
            return 0.0
        try:
            delay = self.base_delay_ms * self.backoff_factor ** (attempt_index - 1)
        except OverflowError:
            return self.max_delay_ms
        return min(self.max_delay_ms, delay)


@dataclass(frozen=True)
class CallbackProfile:
    """What a given redirect target does once the flow resolves."""

    name: str
    success_route: str
    sign_in_route: str
    success_title: str = "Signed in"
    success_description: str = "Welcome to Planify! Redirecting to your dashboard..."
