# src/planify_bff/auth_utils.py

import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Dict, List, MutableMapping, Optional, Union
from urllib.parse import urlencode, urlparse

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from .config import Settings, settings
from .session_data import (
    AUTH_TOKEN_KEY,
    PKCE_VERIFIER_KEY,
    PROVIDER_SESSION_KEY,
    AuthSession,
)

logger = logging.getLogger(__name__)

# A stored session this close to expiry is refreshed before being returned
EXPIRY_MARGIN_SECONDS = 10

# Tests swap this for an httpx.MockTransport
provider_transport: Optional[httpx.AsyncBaseTransport] = None


# --- Errors ---

class ConfigurationError(Exception):
    """The identity provider is not configured, or rejects our API key. Never retried."""


class ProviderError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable


class ExchangeFailure(ProviderError):
    """
    A URL-driven exchange (auth code, fragment tokens, email OTP) did not
    produce a session. Expected for flows that do not carry that credential.
    """


def is_provider_configured(cfg: Settings) -> bool:
    url = cfg.SUPABASE_URL or ""
    key = cfg.SUPABASE_ANON_KEY or ""
    host = urlparse(url).hostname or ""
    secure = url.startswith("https://") or (url.startswith("http://") and host in ("localhost", "127.0.0.1"))
    return bool(host) and secure and len(key) > 20


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> tuple:
    verifier = _b64url(secrets.token_bytes(48))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


# --- Supabase Auth (GoTrue) client ---

class SupabaseAuthClient:
    """
    Async client for the Supabase Auth REST API.

    Like the browser SDK, its "local state" lives in a storage mapping it is
    handed: here the server-side session dict of one browser session. The
    provider session is kept under PROVIDER_SESSION_KEY and the PKCE code
    verifier under PKCE_VERIFIER_KEY.
    """

    def __init__(
        self,
        storage: MutableMapping[str, Any],
        cfg: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not is_provider_configured(cfg):
            raise ConfigurationError(
                "Supabase not configured. Set SUPABASE_URL and SUPABASE_ANON_KEY."
            )
        self.storage = storage
        self.cfg = cfg
        self.base_url = cfg.SUPABASE_AUTH_URL
        self._transport = transport if transport is not None else provider_transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"apikey": self.cfg.SUPABASE_ANON_KEY},
            timeout=self.cfg.PROVIDER_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        try:
            async with self._http() as client:
                response = await client.request(method, path, json=json, params=params, headers=headers)
        except httpx.RequestError as e:
            raise ProviderError(f"Could not connect to Supabase Auth: {e}", retryable=True) from e

        if response.status_code >= 400:
            raise _error_from_response(response)
        if not response.content:
            return {}
        return response.json()

    # --- OAuth start ---

    def build_authorize_url(self, redirect_to: str, provider: Optional[str] = None,
                            scopes: Optional[List[str]] = None) -> str:
        """Builds the PKCE authorize URL and remembers the code verifier in storage."""
        verifier, challenge = generate_pkce_pair()
        self.storage[PKCE_VERIFIER_KEY] = verifier
        query = {
            "provider": provider or self.cfg.OAUTH_PROVIDER,
            "redirect_to": redirect_to,
            "scopes": " ".join(scopes if scopes is not None else self.cfg.OAUTH_SCOPES),
            "code_challenge": challenge,
            "code_challenge_method": "s256",
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.base_url}/authorize?{urlencode(query)}"

    # --- Session acquisition ---

    async def exchange_code_for_session(self, auth_code: str) -> AuthSession:
        verifier = self.storage.get(PKCE_VERIFIER_KEY)
        if not verifier:
            raise ExchangeFailure("No PKCE code verifier in session for this auth code.")
        try:
            data = await self._request(
                "POST", "/token",
                params={"grant_type": "pkce"},
                json={"auth_code": auth_code, "code_verifier": verifier},
            )
        except ConfigurationError:
            raise
        except ProviderError as e:
            raise ExchangeFailure(f"Code exchange failed: {e.message}", e.status_code, e.retryable) from e
        session = self._save_session(data)
        self.storage.pop(PKCE_VERIFIER_KEY, None)
        return session

    async def set_session_from_url(self, access_token: str, refresh_token: Optional[str] = None,
                                   expires_in: Optional[int] = None,
                                   expires_at: Optional[int] = None,
                                   token_type: Optional[str] = None) -> AuthSession:
        """Adopts tokens delivered in the callback fragment once the provider vouches for them."""
        try:
            user = await self.get_user(access_token)
        except ConfigurationError:
            raise
        except ProviderError as e:
            raise ExchangeFailure(f"URL tokens rejected: {e.message}", e.status_code, e.retryable) from e
        return self._save_session({
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": expires_in,
            "expires_at": expires_at,
            "token_type": token_type or "bearer",
            "user": user,
        })

    async def verify_otp(self, otp_type: str, token_hash: Optional[str] = None,
                         token: Optional[str] = None) -> Optional[AuthSession]:
        body: Dict[str, Any] = {"type": otp_type}
        if token_hash:
            body["token_hash"] = token_hash
        else:
            body["token"] = token
        try:
            data = await self._request("POST", "/verify", json=body)
        except ConfigurationError:
            raise
        except ProviderError as e:
            raise ExchangeFailure(f"Email verification failed: {e.message}", e.status_code, e.retryable) from e
        if not data.get("access_token"):
            # Verified, but this flow does not sign the user in
            return None
        return self._save_session(data)

    async def get_session(self) -> Optional[AuthSession]:
        session = self._load_session()
        if session is None:
            return None
        if session.expires_at is not None and session.expires_at - time.time() <= EXPIRY_MARGIN_SECONDS:
            logger.debug("Stored session is about to expire, refreshing.")
            return await self.refresh_session()
        return session

    async def refresh_session(self) -> Optional[AuthSession]:
        current = self._load_session()
        if current is None or not current.refresh_token:
            return None
        try:
            data = await self._request(
                "POST", "/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": current.refresh_token},
            )
        except ProviderError as e:
            if not e.retryable:
                # Revoked or already-used refresh token
                logger.info("Refresh rejected (%s), dropping stored session.", e.status_code)
                self.storage.pop(PROVIDER_SESSION_KEY, None)
            raise
        return self._save_session(data)

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        return await self._request("GET", "/user", access_token=access_token)

    async def sign_out(self) -> None:
        """Revokes the session at the provider and forgets it locally."""
        session = self._load_session()
        try:
            if session is not None:
                await self._request("POST", "/logout", access_token=session.access_token)
        finally:
            self.storage.pop(PROVIDER_SESSION_KEY, None)
            self.storage.pop(AUTH_TOKEN_KEY, None)

    # --- Local state ---

    def _load_session(self) -> Optional[AuthSession]:
        raw = self.storage.get(PROVIDER_SESSION_KEY)
        if not raw:
            return None
        try:
            return AuthSession.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed provider session from storage.")
            self.storage.pop(PROVIDER_SESSION_KEY, None)
            return None

    def _save_session(self, data: Dict[str, Any]) -> AuthSession:
        try:
            session = AuthSession.model_validate(data)
        except ValidationError as e:
            raise ProviderError(f"Malformed session from Supabase Auth: {e}") from e
        if session.expires_at is None and session.expires_in:
            session.expires_at = int(time.time()) + session.expires_in
        self.storage[PROVIDER_SESSION_KEY] = session.model_dump()
        return session


def _error_from_response(response: httpx.Response) -> Exception:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = (
        body.get("error_description")
        or body.get("msg")
        or body.get("message")
        or body.get("error")
        or response.text
        or f"HTTP {response.status_code}"
    )
    lowered = str(message).lower()
    if response.status_code in (401, 403) and ("api key" in lowered or "apikey" in lowered):
        return ConfigurationError(f"Supabase Auth rejected the API key: {message}")
    retryable = response.status_code == 429 or response.status_code >= 500
    return ProviderError(str(message), response.status_code, retryable)


# --- Bearer token validation for API requests ---

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


class TokenData(BaseModel):
    sub: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    user_metadata: Dict[str, Any] = {}


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> TokenData:
    """
    Validates the Authorization bearer token. With SUPABASE_JWT_SECRET set the
    JWT is verified locally, otherwise Supabase Auth is asked for the user.
    """
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No token provided",
            headers={"WWW-Authenticate": "Bearer"},
        )

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if settings.SUPABASE_JWT_SECRET:
        try:
            payload = jwt.decode(
                token,
                settings.SUPABASE_JWT_SECRET,
                algorithms=["HS256"],
                audience="authenticated",
            )
        except JWTError as e:
            logger.info("JWT validation error: %s", e)
            raise credentials_exception from e
        return TokenData(**payload)

    try:
        user = await SupabaseAuthClient({}).get_user(token)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e
    except ProviderError as e:
        if e.retryable:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Could not reach the identity provider.",
            ) from e
        raise credentials_exception from e
    return TokenData(
        sub=user.get("id"),
        email=user.get("email"),
        role=user.get("role"),
        aud=user.get("aud"),
        user_metadata=user.get("user_metadata") or {},
    )
