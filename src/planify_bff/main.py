# src/planify_bff/main.py

import asyncio
import logging
import os
import typing
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import FileResponse, HTMLResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from . import auth_utils
from .auth_utils import ConfigurationError, ProviderError, SupabaseAuthClient, TokenData
from .callback_flow import FAILURE_MESSAGES, CallbackController
from .callback_models import CONFIG_ERROR, CallbackParams, CallbackProfile, RetryPolicy
from .config import PACKAGE_DIR, settings
from .logging_setup import setup_logging
from .session_data import AUTH_TOKEN_KEY, FLASH_KEY, REDIRECT_PATH_KEY, SessionData

logger = logging.getLogger(__name__)

# --- Simple In-Memory Session Store ---
# Server-side session dicts keyed by an opaque cookie value. This is the
# durable storage the callback flow writes the bearer token into.
_in_memory_session_data_storage: typing.Dict[str, dict] = {}

SESSION_COOKIE_NAME = "planify_session"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 7  # 7 days

# How often a running callback checks whether the browser went away
DISCONNECT_POLL_SECONDS = 0.25


class SessionMiddlewareCustom(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        session_id = request.cookies.get(SESSION_COOKIE_NAME)
        if not session_id or session_id not in _in_memory_session_data_storage:
            session_id = str(uuid.uuid4())
            _in_memory_session_data_storage[session_id] = {}
        request.state.session_id = session_id
        request.state.session = _in_memory_session_data_storage[session_id]
        response: StarletteResponse = await call_next(request)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            session_id,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            secure=settings.SESSION_COOKIE_SECURE,
            samesite="lax",
        )
        return response


# --- Callback profiles: both redirect targets share one flow ---
CALLBACK_PROFILE = CallbackProfile(
    name="callback",
    success_route=settings.AUTHENTICATED_ROUTE,
    sign_in_route=settings.SIGN_IN_ROUTE,
)
VERIFIED_PROFILE = CallbackProfile(
    name="verified",
    success_route=settings.AUTHENTICATED_ROUTE,
    sign_in_route=settings.SIGN_IN_ROUTE,
    success_title="Email Verified!",
    success_description="Your account is verified. Welcome to Planify!",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    logger.info("--- Planify BFF starting up ---")
    logger.info("Supabase configured: %s", "Yes" if auth_utils.is_provider_configured(settings) else "NO")
    logger.info("Redirect URI: %s", settings.REDIRECT_URI)
    logger.info(
        "Callback retry policy: %d attempts, base %sms, factor %s, cap %sms",
        settings.CALLBACK_MAX_ATTEMPTS,
        settings.CALLBACK_BASE_DELAY_MS,
        settings.CALLBACK_BACKOFF_FACTOR,
        settings.CALLBACK_MAX_DELAY_MS,
    )
    yield


# --- FastAPI App Setup ---
app = FastAPI(
    title="Planify BFF",
    description="Backend-For-Frontend for Planify: owns the Supabase auth redirect and the browser session.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(SessionMiddlewareCustom)

# --- Static Files and Templates ---
app.mount("/static", StaticFiles(directory=PACKAGE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=PACKAGE_DIR / "templates")


@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    favicon_path = PACKAGE_DIR / "static" / "favicon.ico"
    if os.path.exists(favicon_path) and os.path.isfile(favicon_path):
        return FileResponse(favicon_path, media_type="image/x-icon")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}


# --- Dependency for checking authentication ---
async def get_authenticated_user(request: Request) -> dict:
    data = SessionData.model_validate(request.state.session)
    if not data.auth_token or data.user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return data.user


def _safe_next_path(value: typing.Optional[str]) -> typing.Optional[str]:
    # Local paths only
    if value and value.startswith("/") and not value.startswith("//") and "\\" not in value:
        return value
    return None


def _redirect_with_error(request: Request, code: str) -> RedirectResponse:
    request.state.session[FLASH_KEY] = FAILURE_MESSAGES[code].model_dump()
    return RedirectResponse(url=f"{settings.SIGN_IN_ROUTE}?error={code}", status_code=status.HTTP_302_FOUND)


# --- Authentication Routes ---
@app.get("/login")
async def login(request: Request, provider: typing.Optional[str] = None, next: typing.Optional[str] = None):
    session = request.state.session
    next_path = _safe_next_path(next)
    if next_path:
        session[REDIRECT_PATH_KEY] = next_path
    else:
        session.pop(REDIRECT_PATH_KEY, None)

    try:
        client = SupabaseAuthClient(session)
    except ConfigurationError as e:
        logger.error("/login: %s", e)
        return _redirect_with_error(request, CONFIG_ERROR)

    auth_url = client.build_authorize_url(redirect_to=settings.REDIRECT_URI, provider=provider)
    logger.info("/login: redirecting to %s sign-in", provider or settings.OAUTH_PROVIDER)
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


async def _run_until_disconnected(request: Request, controller: CallbackController,
                                  params: CallbackParams) -> typing.Optional[Response]:
    async def watch_disconnect():
        while True:
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)
            if await request.is_disconnected():
                controller.teardown()
                return

    watcher = asyncio.create_task(watch_disconnect())
    try:
        return await controller.run(params)
    finally:
        watcher.cancel()


def _relay_page(request: Request) -> Response:
    # Fragment parameters never reach the server: the page posts them back as a form
    return templates.TemplateResponse(
        request,
        "callback.html",
        {"callback_path": request.url.path},
        headers={"Cache-Control": "no-store"},
    )


async def _handle_callback(request: Request, profile: CallbackProfile,
                           values: typing.Mapping[str, str]) -> Response:
    params = CallbackParams.from_mapping(values)
    logger.info(
        "%s %s: callback received (auth params: %s, provider error: %s)",
        request.method, request.url.path, params.has_auth_params, params.is_provider_error,
    )
    controller = CallbackController.for_session(
        request.state.session, profile, RetryPolicy.from_settings(settings)
    )
    response = await _run_until_disconnected(request, controller, params)
    if response is None:
        # Browser already left; nobody reads this
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return response


@app.get("/auth/callback")
async def auth_callback(request: Request):
    if not request.query_params:
        return _relay_page(request)
    return await _handle_callback(request, CALLBACK_PROFILE, request.query_params)


@app.post("/auth/callback")
async def auth_callback_relayed(request: Request):
    form = await request.form()
    return await _handle_callback(request, CALLBACK_PROFILE, form)


@app.get("/auth/verified")
async def auth_verified(request: Request):
    if not request.query_params:
        return _relay_page(request)
    return await _handle_callback(request, VERIFIED_PROFILE, request.query_params)


@app.post("/auth/verified")
async def auth_verified_relayed(request: Request):
    form = await request.form()
    return await _handle_callback(request, VERIFIED_PROFILE, form)


@app.get("/logout")
async def logout(request: Request):
    session = request.state.session
    try:
        await SupabaseAuthClient(session).sign_out()
    except ConfigurationError as e:
        logger.warning("/logout: provider not configured, clearing local session only (%s)", e)
    except ProviderError as e:
        logger.warning("/logout: provider sign-out failed, continuing with local sign-out (%s)", e.message)
    session.clear()
    return RedirectResponse(url=settings.SIGN_IN_ROUTE, status_code=status.HTTP_302_FOUND)


# --- Pages ---
@app.get("/auth", response_class=HTMLResponse)
async def sign_in_page(request: Request, error: typing.Optional[str] = None):
    flash = request.state.session.pop(FLASH_KEY, None)
    return templates.TemplateResponse(
        request,
        "auth.html",
        {"flash": flash, "error": error, "signed_in": bool(request.state.session.get(AUTH_TOKEN_KEY))},
    )


@app.get("/", response_class=HTMLResponse)
@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard(request: Request):
    data = SessionData.model_validate(request.state.session)
    if not data.auth_token:
        return RedirectResponse(url=settings.SIGN_IN_ROUTE, status_code=status.HTTP_302_FOUND)
    flash = request.state.session.pop(FLASH_KEY, None)
    return templates.TemplateResponse(request, "index.html", {"user": data.user or {}, "flash": flash})


# --- BFF API Endpoints (called by the frontend) ---
@app.get("/api/bff/userinfo")
async def get_user_info(user: dict = Depends(get_authenticated_user)):
    return {"user": user}


@app.get("/api/auth/me", response_model=TokenData)
async def who_am_i(current_user: TokenData = Depends(auth_utils.get_current_user)):
    return current_user
