# src/planify_bff/session_data.py

from pydantic import BaseModel
from typing import Dict, Any, Optional

# Fixed key under which the bearer token is kept for later API calls
AUTH_TOKEN_KEY = "auth_token"
PROVIDER_SESSION_KEY = "provider_session"
PKCE_VERIFIER_KEY = "pkce_verifier"
REDIRECT_PATH_KEY = "auth_redirect_path"
FLASH_KEY = "flash"


class AuthSession(BaseModel):
    """Session issued by Supabase Auth: bearer token bundle plus the user."""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    expires_at: Optional[int] = None  # Unix seconds
    user: Dict[str, Any] = {}


class FlashMessage(BaseModel):
    title: str
    description: str
    variant: str = "default"  # "default" or "destructive"


class SessionData(BaseModel):
    """
    Represents the data stored server-side for a browser session.
    Only a unique session ID is stored in the browser cookie.
    """
    auth_token: Optional[str] = None
    provider_session: Optional[AuthSession] = None
    pkce_verifier: Optional[str] = None
    auth_redirect_path: Optional[str] = None  # Path to redirect after login
    flash: Optional[FlashMessage] = None

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        if self.provider_session is None:
            return None
        return self.provider_session.user
