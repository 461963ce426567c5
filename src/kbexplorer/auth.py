"""Authentication context passed explicitly into every repository call."""

import logging
from typing import Callable, Optional

import httpx

from kbexplorer.errors import RepositoryError
from kbexplorer.storage import TOKEN_KEY, KeyValueStore

logger = logging.getLogger(__name__)

UnauthorizedListener = Callable[[], None]


class AuthContext:
    """Bearer token holder with an init-on-load / clear-on-logout lifecycle.
    
    ``is_ready`` turns True once ``load`` has run, whether or not a token was
    found. The core only checks ``token`` presence; it never handles
    credentials itself.
    """
    
    def __init__(self, storage: Optional[KeyValueStore] = None, token: Optional[str] = None):
        self.storage = storage
        self.token = token
        self.is_ready = token is not None
        self._unauthorized_listeners: list[UnauthorizedListener] = []
    
    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)
    
    def load(self) -> "AuthContext":
        """Restore a persisted token, if any."""
        if self.storage is not None and self.token is None:
            self.token = self.storage.get(TOKEN_KEY)
        self.is_ready = True
        return self
    
    def set_token(self, token: str) -> None:
        self.token = token
        if self.storage is not None:
            self.storage.set(TOKEN_KEY, token)
    
    def logout(self) -> None:
        self.token = None
        if self.storage is not None:
            self.storage.delete(TOKEN_KEY)
    
    def on_unauthorized(self, listener: UnauthorizedListener) -> Callable[[], None]:
        """Subscribe to the unauthorized signal. Returns an unsubscribe callable."""
        self._unauthorized_listeners.append(listener)
        
        def unsubscribe() -> None:
            if listener in self._unauthorized_listeners:
                self._unauthorized_listeners.remove(listener)
        
        return unsubscribe
    
    def notify_unauthorized(self) -> None:
        """Broadcast a 401 to subscribers, then force logout."""
        logger.warning("Backend rejected the token; logging out")
        for listener in list(self._unauthorized_listeners):
            listener()
        self.logout()


async def fetch_token(
    auth_url: str,
    anon_key: str,
    email: str,
    password: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Exchange email/password for an access token (password grant).
    
    Raises:
        RepositoryError: If the auth endpoint rejects the credentials or
            cannot be reached.
    """
    url = f"{auth_url.rstrip('/')}/auth/v1/token"
    try:
        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            response = await client.post(
                url,
                params={"grant_type": "password"},
                headers={"Content-Type": "application/json", "Apikey": anon_key},
                json={"email": email, "password": password, "gotrue_meta_security": {}},
            )
    except httpx.HTTPError as e:
        raise RepositoryError(f"Authentication request failed: {e}") from e
    
    if not response.is_success:
        try:
            detail = response.json().get("error_description")
        except (ValueError, AttributeError):
            detail = None
        raise RepositoryError(detail or "Authentication failed", status_code=response.status_code)
    
    return response.json()["access_token"]
