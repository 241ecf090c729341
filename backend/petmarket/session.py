from threading import Lock
from typing import Optional

from petmarket.services.errors import AuthorizationError


class Session:
    """Signed-in identity, populated by the external auth layer."""

    def __init__(self, user_id: Optional[str] = None, access_token: Optional[str] = None) -> None:
        self._lock = Lock()
        self._user_id = user_id
        self._access_token = access_token

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    def sign_in(self, user_id: str, access_token: Optional[str] = None) -> None:
        if not user_id.strip():
            raise ValueError("user_id is required")
        with self._lock:
            self._user_id = user_id.strip()
            self._access_token = access_token

    def sign_out(self) -> None:
        with self._lock:
            self._user_id = None
            self._access_token = None

    def require_user(self) -> str:
        if not self._user_id:
            raise AuthorizationError("User not authenticated")
        return self._user_id
