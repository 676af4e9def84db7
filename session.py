"""
Client session store: who is logged in, with which token, and what role.

State lives in memory and in ``LocalStorage`` under the ``token`` and
``user`` keys; subscribers are notified on every change so views can switch
between guest, user and admin layouts.
"""

import json
import logging
from typing import Iterable, Optional

from api_client import TOKEN_KEY, USER_KEY, ApiClient, ApiError, avatar_of
from local_store import LocalStorage, Observable

logger = logging.getLogger(__name__)


class SessionStore(Observable):
    def __init__(self, storage: LocalStorage, api: Optional[ApiClient] = None):
        super().__init__()
        self.storage = storage
        self.api = api
        self.user: Optional[dict] = None
        self.loading = True
        self._has_token = False
        if api is not None:
            api.on_unauthorized = self._handle_unauthorized

    @property
    def token(self) -> Optional[str]:
        return self.storage.get_item(TOKEN_KEY)

    @property
    def is_authenticated(self) -> bool:
        return self._has_token

    @property
    def role(self) -> Optional[str]:
        return (self.user or {}).get("role")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def image_uri(self) -> Optional[str]:
        return avatar_of(self.user)

    def has_role(self, role: str) -> bool:
        return self.role == role

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return self.role in set(roles or ())

    def load(self) -> Optional[dict]:
        """Restore the persisted session and refresh it from the server."""
        try:
            self.user = self.storage.get_json(USER_KEY)
            self._has_token = bool(self.storage.get_item(TOKEN_KEY))
            if self._has_token:
                self.refresh_user()
        finally:
            self.loading = False
            self.notify()
        return self.user

    def refresh_user(self) -> Optional[dict]:
        if not self.storage.get_item(TOKEN_KEY):
            self._has_token = False
            self.notify()
            return None
        if self.api is None:
            return self.user
        try:
            fresh = self.api.get_current_user()
        except ApiError as e:
            logger.warning("Failed to refresh user: %s", e.message)
            self._invalidate()
            return None
        self.user = {**fresh, "imageUri": avatar_of(fresh)}
        self._has_token = True
        self.storage.set_json(USER_KEY, self.user)
        self.notify()
        return self.user

    def login(self, user: dict, token: str) -> None:
        user = {**user, "imageUri": avatar_of(user)}
        self.storage.multi_set([(USER_KEY, json.dumps(user)), (TOKEN_KEY, token)])
        self.user = user
        self._has_token = True
        self.notify()

    def logout(self) -> None:
        self._invalidate()
        logger.info("Logged out")

    def update_user(self, partial: dict) -> dict:
        self.user = {**(self.user or {}), **partial}
        self.storage.set_json(USER_KEY, self.user)
        self.notify()
        return self.user

    def _invalidate(self) -> None:
        # token goes, avatar stays so the profile picture survives logout
        image_uri = self.image_uri or avatar_of(self.storage.get_json(USER_KEY))
        self.storage.set_json(USER_KEY, {"imageUri": image_uri})
        self.storage.remove_item(TOKEN_KEY)
        self.user = {"imageUri": image_uri}
        self._has_token = False
        self.notify()

    def _handle_unauthorized(self) -> None:
        self.user = self.storage.get_json(USER_KEY)
        self._has_token = False
        self.notify()
