"""OAuth credential handling for the calendar mirror.

Two prompt modes exist. ``consent`` runs once, when the user explicitly connects:
an authorization code obtained from the provider's consent screen is exchanged
for tokens and the long-lived refresh grant is stored. ``silent`` is used for
every later sync and renews a short-lived access token from that grant without
user interaction. Access tokens are returned to the caller and never stored.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import requests

from almanac.errors import MissingCredentialConfig, TokenError
from almanac.models import GoogleConfig, PromptMode
from almanac.state_store import StateStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    scope: str
    client_secret: str = ""
    redirect_uri: str = ""
    auth_uri: str = GoogleConfig.auth_uri
    token_uri: str = GoogleConfig.token_uri
    revoke_uri: str = GoogleConfig.revoke_uri
    timeout_seconds: int = 30


def _token_error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("error_description", "error"):
            value = payload.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if isinstance(value, str) and value.strip():
                return value.strip()
    return str(response.reason or "").strip() or "token request rejected"


class CredentialManager:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self._lock = threading.RLock()
        self._client: OAuthClient | None = None

    def initialize(
        self,
        client_id: str,
        scope: str,
        *,
        client_secret: str = "",
        redirect_uri: str = "",
        endpoints: GoogleConfig | None = None,
    ) -> OAuthClient:
        client_id = str(client_id or "").strip()
        if not client_id:
            raise MissingCredentialConfig("Google OAuth client_id is not configured.")
        endpoints = endpoints or GoogleConfig()
        candidate = OAuthClient(
            client_id=client_id,
            scope=str(scope or "").strip() or endpoints.scope,
            client_secret=str(client_secret or ""),
            redirect_uri=str(redirect_uri or ""),
            auth_uri=endpoints.auth_uri,
            token_uri=endpoints.token_uri,
            revoke_uri=endpoints.revoke_uri,
            timeout_seconds=endpoints.timeout_seconds,
        )
        with self._lock:
            if self._client != candidate:
                self._client = candidate
            return self._client

    def initialize_from_config(self, config: GoogleConfig) -> OAuthClient:
        return self.initialize(
            config.client_id,
            config.scope,
            client_secret=config.client_secret,
            redirect_uri=config.redirect_uri,
            endpoints=config,
        )

    def _require_client(self) -> OAuthClient:
        with self._lock:
            if self._client is None:
                raise MissingCredentialConfig("Credential manager has not been initialized.")
            return self._client

    def authorization_url(self, state: str = "") -> str:
        client = self._require_client()
        params = {
            "client_id": client.client_id,
            "redirect_uri": client.redirect_uri,
            "response_type": "code",
            "scope": client.scope,
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{client.auth_uri}?{urlencode(params)}"

    def _post_token(self, client: OAuthClient, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = requests.post(
                client.token_uri,
                data=data,
                headers={"Accept": "application/json"},
                timeout=client.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TokenError(f"Token request failed: {type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise TokenError(
                f"Token request failed ({response.status_code}): {_token_error_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenError("Token endpoint returned invalid JSON.") from exc
        return payload if isinstance(payload, dict) else {}

    def request_access_token(
        self,
        user_id: str,
        prompt: str = PromptMode.SILENT,
        authorization_code: str = "",
    ) -> str:
        client = self._require_client()
        if prompt == PromptMode.CONSENT:
            if not authorization_code:
                raise TokenError("Consent requires an authorization code from the provider.")
            data = {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "redirect_uri": client.redirect_uri,
            }
        else:
            grant = self.state_store.get_grant(user_id)
            if not grant:
                raise TokenError("Google Calendar access has not been granted; connect first.")
            data = {
                "grant_type": "refresh_token",
                "refresh_token": grant["refresh_token"],
                "client_id": client.client_id,
                "client_secret": client.client_secret,
            }

        payload = self._post_token(client, data)
        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise TokenError("Failed to obtain Google Calendar access token.")

        refresh_token = str(payload.get("refresh_token") or "").strip()
        if prompt == PromptMode.CONSENT and refresh_token:
            self.state_store.set_grant(user_id, refresh_token, str(payload.get("scope") or client.scope))
            logger.info("Stored calendar grant for user %s", user_id)
        return access_token

    def revoke_access(self, token: str) -> None:
        if not token:
            raise TokenError("No token available to revoke.")
        with self._lock:
            client = self._client or OAuthClient(client_id="", scope=GoogleConfig.scope)
        try:
            response = requests.post(
                client.revoke_uri,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=client.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TokenError(f"Revocation failed: {type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise TokenError(f"Revocation failed ({response.status_code}): {_token_error_message(response)}")
