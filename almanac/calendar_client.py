from __future__ import annotations

from typing import Any
from urllib.parse import quote

import requests

from almanac.errors import ApiError
from almanac.models import GoogleConfig


DEFAULT_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()
        if isinstance(error_payload, str) and error_payload.strip():
            return error_payload.strip()
    return str(response.reason or "").strip() or "Google Calendar API error"


class GoogleCalendarClient:
    """Minimal writer for the primary calendar, bound to one access token."""

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: int = 30,
    ) -> None:
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, access_token: str, config: GoogleConfig | None) -> "GoogleCalendarClient":
        if config is None:
            return cls(access_token)
        return cls(access_token, base_url=config.api_base_url, timeout_seconds=config.timeout_seconds)

    def _events_endpoint(self) -> str:
        return f"{self.base_url}/calendars/primary/events"

    def _request(self, method: str, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = requests.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ApiError(0, f"{type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise ApiError(response.status_code, _error_message(response))
        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise ApiError(response.status_code, "Google Calendar API returned invalid JSON") from exc
        return body if isinstance(body, dict) else {}

    def create_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", self._events_endpoint(), payload)

    def update_event(self, remote_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._events_endpoint()}/{quote(str(remote_id), safe='')}"
        return self._request("PATCH", url, payload)
