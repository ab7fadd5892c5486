import unittest
from unittest import mock

import requests

from almanac.calendar_client import GoogleCalendarClient
from almanac.errors import ApiError
from almanac.models import GoogleConfig


def _response(status_code: int, body=None, reason: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.reason = reason
    response.content = b"" if body is None else b"{}"
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


class GoogleCalendarClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = GoogleCalendarClient("token-1", base_url="https://calendar.example.com/v3/")

    @mock.patch("almanac.calendar_client.requests.request")
    def test_create_event_posts_to_primary_calendar(self, request: mock.Mock) -> None:
        request.return_value = _response(200, {"id": "evt-1"})
        result = self.client.create_event({"summary": "Workout"})

        self.assertEqual(result, {"id": "evt-1"})
        args, kwargs = request.call_args
        self.assertEqual(args, ("POST", "https://calendar.example.com/v3/calendars/primary/events"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-1")
        self.assertEqual(kwargs["json"], {"summary": "Workout"})

    @mock.patch("almanac.calendar_client.requests.request")
    def test_update_event_patches_quoted_remote_id(self, request: mock.Mock) -> None:
        request.return_value = _response(204)
        self.assertEqual(self.client.update_event("evt/1", {"summary": "x"}), {})
        args, _ = request.call_args
        self.assertEqual(args, ("PATCH", "https://calendar.example.com/v3/calendars/primary/events/evt%2F1"))

    @mock.patch("almanac.calendar_client.requests.request")
    def test_error_response_raises_api_error_with_provider_message(self, request: mock.Mock) -> None:
        request.return_value = _response(401, {"error": {"code": 401, "message": "Invalid credentials"}})
        with self.assertRaises(ApiError) as ctx:
            self.client.create_event({})
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("Invalid credentials", str(ctx.exception))

    @mock.patch("almanac.calendar_client.requests.request")
    def test_error_without_json_body_uses_reason(self, request: mock.Mock) -> None:
        request.return_value = _response(503, ValueError("no json"), reason="Service Unavailable")
        with self.assertRaises(ApiError) as ctx:
            self.client.update_event("evt-1", {})
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertIn("Service Unavailable", str(ctx.exception))

    @mock.patch("almanac.calendar_client.requests.request")
    def test_transport_failure_becomes_api_error(self, request: mock.Mock) -> None:
        request.side_effect = requests.ConnectionError("connection refused")
        with self.assertRaises(ApiError) as ctx:
            self.client.create_event({})
        self.assertEqual(ctx.exception.status_code, 0)

    def test_from_config_uses_configured_endpoint(self) -> None:
        client = GoogleCalendarClient.from_config(
            "tok", GoogleConfig(api_base_url="https://proxy.example.com/calendar/v3", timeout_seconds=5)
        )
        self.assertEqual(client.base_url, "https://proxy.example.com/calendar/v3")
        self.assertEqual(client.timeout_seconds, 5)
        self.assertEqual(GoogleCalendarClient.from_config("tok", None).base_url, "https://www.googleapis.com/calendar/v3")


if __name__ == "__main__":
    unittest.main()
