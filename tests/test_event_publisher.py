# tests/test_event_publisher.py
"""Tests for realtime event publishing."""
import asyncio
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from outreach.infra import event_publisher
from outreach.infra.event_publisher import (
    LogEventPublisher,
    PusherEventPublisher,
    get_event_publisher,
    sign_request,
)
from outreach.infra.metrics import get_metrics_collector


def _make_mock_session(status=200, text=""):
    resp = AsyncMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)

    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=ctx)
    return session


class TestSignRequest:
    def test_signature_over_sorted_query(self):
        params = {"b": "2", "a": "1"}
        expected = hmac.new(
            b"secret", b"POST\n/apps/1/events\na=1&b=2", hashlib.sha256
        ).hexdigest()
        assert sign_request("secret", "POST", "/apps/1/events", params) == expected

    def test_secret_changes_signature(self):
        params = {"a": "1"}
        assert sign_request("s1", "POST", "/p", params) != sign_request("s2", "POST", "/p", params)


class TestPusherEventPublisher:

    @pytest.mark.asyncio
    async def test_publish_posts_signed_body(self):
        session = _make_mock_session(200)
        publisher = PusherEventPublisher("app-1", "key-1", "secret-1", cluster="eu")

        with patch("outreach.infra.event_publisher.get_events_session", return_value=session):
            await publisher.publish("run-run-1", "call-started", {"row_id": "row-1"})

        url = session.post.call_args[0][0]
        body = session.post.call_args[1]["data"]
        parsed = urlparse(url)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.netloc == "api-eu.pusher.com"
        assert parsed.path == "/apps/app-1/events"
        assert query["auth_key"] == "key-1"
        assert query["body_md5"] == hashlib.md5(body.encode()).hexdigest()

        signature = query.pop("auth_signature")
        assert signature == sign_request("secret-1", "POST", parsed.path, query)

        sent = json.loads(body)
        assert sent["name"] == "call-started"
        assert sent["channels"] == ["run-run-1"]
        assert json.loads(sent["data"]) == {"row_id": "row-1"}
        assert get_metrics_collector().get_counter(
            "events_published_total", {"publisher": "pusher", "event": "call-started"}
        ) == 1

    @pytest.mark.asyncio
    async def test_rejected_publish_does_not_raise(self):
        session = _make_mock_session(403, "invalid signature")
        publisher = PusherEventPublisher("app-1", "key-1", "secret-1")

        with patch("outreach.infra.event_publisher.get_events_session", return_value=session):
            await publisher.publish("run-run-1", "call-started", {})

        assert get_metrics_collector().get_counter(
            "events_publish_failed_total", {"publisher": "pusher", "reason": "http_403"}
        ) == 1

    @pytest.mark.asyncio
    async def test_network_failure_does_not_raise(self):
        ctx = AsyncMock()
        ctx.__aenter__ = AsyncMock(side_effect=asyncio.TimeoutError())
        ctx.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.post = MagicMock(return_value=ctx)
        publisher = PusherEventPublisher("app-1", "key-1", "secret-1")

        with patch("outreach.infra.event_publisher.get_events_session", return_value=session):
            await publisher.publish("org-org-1", "run-updated", {})

        assert get_metrics_collector().get_counter(
            "events_publish_failed_total", {"publisher": "pusher", "reason": "network"}
        ) == 1


class TestGetEventPublisher:

    def test_falls_back_to_log_publisher(self):
        with patch.object(event_publisher, "_publisher", None), \
                patch.object(event_publisher.settings, "pusher_app_id", None):
            assert isinstance(get_event_publisher(), LogEventPublisher)

    def test_pusher_when_configured(self):
        with patch.object(event_publisher, "_publisher", None), \
                patch.object(event_publisher.settings, "pusher_app_id", "app-1"), \
                patch.object(event_publisher.settings, "pusher_key", "key-1"), \
                patch.object(event_publisher.settings, "pusher_secret", "secret-1"):
            publisher = get_event_publisher()
            assert publisher.name == "pusher"
            assert get_event_publisher() is publisher

    @pytest.mark.asyncio
    async def test_log_publisher_counts(self):
        await LogEventPublisher().publish("run-run-1", "rows-reset", {"count": 2})
        assert get_metrics_collector().get_counter(
            "events_published_total", {"publisher": "log", "event": "rows-reset"}
        ) == 1
