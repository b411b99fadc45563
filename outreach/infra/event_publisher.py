# outreach/infra/event_publisher.py
"""
Realtime event publishing (Pusher Channels HTTP API).

Publishing is best effort: a failed publish is logged and counted, never
raised into the dispatch loop. Without Pusher credentials the
``LogEventPublisher`` is used so events still show up in the logs.

Usage:
    publisher = get_event_publisher()
    await publisher.publish("run-<id>", "call-started", {...})
"""
from __future__ import annotations

import abc
import asyncio
import hashlib
import hmac
import json
import time
from typing import Any
from urllib.parse import urlencode

import aiohttp

from outreach.config import settings
from outreach.infra.http_client import get_events_session
from outreach.infra.logging_config import get_logger
from outreach.infra.metrics import inc_counter

logger = get_logger(__name__)


class BaseEventPublisher(abc.ABC):
    """Abstract base class for event publishers"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Publisher name for logging/metrics"""

    @abc.abstractmethod
    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        """Publish one event. Must not raise."""


class LogEventPublisher(BaseEventPublisher):
    """Fallback when no realtime backend is configured"""

    @property
    def name(self) -> str:
        return "log"

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        inc_counter("events_published_total", publisher=self.name, event=event)
        logger.debug(f"[event] {channel} {event} {json.dumps(payload, default=str)[:300]}")


def sign_request(secret: str, method: str, path: str, params: dict[str, str]) -> str:
    """Pusher auth signature: HMAC-SHA256 over "METHOD\\nPATH\\nsorted query"."""
    query = "&".join(f"{k}={params[k]}" for k in sorted(params))
    to_sign = f"{method}\n{path}\n{query}"
    return hmac.new(secret.encode(), to_sign.encode(), hashlib.sha256).hexdigest()


class PusherEventPublisher(BaseEventPublisher):

    def __init__(self, app_id: str, key: str, secret: str, cluster: str = "us2"):
        self._app_id = app_id
        self._key = key
        self._secret = secret
        self._host = f"https://api-{cluster}.pusher.com"

    @property
    def name(self) -> str:
        return "pusher"

    def _signed_url(self, body: str) -> str:
        path = f"/apps/{self._app_id}/events"
        params = {
            "auth_key": self._key,
            "auth_timestamp": str(int(time.time())),
            "auth_version": "1.0",
            "body_md5": hashlib.md5(body.encode()).hexdigest(),
        }
        params["auth_signature"] = sign_request(self._secret, "POST", path, params)
        return f"{self._host}{path}?{urlencode(params)}"

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        body = json.dumps({
            "name": event,
            "channels": [channel],
            "data": json.dumps(payload, default=str),
        })

        try:
            session = get_events_session()
            async with session.post(
                self._signed_url(body),
                data=body,
                headers={"Content-Type": "application/json"},
            ) as resp:
                if resp.status != 200:
                    text = (await resp.text())[:200]
                    inc_counter("events_publish_failed_total", publisher=self.name, reason=f"http_{resp.status}")
                    logger.warning(f"Event publish rejected: {channel}/{event} status={resp.status} body={text}")
                    return

            inc_counter("events_published_total", publisher=self.name, event=event)

        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            inc_counter("events_publish_failed_total", publisher=self.name, reason="network")
            logger.warning(f"Event publish failed: {channel}/{event}: {type(exc).__name__}")


_publisher: BaseEventPublisher | None = None


def get_event_publisher() -> BaseEventPublisher:
    """Pusher when configured, otherwise log-only."""
    global _publisher
    if _publisher is None:
        if settings.pusher_enabled:
            _publisher = PusherEventPublisher(
                settings.pusher_app_id,
                settings.pusher_key,
                settings.pusher_secret,
                settings.pusher_cluster,
            )
        else:
            _publisher = LogEventPublisher()
        logger.info(f"Event publisher: {_publisher.name}")
    return _publisher
