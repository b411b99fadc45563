# outreach/infra/telephony_client.py
"""
Telephony dispatcher for a Retell-compatible voice API.

``POST {base_url}/v2/create-phone-call`` with a bearer API key. The engine
only needs to know whether the call was accepted and the vendor call id;
every failure (HTTP error, timeout, connection error, malformed body)
comes back as ``DispatchResult(ok=False, error=...)`` and the row goes down
the retry path.

HTTP session lifecycle:
- Uses the shared telephony session from outreach.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from outreach.config import settings
from outreach.core.domain import DispatchResult
from outreach.infra.http_client import get_telephony_session
from outreach.infra.logging_config import get_logger, mask_phone
from outreach.infra.metrics import inc_counter

logger = get_logger(__name__)

CREATE_CALL_PATH = "/v2/create-phone-call"


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"Telephony API returned non-JSON body: status={resp.status}")
        return None
    return data if isinstance(data, dict) else None


class RetellDispatcher:
    """
    Usage:
        dispatcher = RetellDispatcher(api_key=settings.telephony_api_key)
        result = await dispatcher.dispatch(to, from_, agent_id, variables, metadata)
    """

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self._api_key = api_key if api_key is not None else settings.telephony_api_key
        self._base_url = (base_url or settings.telephony_base_url).rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def dispatch(
        self,
        to_number: str,
        from_number: str,
        agent_id: str,
        variables: dict[str, str],
        metadata: dict[str, Any],
    ) -> DispatchResult:
        if not self.configured:
            inc_counter("telephony_requests_total", outcome="not_configured")
            return DispatchResult(ok=False, error="Telephony API key is not configured")

        payload = {
            "from_number": from_number,
            "to_number": to_number,
            "override_agent_id": agent_id,
            "metadata": {k: v for k, v in metadata.items() if v is not None},
            "retell_llm_dynamic_variables": variables,
        }

        try:
            session = get_telephony_session()
            async with session.post(
                f"{self._base_url}{CREATE_CALL_PATH}",
                json=payload,
                headers=self._headers(),
            ) as resp:
                body = await _safe_response_json(resp)

                if resp.status in (200, 201) and body and body.get("call_id"):
                    inc_counter("telephony_requests_total", outcome="accepted")
                    logger.info(
                        f"Call created: to={mask_phone(to_number)}, call_id={body['call_id']}"
                    )
                    return DispatchResult(ok=True, call_id=str(body["call_id"]))

                detail = ""
                if body:
                    detail = str(body.get("error_message") or body.get("message") or body.get("error") or "")
                error = f"HTTP {resp.status}: {detail or 'no call id in response'}"[:500]
                inc_counter("telephony_requests_total", outcome=f"http_{resp.status}")
                logger.warning(f"Create call rejected: to={mask_phone(to_number)}, {error}")
                return DispatchResult(ok=False, error=error)

        except asyncio.TimeoutError:
            inc_counter("telephony_requests_total", outcome="timeout")
            logger.warning(f"Create call timed out: to={mask_phone(to_number)}")
            return DispatchResult(ok=False, error="Telephony API timeout")

        except aiohttp.ClientError as exc:
            inc_counter("telephony_requests_total", outcome="network_error")
            logger.warning(f"Create call network error: {type(exc).__name__}: {exc}")
            return DispatchResult(ok=False, error=f"Network error: {type(exc).__name__}")
