# tests/test_telephony_client.py
"""Tests for the telephony dispatcher (create-phone-call)."""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from outreach.infra.metrics import get_metrics_collector
from outreach.infra.telephony_client import CREATE_CALL_PATH, RetellDispatcher


def _make_mock_response(status=200, json_data=None, json_error=None):
    """Create a mock aiohttp response."""
    resp = AsyncMock()
    resp.status = status
    if json_error is not None:
        resp.json = AsyncMock(side_effect=json_error)
    else:
        resp.json = AsyncMock(return_value=json_data or {})
    return resp


def _make_mock_session(response):
    """Create a mock session whose .post() returns the given response."""
    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=response)
    ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=ctx)
    return session


def _failing_session(exc):
    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(side_effect=exc)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.post = MagicMock(return_value=ctx)
    return session


async def _dispatch(dispatcher):
    return await dispatcher.dispatch(
        to_number="+15550002222",
        from_number="+15550001111",
        agent_id="agent-1",
        variables={"first_name": "Ana"},
        metadata={"run_id": "run-1", "row_id": "row-1", "patient_id": None},
    )


class TestRetellDispatcher:

    @pytest.mark.asyncio
    async def test_success(self):
        mock_session = _make_mock_session(_make_mock_response(201, {"call_id": "call_abc"}))
        dispatcher = RetellDispatcher(api_key="key_123", base_url="https://telephony.test/")

        with patch("outreach.infra.telephony_client.get_telephony_session", return_value=mock_session):
            result = await _dispatch(dispatcher)

        assert result.ok is True
        assert result.call_id == "call_abc"

        url = mock_session.post.call_args[0][0]
        assert url == f"https://telephony.test{CREATE_CALL_PATH}"
        kwargs = mock_session.post.call_args[1]
        assert kwargs["headers"]["Authorization"] == "Bearer key_123"
        payload = kwargs["json"]
        assert payload["override_agent_id"] == "agent-1"
        assert payload["retell_llm_dynamic_variables"] == {"first_name": "Ana"}
        # None metadata values are not sent
        assert payload["metadata"] == {"run_id": "run-1", "row_id": "row-1"}
        assert get_metrics_collector().get_counter("telephony_requests_total", {"outcome": "accepted"}) == 1

    @pytest.mark.asyncio
    async def test_http_error_carries_vendor_message(self):
        mock_session = _make_mock_session(_make_mock_response(422, {"message": "invalid number"}))
        dispatcher = RetellDispatcher(api_key="key_123")

        with patch("outreach.infra.telephony_client.get_telephony_session", return_value=mock_session):
            result = await _dispatch(dispatcher)

        assert result.ok is False
        assert result.error == "HTTP 422: invalid number"
        assert get_metrics_collector().get_counter("telephony_requests_total", {"outcome": "http_422"}) == 1

    @pytest.mark.asyncio
    async def test_success_status_without_call_id_is_failure(self):
        mock_session = _make_mock_session(_make_mock_response(200, {}))
        dispatcher = RetellDispatcher(api_key="key_123")

        with patch("outreach.infra.telephony_client.get_telephony_session", return_value=mock_session):
            result = await _dispatch(dispatcher)

        assert result.ok is False
        assert "no call id" in result.error

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        mock_session = _make_mock_session(_make_mock_response(502, json_error=ValueError("not json")))
        dispatcher = RetellDispatcher(api_key="key_123")

        with patch("outreach.infra.telephony_client.get_telephony_session", return_value=mock_session):
            result = await _dispatch(dispatcher)

        assert result.ok is False
        assert result.error.startswith("HTTP 502")

    @pytest.mark.asyncio
    async def test_timeout(self):
        dispatcher = RetellDispatcher(api_key="key_123")

        with patch(
            "outreach.infra.telephony_client.get_telephony_session",
            return_value=_failing_session(asyncio.TimeoutError()),
        ):
            result = await _dispatch(dispatcher)

        assert result.ok is False
        assert result.error == "Telephony API timeout"

    @pytest.mark.asyncio
    async def test_network_error(self):
        dispatcher = RetellDispatcher(api_key="key_123")

        with patch(
            "outreach.infra.telephony_client.get_telephony_session",
            return_value=_failing_session(aiohttp.ClientConnectionError("refused")),
        ):
            result = await _dispatch(dispatcher)

        assert result.ok is False
        assert result.error == "Network error: ClientConnectionError"

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        dispatcher = RetellDispatcher(api_key="")

        with patch("outreach.infra.telephony_client.get_telephony_session") as get_session:
            result = await _dispatch(dispatcher)

        assert result.ok is False
        assert result.error == "Telephony API key is not configured"
        get_session.assert_not_called()
