# tests/test_security.py
"""Tests for outreach/transport/security.py: admin bearer token."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from outreach.transport.security import (
    MIN_TOKEN_LENGTH,
    _verify_bearer_token,
    check_token_strength,
    require_admin_auth,
)

TOKEN = "aA1" * 11  # 33 chars


def _make_mock_settings(**overrides):
    """Return a MagicMock that behaves like outreach.config.settings."""
    defaults = {
        "admin_token": TOKEN,
        "is_production": False,
    }
    defaults.update(overrides)
    mock = MagicMock()
    for k, v in defaults.items():
        setattr(mock, k, v)
    return mock


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


# ============================================================================
# Token verification
# ============================================================================

class TestVerifyBearerToken:
    @patch("outreach.transport.security.settings", _make_mock_settings())
    def test_valid(self):
        assert _verify_bearer_token(_bearer(TOKEN)) == (True, None)

    @patch("outreach.transport.security.settings", _make_mock_settings())
    def test_missing_header(self):
        valid, error = _verify_bearer_token(None)
        assert valid is False
        assert "Missing" in error

    @patch("outreach.transport.security.settings", _make_mock_settings())
    def test_wrong_token(self):
        valid, error = _verify_bearer_token(_bearer(TOKEN + "x"))
        assert valid is False
        assert error == "Invalid token"


class TestRequireAdminAuth:
    @pytest.mark.asyncio
    @patch("outreach.transport.security.settings", _make_mock_settings())
    async def test_accepts_valid_token(self):
        assert await require_admin_auth(_bearer(TOKEN)) is None

    @pytest.mark.asyncio
    @patch("outreach.transport.security.settings", _make_mock_settings())
    async def test_rejects_invalid_token(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_auth(_bearer("nope"))
        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    @pytest.mark.asyncio
    @patch("outreach.transport.security.settings", _make_mock_settings(admin_token=None))
    async def test_unconfigured_token_is_503(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_auth(_bearer(TOKEN))
        assert exc_info.value.status_code == 503


# ============================================================================
# Token strength
# ============================================================================

class TestTokenStrength:
    @patch("outreach.transport.security.settings", _make_mock_settings(is_production=True))
    def test_strong_token_in_production(self):
        check_token_strength()

    @patch("outreach.transport.security.settings", _make_mock_settings(admin_token="a" * (MIN_TOKEN_LENGTH - 1), is_production=True))
    def test_short_token_refused_in_production(self):
        with pytest.raises(RuntimeError):
            check_token_strength()

    @patch("outreach.transport.security.settings", _make_mock_settings(admin_token="short"))
    def test_short_token_warns_in_dev(self, caplog):
        check_token_strength()
        assert "shorter than" in caplog.text

    @patch("outreach.transport.security.settings", _make_mock_settings(admin_token=None, is_production=True))
    def test_missing_token_is_not_a_strength_problem(self):
        check_token_strength()
