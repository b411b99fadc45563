# outreach/transport/security.py
"""
Ops endpoint authentication.

Every endpoint except ``/health`` requires ``Authorization: Bearer <ADMIN_TOKEN>``.
Tokens are compared in constant time; without a configured token the
endpoints answer 503 instead of silently allowing access.
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from outreach.config import settings
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for production (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32

bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,
)


def _verify_bearer_token(credentials: HTTPAuthorizationCredentials | None) -> tuple[bool, str | None]:
    """Verify Bearer token. Returns (is_valid, error_message)."""
    if not credentials:
        return False, "Missing Authorization header"

    if not hmac.compare_digest(credentials.credentials.encode(), settings.admin_token.encode()):
        return False, "Invalid token"

    return True, None


async def require_admin_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    Usage:
        @app.post("/runs/{run_id}/start", dependencies=[Depends(require_admin_auth)])
        async def start(run_id: str):
            ...
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but ops endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )

    valid, error = _verify_bearer_token(credentials)
    if not valid:
        logger.warning(f"Ops auth rejected: {error}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def check_token_strength() -> None:
    """Refuse a short ADMIN_TOKEN in production, warn elsewhere."""
    token = settings.admin_token
    if not token or len(token) >= MIN_TOKEN_LENGTH:
        return

    if settings.is_production:
        logger.critical(f"ADMIN_TOKEN must be at least {MIN_TOKEN_LENGTH} characters in production")
        raise RuntimeError("Weak ADMIN_TOKEN")

    logger.warning(f"ADMIN_TOKEN is shorter than {MIN_TOKEN_LENGTH} characters")
