"""
Authentication for the Budgetflow API.

- API key gate (X-API-Key), open in development mode
- Acting member identity (X-Member-Id / X-Member-Name)
- Reauthentication gate called before destructive actions
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from budgetflow.core.config import get_settings
from budgetflow.services.errors import InvalidAPIKeyError, ReauthenticationError, to_http_exception

logger = logging.getLogger(__name__)

# API Key header
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_api_key(api_key: Optional[str] = Security(API_KEY_HEADER)) -> str:
    """
    Verify API key from request header.

    Args:
        api_key: API key from X-API-Key header

    Returns:
        API key if valid

    Raises:
        HTTPException: 401 with an INVALID_API_KEY body if the key is missing or wrong
    """
    expected = get_settings().api_key
    # If no API key is configured, allow all requests (development mode)
    if expected is None:
        return api_key or "dev-mode"

    if not api_key:
        raise to_http_exception(
            InvalidAPIKeyError("API key required. Provide X-API-Key header."),
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not hmac.compare_digest(api_key, expected):
        logger.warning("Rejected request with an unknown API key")
        raise to_http_exception(InvalidAPIKeyError("API key not recognised"), headers={"WWW-Authenticate": "ApiKey"})

    return api_key


@dataclass
class Actor:
    """The member performing a request."""
    member_id: str
    name: Optional[str] = None
    reauth_token: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.member_id


def get_actor(
    x_member_id: str = Header(..., alias="X-Member-Id"),
    x_member_name: Optional[str] = Header(None, alias="X-Member-Name"),
    x_reauth_token: Optional[str] = Header(None, alias="X-Reauth-Token"),
) -> Actor:
    member_id = (x_member_id or "").strip()
    if not member_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Member-Id header is required")
    return Actor(member_id=member_id, name=x_member_name, reauth_token=x_reauth_token)


class Reauthenticator:
    """
    Confirms the actor re-entered their credentials before a destructive action.

    The token is an HMAC-SHA256 of the member ID under the configured secret.
    Without a secret (development mode) every check passes.
    """

    def __init__(self, secret: Optional[str] = None):
        self.secret = secret

    def issue_token(self, member_id: str) -> str:
        if self.secret is None:
            return "dev-mode"
        return hmac.new(self.secret.encode(), member_id.encode(), hashlib.sha256).hexdigest()

    def verify(self, member_id: str, token: Optional[str]) -> bool:
        if self.secret is None:
            return True
        if not token:
            return False
        return hmac.compare_digest(self.issue_token(member_id), token)

    def require(self, member_id: str, token: Optional[str], action: str) -> None:
        if not self.verify(member_id, token):
            logger.warning("Reauthentication failed for %s (%s)", member_id, action)
            raise ReauthenticationError(member_id, action)
