"""
Rate Limiting Configuration

Uses slowapi to throttle the public deposit endpoints per client
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from luna_deposits.core.config import get_settings


def get_client_identifier(request: Request) -> str:
    """
    Get identifier for rate limiting

    The service sits behind the platform's gateway and has no sessions of
    its own, so clients are told apart by IP address.
    """
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_client_identifier,
    default_limits=["1000 per hour"],
    storage_uri=get_settings().RATE_LIMIT_STORAGE_URI,
)
