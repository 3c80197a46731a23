from fastapi import Depends

from app.db import get_db
from app.services.auth_dependencies import require_permission, require_user_auth
from app.services.stripe_client import StripeClient


def get_current_user(auth=Depends(require_user_auth)):
    """Get current authenticated user info.

    Returns a dict with actor_id, roles, and scopes.
    """
    return auth


def get_stripe_client():
    """Per-request Stripe client; closed once the response is sent."""
    client = StripeClient.from_settings()
    try:
        yield client
    finally:
        client.close()


__all__ = [
    "get_current_user",
    "get_db",
    "get_stripe_client",
    "require_permission",
    "require_user_auth",
]
