"""
Dispatcher shared-secret gate.

This is a placeholder, not a security model: one static badge id /
password pair from settings guards the dispatcher console and the
dispatcher HTTP endpoints. A real deployment needs a credential issuance
flow (per-dispatcher accounts, expiring tokens) in front of this.
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Header

from sos_relay.app.core.config import settings
from sos_relay.app.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


def check_dispatcher_credentials(
    badge_id: Optional[str],
    password: Optional[str],
) -> bool:
    """Constant-time comparison against the configured shared secret."""
    if not badge_id or not password:
        return False
    # compare_digest only accepts ASCII str; compare UTF-8 bytes instead
    badge_ok = hmac.compare_digest(
        badge_id.encode("utf-8"), settings.DISPATCHER_BADGE_ID.encode("utf-8"),
    )
    pass_ok = hmac.compare_digest(
        password.encode("utf-8"), settings.DISPATCHER_PASSWORD.encode("utf-8"),
    )
    return badge_ok and pass_ok


def require_dispatcher(
    x_badge_id: Optional[str] = Header(None),
    x_badge_secret: Optional[str] = Header(None),
) -> str:
    """FastAPI dependency: reject the request unless the gate headers match."""
    if not check_dispatcher_credentials(x_badge_id, x_badge_secret):
        logger.warning("Rejected dispatcher request for badge %r", x_badge_id)
        raise AuthenticationError()
    return x_badge_id
