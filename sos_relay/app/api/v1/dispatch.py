"""
FastAPI route: dispatcher login.

    POST /api/v1/dispatch/login

Checks the shared-secret gate and, when the device sent one, stores its
push token so it receives "new SOS" and "pending critical" broadcasts.
A successful login also arms the server-side escalation engine.
The same badge id / secret pair must then be sent as X-Badge-Id /
X-Badge-Secret headers on every dispatcher endpoint.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sos_relay.app.core.errors import AuthenticationError
from sos_relay.app.core.security import check_dispatcher_credentials
from sos_relay.app.services import RelayServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/dispatch", tags=["dispatch"])


class LoginRequest(BaseModel):
    badge_id: str = Field(..., examples=["DISPATCH_01"])
    password: str = Field(..., examples=["change-me"])
    push_token: Optional[str] = Field(
        None, description="FCM registration token of this device",
    )


@router.post("/login", summary="Dispatcher login")
async def login(
    request: LoginRequest,
    services: RelayServices = Depends(get_services),
):
    if not check_dispatcher_credentials(request.badge_id, request.password):
        raise AuthenticationError()

    push_registered = False
    if request.push_token:
        await services.registry.register(request.badge_id, request.push_token)
        push_registered = True
    services.arm()

    logger.info(
        "Dispatcher %s logged in", request.badge_id,
        extra={"badge_id": request.badge_id},
    )
    return {
        "badge_id": request.badge_id,
        "authenticated": True,
        "push_registered": push_registered,
    }
