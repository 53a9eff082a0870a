"""
FastAPI route: citizen profiles.

    POST /api/v1/profiles           — register (phone number is the key)
    GET  /api/v1/profiles/{phone}   — log in / look up by phone number
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sos_relay.app.alerts.citizen import validate_phone
from sos_relay.app.alerts.models import UserProfile
from sos_relay.app.services import RelayServices, get_services

router = APIRouter(prefix="/api/v1/profiles", tags=["profiles"])


class ProfileRequest(BaseModel):
    """Registration form."""
    name: str = Field(..., min_length=1, max_length=120, examples=["Ana Macuácua"])
    phone_number: str = Field(..., examples=["841234567"])
    city: str = Field("", max_length=120, examples=["Maputo"])
    neighborhood: str = Field("", max_length=120, examples=["Polana Cimento"])


@router.post("", status_code=201, summary="Register a citizen profile")
async def register_profile(
    request: ProfileRequest,
    services: RelayServices = Depends(get_services),
):
    profile = UserProfile(
        name=request.name.strip(),
        phone_number=validate_phone(request.phone_number),
        city=request.city.strip(),
        neighborhood=request.neighborhood.strip(),
    )
    await services.profiles.register(profile)
    return profile.to_dict()


@router.get("/{phone}", summary="Look up a profile by phone number")
async def get_profile(
    phone: str,
    services: RelayServices = Depends(get_services),
):
    profile = await services.profiles.lookup(validate_phone(phone))
    return profile.to_dict()
