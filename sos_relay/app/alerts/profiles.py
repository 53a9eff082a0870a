"""
profiles.py — Citizen profile directory.

A profile is written once at registration under `profiles/{phone}` and
read back by phone number at login. There is no edit operation.
"""

from __future__ import annotations

import logging

from sos_relay.app.alerts.backends import DocumentStore
from sos_relay.app.alerts.models import UserProfile
from sos_relay.app.core.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PROFILES_PATH = "profiles"


def _profile_key(phone_number: str) -> str:
    digits = "".join(ch for ch in phone_number if ch.isdigit())
    if not digits:
        raise ValidationError("Phone number is required", field="phone_number")
    return digits


class ProfileDirectory:
    """Register and look up citizen profiles by phone number."""

    def __init__(self, backend: DocumentStore):
        self._backend = backend

    async def register(self, profile: UserProfile) -> UserProfile:
        if not profile.name.strip():
            raise ValidationError("Name is required", field="name")
        key = _profile_key(profile.phone_number)
        path = f"{PROFILES_PATH}/{key}"

        if await self._backend.get(path) is not None:
            raise ConflictError("Profile", phone_number=profile.phone_number)

        await self._backend.set(path, profile.to_record())
        logger.info("Citizen profile registered (%s, %s)", profile.city, profile.neighborhood)
        return profile

    async def lookup(self, phone_number: str) -> UserProfile:
        doc = await self._backend.get(f"{PROFILES_PATH}/{_profile_key(phone_number)}")
        if not isinstance(doc, dict):
            raise NotFoundError("Profile", phone_number=phone_number)
        return UserProfile.from_record(doc)
