"""
alarm.py — Audible / vibration alarm outputs driven by the escalation engine.

The escalation policy never touches hardware. It calls an AlarmOutput:

    start_audible()       siren + vibration pattern for one burst
    stop_audible()        silence now (idempotent)
    set_ringing(flag)     visual "ringing" indicator on the console

On a server there is no speaker, so the default output logs and keeps
the current state for inspection (health endpoint, tests). A console
front-end plugs in its own output.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Tuple

logger = logging.getLogger(__name__)

# on / off / on, milliseconds
VIBRATION_PATTERN: Tuple[int, ...] = (500, 200, 500)


class AlarmOutput(ABC):
    """Effectful side of the escalation engine."""

    @abstractmethod
    def start_audible(self) -> None:
        ...

    @abstractmethod
    def stop_audible(self) -> None:
        ...

    @abstractmethod
    def set_ringing(self, ringing: bool) -> None:
        ...


class LoggingAlarmOutput(AlarmOutput):
    """Records alarm state and logs transitions."""

    def __init__(self) -> None:
        self.audible = False
        self.ringing = False
        self.bursts = 0

    def start_audible(self) -> None:
        self.audible = True
        self.bursts += 1
        logger.warning("[ALARM] Siren on (vibration %s)", list(VIBRATION_PATTERN))

    def stop_audible(self) -> None:
        if self.audible:
            logger.info("[ALARM] Siren off")
        self.audible = False

    def set_ringing(self, ringing: bool) -> None:
        if ringing != self.ringing:
            logger.info("[ALARM] Ringing indicator %s", "on" if ringing else "off")
        self.ringing = ringing

    def to_dict(self) -> dict:
        return {"audible": self.audible, "ringing": self.ringing, "bursts": self.bursts}
