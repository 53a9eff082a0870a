"""
lifecycle.py — Alert status state machine.

═══════════════════════════════════════════════════════════════════════════
STATES & TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    ┌─────┐  dispatcher   ┌─────────────┐  dispatcher   ┌──────────┐
    │ new │ ────────────▶ │ in_progress │ ────────────▶ │ resolved │
    └─────┘               └─────────────┘               └──────────┘
       │                                                     ▲
       └─────────────────────── dispatcher ──────────────────┘

    • Only dispatcher actions move an alert; time never does (age only
      feeds the escalation engine).
    • Re-issuing the current status is a no-op.
    • Forward-only: resolved is terminal and in_progress never returns
      to new. A resolved report that needs more work is a new report.

Selecting an alert in the console is read-only and never calls into
this module.
"""

from __future__ import annotations

import dataclasses
from typing import Dict, FrozenSet

from sos_relay.app.alerts.models import Alert, AlertStatus
from sos_relay.app.core.errors import InvalidTransitionError

ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.NEW: frozenset({AlertStatus.IN_PROGRESS, AlertStatus.RESOLVED}),
    AlertStatus.IN_PROGRESS: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


def allowed_targets(status: AlertStatus) -> FrozenSet[AlertStatus]:
    return ALLOWED_TRANSITIONS[status]


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def transition(alert: Alert, target: AlertStatus) -> Alert:
    """
    Return the alert with its status moved to `target`.

    Raises
    ------
    InvalidTransitionError
        If the move goes backwards.
    """
    if not can_transition(alert.status, target):
        raise InvalidTransitionError(alert.id, alert.status.value, target.value)
    if alert.status == target:
        return alert
    return dataclasses.replace(alert, status=target)
