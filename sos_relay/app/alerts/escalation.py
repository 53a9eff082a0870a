"""
escalation.py — Notification / alarm escalation engine.

Decides, from the live alert snapshot and the wall clock, whether the
dispatcher alarm should be sounding and whether a renewed push broadcast
is due for alerts stuck unresolved.

═══════════════════════════════════════════════════════════════════════════
POLICY (pure: decide())
═══════════════════════════════════════════════════════════════════════════

    1. has_new          = any alert with status == new
    2. long_unresolved  = status != resolved AND age > 1 h
    3. should_ring      = has_new OR long_unresolved
    4. broadcast        = long_unresolved AND now - last_broadcast > 5 min
                          (last_broadcast starts at epoch 0)
    5. should_ring and no burst running   → start a 10 s alarm burst
       should_ring and no timer running   → start the 40 s re-evaluation timer
    6. not should_ring                    → stop timer, burst and indicator

Unauthenticated sessions never ring and never broadcast.

═══════════════════════════════════════════════════════════════════════════
TIMERS (effectful: EscalationEngine)
═══════════════════════════════════════════════════════════════════════════

    Timer                 Period   Governs
    ───────────────────   ──────   ──────────────────────────────────
    re-evaluation         40 s     local alarm state (bursts repeat)
    alarm burst           10 s     audible/vibration output only
    broadcast debounce    5 min    outbound pending-critical pushes

The debounce is a timestamp in the state, not a task: it throttles
network calls and is independent of the re-evaluation timer. Snapshots
and timer ticks interleave freely on the event loop; all engine state
is derived from the store, so no locking is needed.

A broadcast runs as a background task. Its failure is logged and has no
effect on ringing (e.g. a dispatcher working offline still hears the
alarm for data already fetched).
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set, Tuple

from sos_relay.app.alerts.alarm import AlarmOutput, LoggingAlarmOutput
from sos_relay.app.alerts.channels.fcm_push import PushNotifier, pending_critical
from sos_relay.app.alerts.models import Alert, AlertStatus, now_ms

logger = logging.getLogger(__name__)

LONG_UNRESOLVED_MS = 60 * 60 * 1000
BROADCAST_DEBOUNCE_MS = 5 * 60 * 1000
REEVALUATE_INTERVAL_SECONDS = 40.0
ALARM_BURST_SECONDS = 10.0


# ═══════════════════════════════════════════════════════════════════════════
# Pure policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class EscalationState:
    """Engine memory carried between evaluations."""
    last_broadcast_ms: int = 0
    timer_active: bool = False
    audible_active: bool = False
    ringing: bool = False

    @property
    def idle(self) -> bool:
        return not (self.timer_active or self.audible_active or self.ringing)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class EscalationDecision:
    """What one evaluation asks the executor to do."""
    has_new: bool = False
    long_unresolved: Tuple[str, ...] = ()
    should_ring: bool = False
    broadcast: bool = False
    start_alarm_cycle: bool = False
    start_timer: bool = False
    stop_alarm: bool = False

    def to_dict(self) -> dict:
        return {
            "has_new": self.has_new,
            "long_unresolved": list(self.long_unresolved),
            "should_ring": self.should_ring,
            "broadcast": self.broadcast,
            "start_alarm_cycle": self.start_alarm_cycle,
            "start_timer": self.start_timer,
            "stop_alarm": self.stop_alarm,
        }


def find_long_unresolved(alerts: Iterable[Alert], now: int) -> List[Alert]:
    return [
        a for a in alerts
        if not a.is_resolved and a.age_ms(now) > LONG_UNRESOLVED_MS
    ]


def decide(
    alerts: Iterable[Alert],
    now: int,
    state: EscalationState,
    *,
    authenticated: bool,
) -> Tuple[EscalationDecision, EscalationState]:
    """
    Evaluate the escalation policy.

    Parameters
    ----------
    alerts : iterable of Alert
        Full snapshot (no view filtering applied).
    now : int
        Epoch milliseconds.
    state : EscalationState
        Result of the previous evaluation.
    authenticated : bool
        Dispatcher session flag; False forces silence.

    Returns
    -------
    (EscalationDecision, EscalationState)
    """
    if not authenticated:
        decision = EscalationDecision(stop_alarm=not state.idle)
        return decision, dataclasses.replace(
            state, timer_active=False, audible_active=False, ringing=False,
        )

    alerts = list(alerts)
    has_new = any(a.status == AlertStatus.NEW for a in alerts)
    long_ids = tuple(a.id for a in find_long_unresolved(alerts, now))
    should_ring = has_new or bool(long_ids)

    broadcast = bool(long_ids) and now - state.last_broadcast_ms > BROADCAST_DEBOUNCE_MS
    last_broadcast = now if broadcast else state.last_broadcast_ms

    if should_ring:
        decision = EscalationDecision(
            has_new=has_new,
            long_unresolved=long_ids,
            should_ring=True,
            broadcast=broadcast,
            start_alarm_cycle=not state.audible_active,
            start_timer=not state.timer_active,
        )
        next_state = EscalationState(
            last_broadcast_ms=last_broadcast,
            timer_active=True,
            audible_active=True,
            ringing=True,
        )
    else:
        decision = EscalationDecision(
            has_new=False,
            long_unresolved=(),
            should_ring=False,
            broadcast=False,
            stop_alarm=not state.idle,
        )
        next_state = EscalationState(last_broadcast_ms=last_broadcast)

    return decision, next_state


# ═══════════════════════════════════════════════════════════════════════════
# Executor
# ═══════════════════════════════════════════════════════════════════════════

class EscalationEngine:
    """
    Runs decide() on every snapshot and on a repeating timer, and turns
    decisions into alarm output and background broadcasts.

    Must be driven from inside a running event loop.

    Usage:
        engine = EscalationEngine(notifier, LoggingAlarmOutput())
        engine.set_authenticated(True)
        unsubscribe = store.subscribe(engine.on_snapshot)
        ...
        unsubscribe()
        await engine.shutdown()
    """

    def __init__(
        self,
        notifier: Optional[PushNotifier] = None,
        output: Optional[AlarmOutput] = None,
        *,
        clock: Callable[[], int] = now_ms,
        reevaluate_seconds: float = REEVALUATE_INTERVAL_SECONDS,
        alarm_burst_seconds: float = ALARM_BURST_SECONDS,
    ):
        self._notifier = notifier
        self.output = output or LoggingAlarmOutput()
        self._clock = clock
        self._interval = reevaluate_seconds
        self._burst_seconds = alarm_burst_seconds

        self._state = EscalationState()
        self._alerts: List[Alert] = []
        self._authenticated = False
        self._closed = False

        self._timer_task: Optional[asyncio.Task] = None
        self._burst_task: Optional[asyncio.Task] = None
        self._broadcasts: Set[asyncio.Task] = set()

    # ── Introspection ──

    @property
    def state(self) -> EscalationState:
        return self._state

    @property
    def ringing(self) -> bool:
        return self._state.ringing

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def has_pending_timers(self) -> bool:
        return any(
            t is not None and not t.done()
            for t in (self._timer_task, self._burst_task)
        )

    # ── Inputs ──

    def set_authenticated(self, authenticated: bool) -> EscalationDecision:
        self._authenticated = authenticated
        return self.evaluate()

    def on_snapshot(self, alerts: Iterable[Alert]) -> EscalationDecision:
        self._alerts = list(alerts)
        return self.evaluate()

    def evaluate(self) -> EscalationDecision:
        if self._closed:
            decision, _ = decide(
                self._alerts, self._clock(), self._state, authenticated=False,
            )
            return decision

        decision, self._state = decide(
            self._alerts, self._clock(), self._state,
            authenticated=self._authenticated,
        )
        self._apply(decision)
        return decision

    # ── Effects ──

    def _apply(self, decision: EscalationDecision) -> None:
        loop = asyncio.get_running_loop()

        if decision.stop_alarm:
            self._cancel_timers()
            self.output.stop_audible()
            self.output.set_ringing(False)
            logger.info("Alarm cleared — no new or long-unresolved alerts")

        if decision.broadcast:
            logger.warning(
                "%d alert(s) unresolved for over an hour — re-notifying dispatchers",
                len(decision.long_unresolved),
            )
            task = loop.create_task(self._broadcast(len(decision.long_unresolved)))
            self._broadcasts.add(task)
            task.add_done_callback(self._broadcasts.discard)

        if decision.should_ring:
            self.output.set_ringing(True)

        if decision.start_alarm_cycle:
            self.output.start_audible()
            self._burst_task = loop.create_task(self._end_burst())

        if decision.start_timer and (self._timer_task is None or self._timer_task.done()):
            self._timer_task = loop.create_task(self._run_timer())

    async def _end_burst(self) -> None:
        try:
            await asyncio.sleep(self._burst_seconds)
        finally:
            # A cancelled burst may already have been replaced by a new one
            if self._burst_task is asyncio.current_task():
                self._burst_task = None
                self.output.stop_audible()
                self._state = dataclasses.replace(self._state, audible_active=False)

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            decision = self.evaluate()
            if not decision.should_ring:
                return

    async def _broadcast(self, count: int) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.broadcast(pending_critical(count))
        except Exception as exc:
            logger.warning("Pending-critical broadcast failed: %s", exc)

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._timer_task, self._burst_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        self._timer_task = None
        self._burst_task = None

    # ── Teardown ──

    async def shutdown(self) -> None:
        """Cancel every timer and silence output immediately."""
        self._closed = True
        pending = [t for t in (self._timer_task, self._burst_task) if t is not None]
        self._cancel_timers()
        self.output.stop_audible()
        self.output.set_ringing(False)
        self._state = dataclasses.replace(
            self._state, timer_active=False, audible_active=False, ringing=False,
        )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._broadcasts:
            await asyncio.gather(*list(self._broadcasts), return_exceptions=True)
