"""
feed.py — Feed reconciliation & view projection for the dispatcher console.

Turns the full-snapshot subscription into a stable, paginated view:

    snapshot ──▶ validity filter ──▶ tab filter ──▶ sort ──▶ reveal window
        │
        └──────▶ 24 h rolling statistics (unfiltered)

Validity filter
    contact number longer than 5 characters AND timestamp after the
    deployment sanity threshold. Malformed or test records are dropped
    silently; one bad record never breaks the feed.

Tabs
    pending  = status != resolved
    resolved = status == resolved

Sort
    newest first by creation timestamp. The `float_new` variant floats
    status == new to the top before applying the time order.

Incremental reveal
    visible_count starts at 20 and grows by 20 on each "near end of
    scroll" signal; switching tabs resets it (and the scroll position).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from sos_relay.app.alerts.models import Alert, AlertStatus, now_ms

logger = logging.getLogger(__name__)

PAGE_SIZE = 20
MIN_CONTACT_LENGTH = 6
STATS_WINDOW_MS = 24 * 60 * 60 * 1000

# 2024-01-01T00:00:00Z, first deployment
VALID_SINCE_MS = 1_704_067_200_000


class FeedTab(str, Enum):
    PENDING  = "pending"
    RESOLVED = "resolved"

    def matches(self, alert: Alert) -> bool:
        return alert.is_resolved == (self is FeedTab.RESOLVED)


def is_displayable(alert: Alert) -> bool:
    """Guard against malformed and test records."""
    return (
        len(alert.contact_number or "") >= MIN_CONTACT_LENGTH
        and alert.timestamp > VALID_SINCE_MS
    )


def project(
    alerts: Iterable[Alert],
    tab: FeedTab,
    *,
    float_new: bool = False,
) -> List[Alert]:
    """Valid alerts of one tab, newest first."""
    selected = [a for a in alerts if is_displayable(a) and tab.matches(a)]
    if float_new:
        selected.sort(key=lambda a: (a.status != AlertStatus.NEW, -a.timestamp))
    else:
        selected.sort(key=lambda a: a.timestamp, reverse=True)
    return selected


@dataclass(frozen=True)
class FeedStats:
    """Counts over the last 24 hours of the unfiltered snapshot."""
    total: int = 0
    pending: int = 0
    resolved: int = 0

    @classmethod
    def compute(cls, alerts: Iterable[Alert], now: int) -> "FeedStats":
        cutoff = now - STATS_WINDOW_MS
        recent = [a for a in alerts if a.timestamp > cutoff]
        resolved = sum(1 for a in recent if a.is_resolved)
        return cls(total=len(recent), pending=len(recent) - resolved, resolved=resolved)

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "pending": self.pending, "resolved": self.resolved}


class FeedView:
    """
    Dispatcher-side projection of the live alert collection.

    Holds no authoritative state: everything is recomputed from the last
    snapshot, so replaying the same snapshot is always safe.
    """

    def __init__(
        self,
        tab: FeedTab = FeedTab.PENDING,
        *,
        float_new: bool = False,
        page_size: int = PAGE_SIZE,
    ):
        self.tab = tab
        self.float_new = float_new
        self.page_size = page_size
        self.visible_count = page_size
        self.scroll_position = 0
        self.stats = FeedStats()
        self._snapshot: List[Alert] = []
        self._processed: List[Alert] = []

    def apply_snapshot(self, alerts: Iterable[Alert], now: Optional[int] = None) -> None:
        self._snapshot = list(alerts)
        self.stats = FeedStats.compute(self._snapshot, now if now is not None else now_ms())
        self._reproject()

    def _reproject(self) -> None:
        self._processed = project(self._snapshot, self.tab, float_new=self.float_new)

    @property
    def processed_alerts(self) -> List[Alert]:
        return list(self._processed)

    @property
    def visible_alerts(self) -> List[Alert]:
        return self._processed[: self.visible_count]

    @property
    def has_more(self) -> bool:
        return self.visible_count < len(self._processed)

    def load_more(self) -> int:
        """Handle a "near end of scroll" signal; returns the new visible count."""
        self.visible_count += self.page_size
        return self.visible_count

    def switch_tab(self, tab: FeedTab) -> None:
        self.tab = FeedTab(tab)
        self.visible_count = self.page_size
        self.scroll_position = 0
        self._reproject()

    def tab_counts(self) -> Dict[str, int]:
        """Badge counts for both tabs (valid alerts only)."""
        valid = [a for a in self._snapshot if is_displayable(a)]
        return {tab.value: sum(1 for a in valid if tab.matches(a)) for tab in FeedTab}

    def find(self, alert_id: str) -> Optional[Alert]:
        """Look up an alert in the last snapshot (read-only selection)."""
        for alert in self._snapshot:
            if alert.id == alert_id:
                return alert
        return None

    def to_dict(self) -> dict:
        return {
            "tab": self.tab.value,
            "visible_count": self.visible_count,
            "has_more": self.has_more,
            "alerts": [a.to_dict() for a in self.visible_alerts],
            "tab_counts": self.tab_counts(),
            "stats_24h": self.stats.to_dict(),
        }
