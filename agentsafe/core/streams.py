"""
Bounded event/alert store feeding the liquidation monitor.

Keeps the most recent protocol events and the liquidation alerts derived
from them in fixed-capacity ring buffers. Nothing here is persisted and
nothing here fails: eviction of the oldest entry is the only way the store
stays within memory bounds.
"""

import threading
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime
from itertools import islice
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from . import config
from .schema import LiquidationAlert, LiquidationIntent, RiskLevel, StreamEvent, utcnow
from ..util.logging import logger


def _make_id(prefix: str, now: datetime) -> str:
    return f"{prefix}_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:7]}"


def parse_wei(value: Any) -> Optional[int]:
    """Parse a decimal or 0x-prefixed wei amount. Returns None when unknown or malformed."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            return None
    return None


def classify_risk(health_factor: float,
                  critical_below: float = None,
                  warning_up_to: float = None) -> RiskLevel:
    """Safe above the warning band, Critical strictly below the critical threshold."""
    critical_below = config.LIQUIDATION_CRITICAL_HF if critical_below is None else critical_below
    warning_up_to = config.LIQUIDATION_WARNING_HF if warning_up_to is None else warning_up_to

    if health_factor < critical_below:
        return RiskLevel.CRITICAL
    if health_factor <= warning_up_to:
        return RiskLevel.WARNING
    return RiskLevel.SAFE


def derive_alert(event: StreamEvent,
                 per_tx_cap_wei: int = None,
                 daily_cap_wei: int = None,
                 critical_below: float = None,
                 warning_up_to: float = None) -> Optional[LiquidationAlert]:
    """
    Derive a liquidation alert from a stream event, or None below Critical.

    The suggested amount is the event's shortfall. It is never clamped to the
    per-transaction ceiling; exceeding it only clears ``per_tx_cap_respected``.
    The returned alert has an empty id until it is appended to a store.
    """
    per_tx_cap_wei = config.PER_TX_CAP_WEI if per_tx_cap_wei is None else per_tx_cap_wei
    daily_cap_wei = config.DAILY_CAP_WEI if daily_cap_wei is None else daily_cap_wei

    risk = classify_risk(event.health_factor, critical_below, warning_up_to)
    if risk != RiskLevel.CRITICAL:
        return None

    raw_shortfall = (event.raw or {}).get("shortfallAmount")
    shortfall_wei = parse_wei(raw_shortfall)

    per_tx_cap_respected = shortfall_wei <= per_tx_cap_wei if shortfall_wei is not None else True
    note = None
    if shortfall_wei is not None and shortfall_wei > daily_cap_wei:
        note = "Above advisory daily cap (no rolling enforcement)"

    if shortfall_wei is not None and shortfall_wei > 0:
        intent = LiquidationIntent.LIQUIDATION_REPAY
    else:
        intent = LiquidationIntent.LIQUIDATION_ADD_COLLATERAL

    return LiquidationAlert(
        id="",
        timestamp=event.timestamp,
        event_id=event.id,
        health_factor=event.health_factor,
        protocol=event.protocol,
        debt_position=event.debt_position,
        intent=intent,
        per_tx_cap_respected=per_tx_cap_respected,
        risk_level=risk,
        shortfall_amount=str(raw_shortfall) if shortfall_wei is not None else None,
        daily_advisory_cap_note=note,
    )


class StreamStore:
    """Fixed-capacity, newest-first buffers for raw events and derived alerts."""

    def __init__(self, max_events: int = None, max_alerts: int = None,
                 clock: Callable[[], datetime] = utcnow):
        self.max_events = config.MAX_EVENTS if max_events is None else max_events
        self.max_alerts = config.MAX_ALERTS if max_alerts is None else max_alerts
        if self.max_events < 1 or self.max_alerts < 1:
            raise ValueError("Buffer capacities must be >= 1")

        # appendleft on a bounded deque drops from the right: newest at index 0
        self._events: Deque[StreamEvent] = deque(maxlen=self.max_events)
        self._alerts: Deque[LiquidationAlert] = deque(maxlen=self.max_alerts)
        self._lock = threading.Lock()
        self._clock = clock
        self._total_received = 0

    def append_event(self, event: StreamEvent) -> StreamEvent:
        """Assign an id and insert at the head, evicting the oldest event if full."""
        stored = replace(event, id=_make_id("ev", self._clock()))
        with self._lock:
            self._events.appendleft(stored)
            self._total_received += 1
        return stored

    def append_alert(self, alert: LiquidationAlert) -> LiquidationAlert:
        """Assign an id and insert at the head, evicting the oldest alert if full."""
        stored = replace(alert, id=_make_id("alert", self._clock()))
        with self._lock:
            self._alerts.appendleft(stored)
        logger.log_liquidation_alert(stored.id, stored.event_id, stored.health_factor,
                                     stored.intent.value, stored.per_tx_cap_respected)
        return stored

    def ingest(self, health_factor: float, protocol: str, debt_position: str,
               chain_id: int = None, raw: Dict[str, Any] = None,
               timestamp: datetime = None) -> Tuple[StreamEvent, Optional[LiquidationAlert]]:
        """Store a new protocol event and any alert derived from it."""
        event = self.append_event(StreamEvent(
            id="",
            timestamp=timestamp or self._clock(),
            health_factor=health_factor,
            protocol=protocol,
            debt_position=debt_position,
            chain_id=chain_id,
            raw=dict(raw or {}),
        ))

        alert = derive_alert(event)
        if alert is not None:
            alert = self.append_alert(alert)
        return event, alert

    def get_recent_events(self, limit: int = 20) -> List[StreamEvent]:
        if limit <= 0:
            return []
        with self._lock:
            return list(islice(self._events, limit))

    def get_recent_alerts(self, limit: int = 20) -> List[LiquidationAlert]:
        if limit <= 0:
            return []
        with self._lock:
            return list(islice(self._alerts, limit))

    def status(self) -> Dict[str, int]:
        with self._lock:
            return {
                "total_received": self._total_received,
                "events_count": len(self._events),
                "alerts_count": len(self._alerts),
                "max_events": self.max_events,
                "max_alerts": self.max_alerts,
            }
