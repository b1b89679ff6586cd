"""
Bounded event/alert store and liquidation alert derivation.
"""

import pytest
from datetime import timedelta

from agentsafe.core.schema import LiquidationIntent, RiskLevel, StreamEvent
from agentsafe.core.streams import StreamStore, classify_risk, derive_alert, parse_wei

from conftest import START


def make_event(health_factor, **raw):
    return StreamEvent(
        id="ev_test",
        timestamp=START,
        health_factor=health_factor,
        protocol="aave-v3",
        debt_position="0xdebt",
        raw=raw,
    )


class TestParseWei:
    """Wei parsing accepts decimal and hex, rejects everything else."""

    def test_decimal_and_hex(self):
        assert parse_wei("1000") == 1000
        assert parse_wei("0x10") == 16
        assert parse_wei(42) == 42
        assert parse_wei(3.0) == 3

    def test_unknown_or_malformed(self):
        assert parse_wei(None) is None
        assert parse_wei("") is None
        assert parse_wei("1.5") is None
        assert parse_wei("abc") is None
        assert parse_wei(True) is None
        assert parse_wei(2.5) is None


class TestClassifyRisk:

    def test_bands(self):
        assert classify_risk(0.95, 1.2, 1.5) == RiskLevel.CRITICAL
        assert classify_risk(1.19, 1.2, 1.5) == RiskLevel.CRITICAL
        assert classify_risk(1.2, 1.2, 1.5) == RiskLevel.WARNING
        assert classify_risk(1.5, 1.2, 1.5) == RiskLevel.WARNING
        assert classify_risk(1.51, 1.2, 1.5) == RiskLevel.SAFE


class TestDeriveAlert:
    """Alert derivation from a single event."""

    def test_critical_with_shortfall_repays(self):
        alert = derive_alert(make_event(0.95, shortfallAmount="500000000000000000"),
                             per_tx_cap_wei=10 ** 18, daily_cap_wei=5 * 10 ** 18)

        assert alert is not None
        assert alert.intent == LiquidationIntent.LIQUIDATION_REPAY
        assert alert.per_tx_cap_respected is True
        assert alert.shortfall_amount == "500000000000000000"
        assert alert.daily_advisory_cap_note is None
        assert alert.event_id == "ev_test"

    def test_critical_without_shortfall_adds_collateral(self):
        alert = derive_alert(make_event(0.95), per_tx_cap_wei=10 ** 18, daily_cap_wei=5 * 10 ** 18)

        assert alert.intent == LiquidationIntent.LIQUIDATION_ADD_COLLATERAL
        assert alert.per_tx_cap_respected is True
        assert alert.shortfall_amount is None

    def test_over_cap_is_flagged_not_clamped(self):
        shortfall = str(6 * 10 ** 18)
        alert = derive_alert(make_event(0.9, shortfallAmount=shortfall),
                             per_tx_cap_wei=10 ** 18, daily_cap_wei=5 * 10 ** 18)

        assert alert.per_tx_cap_respected is False
        assert alert.shortfall_amount == shortfall
        assert alert.daily_advisory_cap_note == "Above advisory daily cap (no rolling enforcement)"

    def test_warning_and_safe_produce_no_alert(self):
        assert derive_alert(make_event(1.3)) is None
        assert derive_alert(make_event(2.0)) is None


class TestStreamStore:
    """Capacity, eviction order and read limits."""

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            StreamStore(max_events=0, max_alerts=1)

    def test_evicts_oldest_and_reads_newest_first(self, clock):
        store = StreamStore(max_events=3, max_alerts=2, clock=clock)
        for i in range(5):
            clock.advance(1)
            store.ingest(2.0 + i, "aave-v3", f"pos-{i}")

        events = store.get_recent_events(10)
        assert len(events) == 3
        assert [e.debt_position for e in events] == ["pos-4", "pos-3", "pos-2"]
        assert store.status()["total_received"] == 5
        assert store.status()["events_count"] == 3

    def test_limit_is_min_of_limit_and_size(self, clock):
        store = StreamStore(max_events=10, max_alerts=10, clock=clock)
        for i in range(4):
            store.ingest(2.0, "aave-v3", f"pos-{i}")

        assert len(store.get_recent_events(2)) == 2
        assert len(store.get_recent_events(100)) == 4
        assert store.get_recent_events(0) == []
        assert store.get_recent_events(-1) == []

    def test_alert_buffer_bounded(self, clock):
        store = StreamStore(max_events=10, max_alerts=2, clock=clock)
        for i in range(4):
            store.ingest(0.9, "aave-v3", f"pos-{i}", raw={"shortfallAmount": "1"})

        alerts = store.get_recent_alerts(10)
        assert len(alerts) == 2
        assert [a.debt_position for a in alerts] == ["pos-3", "pos-2"]

    def test_critical_then_warning_scenario(self, clock):
        store = StreamStore(max_events=10, max_alerts=10, clock=clock)

        event, alert = store.ingest(0.95, "aave-v3", "pos", raw={"shortfallAmount": "1000"})
        assert alert is not None
        assert alert.intent == LiquidationIntent.LIQUIDATION_REPAY
        assert alert.event_id == event.id
        assert alert.id.startswith("alert_")

        clock.advance(timedelta(seconds=5).total_seconds())
        event2, alert2 = store.ingest(1.3, "aave-v3", "pos")
        assert alert2 is None

        recent = store.get_recent_events(10)
        assert [e.id for e in recent] == [event2.id, event.id]
        assert len(store.get_recent_alerts(10)) == 1

    def test_ids_are_unique(self, clock):
        store = StreamStore(max_events=50, max_alerts=1, clock=clock)
        ids = {store.ingest(2.0, "p", "d")[0].id for _ in range(20)}
        assert len(ids) == 20
