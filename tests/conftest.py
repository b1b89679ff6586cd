"""
Shared fixtures: a controllable clock, a recording executor and a wired governor.
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from agentsafe.core.budget import BudgetLedger
from agentsafe.core.errors import ExecutorError
from agentsafe.core.executor import IExecutor
from agentsafe.core.governor import ActionGovernor, GovernorRuntime
from agentsafe.core.pipeline import RecentIdeas, SafetyPipeline
from agentsafe.core.schema import ExecutionReceipt
from agentsafe.core.store import InMemoryActionStore
from agentsafe.core.streams import StreamStore


START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

TOKEN = "0x" + "a" * 40
SPENDER = "0x" + "b" * 40
TARGET = "0x" + "c" * 40


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float = 0, **kwargs):
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class RecordingExecutor(IExecutor):
    """Records every call; can be told to fail or to stall."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.delay_sec = 0.0
        self._lock = threading.Lock()

    def execute(self, action):
        with self._lock:
            self.calls.append(action.id)
        if self.delay_sec:
            time.sleep(self.delay_sec)
        if self.fail_with is not None:
            raise self.fail_with
        return ExecutionReceipt(tx_hash=f"0x{len(self.calls):064x}", receipt=f"receipt-{action.id}")


def vote_payload(**overrides):
    payload = {
        "proposal_id": "prop-1",
        "space": "agentsafe.eth",
        "support": 0,
        "title": "Adjust grants cadence",
        "cost_usd": 5,
    }
    payload.update(overrides)
    return payload


def revoke_payload(**overrides):
    payload = {"token": TOKEN, "spender": SPENDER, "cost_usd": 2}
    payload.update(overrides)
    return payload


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_executor():
    return RecordingExecutor()


@pytest.fixture
def ledger(clock):
    return BudgetLedger(
        treasury_usd=500,
        per_action_cap_usd=50,
        daily_burn_usd=200,
        min_runway_days=3,
        clock=clock,
    )


@pytest.fixture
def pipeline(ledger, clock):
    return SafetyPipeline(
        ledger,
        contract_allowlist=[],
        contract_denylist=[],
        policy_block_score=50,
        default_cost_usd=10,
        action_costs_usd={"VOTE": 1, "APP_DEPLOY": 10, "LIQUIDATION_PROTECT": 1, "APPROVAL_REVOKE": 1},
        recent_ideas=RecentIdeas(max_ideas=3, threshold=0.85),
        clock=clock,
    )


@pytest.fixture
def action_store():
    return InMemoryActionStore()


@pytest.fixture
def governor(action_store, pipeline, ledger, recording_executor, clock):
    return ActionGovernor(
        action_store,
        pipeline,
        ledger,
        recording_executor,
        veto_window_sec=600,
        expiry_grace_sec=0,
        executor_timeout_sec=2.0,
        max_cached_runs=8,
        clock=clock,
    )


@pytest.fixture
def runtime(governor, action_store, pipeline, ledger, recording_executor, clock):
    return GovernorRuntime(
        ledger=ledger,
        pipeline=pipeline,
        store=action_store,
        executor=recording_executor,
        governor=governor,
        streams=StreamStore(max_events=5, max_alerts=3, clock=clock),
    )
