"""
Action governor - Recommend -> Queue -> Veto window -> Execute.

Every risk-bearing action passes the safety pipeline, waits out a mandatory
veto window and is executed at most once. Execute and veto on the same
action id are serialised by a keyed lock, and every status write is a
compare-and-set against QUEUED, so a veto that wins the lock always wins.
Policy refusals are returned as typed rejections; nothing here raises for
an expected outcome.
"""

import math
import threading
import time
import uuid
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from . import config
from .budget import BudgetLedger
from .errors import ExecutorError, IllegalTransitionError
from .executor import IExecutor, call_with_timeout
from .pipeline import SafetyPipeline, fingerprint
from .schema import (
    STATUS_REJECTIONS,
    ActionKind,
    ActionOutcome,
    ActionStatus,
    ExecutionResult,
    PipelineRun,
    QueuedAction,
    QueueOutcome,
    Rejection,
    RejectionCode,
    Verdict,
    utcnow,
)
from .store import IActionStore
from .streams import StreamStore
from ..util.logging import audit_event, logger, sanitize_payload


class ActionGovernor:
    """State machine over queued actions, backed by an action store."""

    def __init__(self,
                 store: IActionStore,
                 pipeline: SafetyPipeline,
                 ledger: BudgetLedger,
                 executor: IExecutor,
                 veto_window_sec: int = None,
                 expiry_grace_sec: int = None,
                 executor_timeout_sec: float = None,
                 max_cached_runs: int = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.pipeline = pipeline
        self.ledger = ledger
        self.executor = executor
        self.veto_window = timedelta(seconds=config.VETO_WINDOW_SEC if veto_window_sec is None else veto_window_sec)
        self.expiry_grace_sec = config.ACTION_EXPIRY_GRACE_SEC if expiry_grace_sec is None else expiry_grace_sec
        self.executor_timeout_sec = config.EXECUTOR_TIMEOUT_SEC if executor_timeout_sec is None else executor_timeout_sec
        self._clock = clock

        self.max_cached_runs = config.MAX_CACHED_RUNS if max_cached_runs is None else max_cached_runs

        # fingerprint -> latest run, least recently used first
        self._latest_runs: "OrderedDict[str, PipelineRun]" = OrderedDict()
        self._runs_lock = threading.Lock()
        # action id -> [lock, holders]; removed when nobody holds or waits
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @property
    def expiry_enabled(self) -> bool:
        return self.expiry_grace_sec > 0

    @contextmanager
    def _lock_for(self, action_id: str):
        """Hold the per-action lock. The entry is dropped once the last holder leaves."""
        with self._locks_guard:
            entry = self._locks.get(action_id)
            if entry is None:
                entry = self._locks[action_id] = [threading.Lock(), 0]
            entry[1] += 1

        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[action_id]

    def _audit(self, actor: str, operation: str, action_id: Optional[str], payload: Dict[str, Any] = None):
        details = {"action_id": action_id} if action_id else {}
        if payload:
            details.update(sanitize_payload(payload))
        self.store.add_event(actor, operation, details)
        audit_event(operation, {"actor": actor, "action_id": action_id or "-"}, payload)

    def _reject(self, operation: str, action_id: Optional[str], code: RejectionCode, reason: str) -> Rejection:
        logger.log_rejection(operation, action_id, code.value, reason)
        self._audit("governor", f"{operation}.rejected", action_id, {"code": code.value, "reason": reason})
        return Rejection(code, reason)

    def _transition(self, action: QueuedAction, updated: QueuedAction, actor: str) -> Optional[QueuedAction]:
        """
        Move ``action`` from QUEUED to a terminal status.

        Returns the stored action, or None if another writer changed the
        status first. Any other transition is a programming error.
        """
        if action.status != ActionStatus.QUEUED or not updated.status.is_terminal:
            raise IllegalTransitionError(
                f"Illegal transition {action.status.value} -> {updated.status.value}", action.id)

        if not self.store.compare_and_set(updated, ActionStatus.QUEUED):
            return None

        logger.log_action_transition(action.id, action.kind.value, action.status.value, updated.status.value)
        self._audit(actor, f"action.{updated.status.value.lower()}", action.id, {"kind": action.kind.value})
        return updated

    def _status_rejection(self, operation: str, action: QueuedAction) -> Rejection:
        code = STATUS_REJECTIONS[action.status]
        return self._reject(operation, action.id, code, f"Action is {action.status.value}")

    def _load(self, action_id: str, now: datetime) -> Optional[QueuedAction]:
        """Read an action, expiring it first if it outlived the grace period. Caller holds the key lock."""
        action = self.store.get(action_id)
        if action is None or not self.expiry_enabled or action.status != ActionStatus.QUEUED:
            return action

        if now <= action.execute_after + timedelta(seconds=self.expiry_grace_sec):
            return action

        expired = replace(action, status=ActionStatus.EXPIRED, updated_at=now)
        stored = self._transition(action, expired, "system")
        return stored if stored is not None else self.store.get(action_id)

    # Operations

    def recommend(self, kind, payload: Dict[str, Any]) -> PipelineRun:
        """Evaluate a proposal and remember the run for its fingerprint. Never creates an action."""
        run = self.pipeline.evaluate(kind, payload)
        with self._runs_lock:
            self._latest_runs[run.fingerprint] = run
            self._latest_runs.move_to_end(run.fingerprint)
            while len(self._latest_runs) > self.max_cached_runs:
                self._latest_runs.popitem(last=False)
        self._audit("agent", "recommend", None, {
            "run_id": run.id,
            "kind": run.kind.value,
            "verdict": run.verdict.value,
        })
        return run

    def latest_run(self, kind, payload: Dict[str, Any]) -> Optional[PipelineRun]:
        key = fingerprint(ActionKind(kind), dict(payload or {}))
        with self._runs_lock:
            run = self._latest_runs.get(key)
            if run is not None:
                self._latest_runs.move_to_end(key)
            return run

    def queue(self, kind, payload: Dict[str, Any]) -> QueueOutcome:
        """
        Queue a proposal whose most recent pipeline run passed.

        The run is consumed: queuing the same proposal again evaluates it afresh.
        """
        kind = ActionKind(kind)
        payload = dict(payload or {})

        run = self.latest_run(kind, payload)
        if run is None:
            run = self.recommend(kind, payload)

        if run.verdict == Verdict.BLOCK:
            rejection = self._reject("queue", None, RejectionCode.SAFETY_BLOCKED, run.reason or "Blocked")
            return QueueOutcome(run=run, rejection=rejection)

        conflict = self.pipeline.admit_queued(kind, payload)
        if conflict is not None:
            rejection = self._reject("queue", None, RejectionCode.SAFETY_BLOCKED, conflict)
            return QueueOutcome(run=run, rejection=rejection)

        now = self._clock()
        action = QueuedAction(
            id=str(uuid.uuid4()),
            kind=kind,
            payload=payload,
            cost_usd=run.cost_usd,
            run_id=run.id,
            created_at=now,
            execute_after=now + self.veto_window,
            updated_at=now,
        )
        self.store.insert(action)
        with self._runs_lock:
            self._latest_runs.pop(run.fingerprint, None)

        logger.log_action_transition(action.id, kind.value, None, ActionStatus.QUEUED.value, {
            "run_id": run.id,
            "execute_after": action.execute_after.isoformat(),
        })
        self._audit("agent", "action.queued", action.id, {"kind": kind.value, "run_id": run.id})
        return QueueOutcome(run=run, action=action)

    def veto(self, action_id: str, reason: str = None) -> ActionOutcome:
        """Veto a queued action. Idempotent on an already vetoed action."""
        with self._lock_for(action_id):
            now = self._clock()
            action = self._load(action_id, now)
            if action is None:
                return ActionOutcome(rejection=self._reject("veto", action_id, RejectionCode.NOT_FOUND, "Action not found"))

            if action.status == ActionStatus.VETOED:
                return ActionOutcome(action=action)
            if action.status != ActionStatus.QUEUED:
                return ActionOutcome(action=action, rejection=self._status_rejection("veto", action))

            vetoed = replace(action, status=ActionStatus.VETOED, vetoed_at=now, veto_reason=reason, updated_at=now)
            stored = self._transition(action, vetoed, "reviewer")
            if stored is None:
                current = self.store.get(action_id)
                if current.status == ActionStatus.VETOED:
                    return ActionOutcome(action=current)
                return ActionOutcome(action=current, rejection=self._status_rejection("veto", current))
            return ActionOutcome(action=stored)

    def execute(self, action_id: str) -> ExecutionResult:
        """
        Execute a queued action whose veto window has elapsed.

        Checks run under the action's lock, in order: status, veto window,
        budget hold. A rejection changes nothing. The executor is then called
        once with a bounded timeout; on failure the hold is released and the
        action stays QUEUED.
        """
        with self._lock_for(action_id):
            now = self._clock()
            action = self._load(action_id, now)
            if action is None:
                return ExecutionResult(rejection=self._reject("execute", action_id, RejectionCode.NOT_FOUND, "Action not found"))

            if action.status != ActionStatus.QUEUED:
                return ExecutionResult(action=action, rejection=self._status_rejection("execute", action))

            if now < action.execute_after:
                remaining = math.ceil((action.execute_after - now).total_seconds())
                return ExecutionResult(action=action, rejection=self._reject(
                    "execute", action.id, RejectionCode.TOO_EARLY,
                    f"Veto window open for another {remaining}s"))

            check = self.ledger.reserve(action.id, action.cost_usd)
            if not check.allowed:
                return ExecutionResult(action=action, rejection=self._reject(
                    "execute", action.id, RejectionCode.BUDGET_EXCEEDED, check.reason))

            start_time = time.time()
            try:
                receipt = call_with_timeout(self.executor, action, self.executor_timeout_sec)
            except ExecutorError as e:
                self.ledger.release(action.id)
                logger.log_executor_failure(action.id, action.kind.value, e.message, (time.time() - start_time) * 1000)
                self._audit("executor", "execute.failed", action.id, {"error": e.message})
                return ExecutionResult(action=action, rejection=Rejection(RejectionCode.EXECUTOR_FAILED, e.message))

            executed_at = self._clock()
            executed = replace(
                action,
                status=ActionStatus.EXECUTED,
                executed_at=executed_at,
                execution_receipt=receipt.receipt,
                tx_hash=receipt.tx_hash,
                updated_at=executed_at,
            )
            stored = self._transition(action, executed, "executor")
            if stored is None:
                self.ledger.release(action.id)
                raise IllegalTransitionError("Action changed status while its execution was in flight", action.id)

            self.ledger.commit_spend(action.cost_usd, action.id)
            return ExecutionResult(action=stored, receipt=receipt.receipt, tx_hash=receipt.tx_hash)

    def get(self, action_id: str) -> Optional[QueuedAction]:
        with self._lock_for(action_id):
            return self._load(action_id, self._clock())

    def list_actions(self, status: ActionStatus = None, kind: ActionKind = None) -> List[QueuedAction]:
        """All actions newest first, optionally filtered. Stale actions are expired first."""
        if self.expiry_enabled:
            self.expire_stale()
        return self.store.list(
            ActionStatus(status) if status is not None else None,
            ActionKind(kind) if kind is not None else None,
        )

    def expire_stale(self, now: datetime = None) -> List[QueuedAction]:
        """Expire every QUEUED action past its grace period. No-op when expiry is disabled."""
        if not self.expiry_enabled:
            return []

        now = now or self._clock()
        expired = []
        for action in self.store.list(ActionStatus.QUEUED):
            with self._lock_for(action.id):
                current = self._load(action.id, now)
            if current is not None and current.status == ActionStatus.EXPIRED:
                expired.append(current)
        return expired


@dataclass
class GovernorRuntime:
    """Wired set of components shared by the API and the heartbeat."""
    ledger: BudgetLedger
    pipeline: SafetyPipeline
    store: IActionStore
    executor: IExecutor
    governor: ActionGovernor
    streams: StreamStore


def build_runtime(store: IActionStore = None,
                  executor: IExecutor = None,
                  clock: Callable[[], datetime] = utcnow) -> GovernorRuntime:
    """Build the component graph from configuration."""
    ledger = BudgetLedger(clock=clock)
    pipeline = SafetyPipeline(ledger, clock=clock)
    store = store or config.get_action_store()
    executor = executor or config.get_executor()
    governor = ActionGovernor(store, pipeline, ledger, executor, clock=clock)
    streams = StreamStore(clock=clock)
    return GovernorRuntime(ledger, pipeline, store, executor, governor, streams)
