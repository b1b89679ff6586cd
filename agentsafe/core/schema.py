"""
Core records for the action governor: queued actions, pipeline runs,
stream events, liquidation alerts and the typed outcomes returned to callers.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    """Wall clock used by every component unless a clock is injected."""
    return datetime.now(timezone.utc)


class ActionKind(str, Enum):
    VOTE = "VOTE"
    LIQUIDATION_PROTECT = "LIQUIDATION_PROTECT"
    APPROVAL_REVOKE = "APPROVAL_REVOKE"
    APP_DEPLOY = "APP_DEPLOY"


class ActionStatus(str, Enum):
    QUEUED = "QUEUED"
    VETOED = "VETOED"
    EXECUTED = "EXECUTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not ActionStatus.QUEUED


class StageState(str, Enum):
    PENDING = "PENDING"
    PASS = "PASS"
    FAIL = "FAIL"


class Verdict(str, Enum):
    PASS = "PASS"
    BLOCK = "BLOCK"


class RiskLevel(str, Enum):
    SAFE = "SAFE"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class LiquidationIntent(str, Enum):
    LIQUIDATION_REPAY = "LIQUIDATION_REPAY"
    LIQUIDATION_ADD_COLLATERAL = "LIQUIDATION_ADD_COLLATERAL"


class RejectionCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    TOO_EARLY = "TOO_EARLY"
    VETOED = "VETOED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    ALREADY_EXECUTED = "ALREADY_EXECUTED"
    SAFETY_BLOCKED = "SAFETY_BLOCKED"
    EXPIRED = "EXPIRED"
    EXECUTOR_FAILED = "EXECUTOR_FAILED"


# Terminal status -> rejection code reported by execute/veto
STATUS_REJECTIONS = {
    ActionStatus.VETOED: RejectionCode.VETOED,
    ActionStatus.EXECUTED: RejectionCode.ALREADY_EXECUTED,
    ActionStatus.EXPIRED: RejectionCode.EXPIRED,
}


@dataclass
class QueuedAction:
    id: str
    kind: ActionKind
    payload: Dict[str, Any]
    cost_usd: float
    run_id: str
    created_at: datetime
    execute_after: datetime
    status: ActionStatus = ActionStatus.QUEUED
    updated_at: Optional[datetime] = None
    vetoed_at: Optional[datetime] = None
    veto_reason: Optional[str] = None
    executed_at: Optional[datetime] = None
    execution_receipt: Optional[str] = None
    tx_hash: Optional[str] = None

    def is_executable_at(self, now: datetime) -> bool:
        return self.status == ActionStatus.QUEUED and now >= self.execute_after

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage and API responses."""
        data = asdict(self)
        data['kind'] = self.kind.value
        data['status'] = self.status.value
        for key in ('created_at', 'execute_after', 'updated_at', 'vetoed_at', 'executed_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'QueuedAction':
        """Create from dictionary (for loading from storage)."""
        data = dict(data)
        data['kind'] = ActionKind(data['kind'])
        data['status'] = ActionStatus(data['status'])
        for key in ('created_at', 'execute_after', 'updated_at', 'vetoed_at', 'executed_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


@dataclass(frozen=True)
class StageResult:
    name: str
    result: StageState = StageState.PENDING
    detail: Optional[str] = None


@dataclass(frozen=True)
class PipelineRun:
    """One immutable evaluation of a proposed action."""
    id: str
    kind: ActionKind
    fingerprint: str
    cost_usd: float
    created_at: datetime
    stages: Tuple[StageResult, ...]

    @property
    def verdict(self) -> Verdict:
        if self.stages and all(s.result == StageState.PASS for s in self.stages):
            return Verdict.PASS
        return Verdict.BLOCK

    @property
    def failed_stage(self) -> Optional[StageResult]:
        for stage in self.stages:
            if stage.result == StageState.FAIL:
                return stage
        return None

    @property
    def reason(self) -> Optional[str]:
        failed = self.failed_stage
        if failed is None:
            return None if self.stages else "No stages configured"
        return f"{failed.name}: {failed.detail}" if failed.detail else failed.name

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "fingerprint": self.fingerprint,
            "cost_usd": self.cost_usd,
            "created_at": self.created_at.isoformat(),
            "stages": [
                {"name": s.name, "result": s.result.value, "detail": s.detail}
                for s in self.stages
            ],
            "verdict": self.verdict.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class StreamEvent:
    id: str
    timestamp: datetime
    health_factor: float
    protocol: str
    debt_position: str
    chain_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LiquidationAlert:
    id: str
    timestamp: datetime
    event_id: str
    health_factor: float
    protocol: str
    debt_position: str
    intent: LiquidationIntent
    per_tx_cap_respected: bool
    risk_level: RiskLevel = RiskLevel.CRITICAL
    shortfall_amount: Optional[str] = None
    daily_advisory_cap_note: Optional[str] = None


@dataclass
class AuditEvent:
    id: int
    ts: datetime
    actor: str
    action: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "ts": self.ts.isoformat(),
            "actor": self.actor,
            "action": self.action,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class Rejection:
    code: RejectionCode
    reason: str


@dataclass
class QueueOutcome:
    run: PipelineRun
    action: Optional[QueuedAction] = None
    rejection: Optional[Rejection] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None


@dataclass
class ActionOutcome:
    action: Optional[QueuedAction] = None
    rejection: Optional[Rejection] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None


@dataclass
class ExecutionReceipt:
    tx_hash: str
    receipt: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    action: Optional[QueuedAction] = None
    receipt: Optional[str] = None
    tx_hash: Optional[str] = None
    rejection: Optional[Rejection] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None

    def to_dict(self) -> Dict:
        if self.rejection:
            return {"ok": False, "code": self.rejection.code.value, "reason": self.rejection.reason}
        return {
            "ok": True,
            "receipt": self.receipt,
            "txHash": self.tx_hash,
            "action": self.action.to_dict() if self.action else None,
        }
