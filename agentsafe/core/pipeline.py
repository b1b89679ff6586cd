"""
Safety pipeline - deterministic PASS/BLOCK verdict for a proposed action.

Stages run strictly in order and short-circuit: once a stage fails, every
later stage stays PENDING and the run's reason is the first failure. The
pipeline reads the budget ledger (projection only) and never commits spend,
so evaluating the same proposal repeatedly has no side effects.
"""

import hashlib
import json
import re
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from . import config
from .budget import BudgetLedger
from .schema import (
    ActionKind,
    LiquidationIntent,
    PipelineRun,
    StageResult,
    StageState,
    utcnow,
)
from .streams import parse_wei
from ..util.logging import logger


ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
HEX_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})*$")

ALLOWED_TEMPLATES = ("base-miniapp-v1",)
ALLOWED_CAPABILITIES = ("erc20_transfer", "uniswap_swap", "simple_nft_mint")

# (flag, pattern, weight) - scored over proposal / deployment text
POLICY_FLAGS = (
    ("treasury_risk", re.compile(r"treasury|fund|budget|mint|drain"), 30),
    ("governance_power_shift", re.compile(r"quorum|threshold|admin|owner|upgrade|proxy"), 25),
    ("urgency", re.compile(r"emergency|urgent|immediate|critical"), 20),
    ("supply_inflation", re.compile(r"mint|inflate|supply"), 15),
)

DEFENSIVE_KINDS = frozenset({ActionKind.LIQUIDATION_PROTECT, ActionKind.APPROVAL_REVOKE})

SUPPORT_LABELS = {0: "AGAINST", 1: "FOR", 2: "ABSTAIN"}


def fingerprint(kind: ActionKind, payload: Dict[str, Any]) -> str:
    """Stable identity of a proposal, independent of payload key order."""
    normalized = json.dumps({"kind": ActionKind(kind).value, "payload": payload},
                            sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


def score_policy_flags(text: str) -> Tuple[int, List[str]]:
    """Deterministic keyword risk score of free text."""
    lower = (text or "").lower()
    score = 0
    flags = []
    for flag, pattern, weight in POLICY_FLAGS:
        if pattern.search(lower):
            flags.append(flag)
            score += weight
    return score, flags


@dataclass(frozen=True)
class SimulationResult:
    success: bool
    gas_estimate: str = "0"
    detail: Optional[str] = None


def tag_similarity(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
    """Overlap of two tag sets (case-insensitive), 0..1. Two empty sets are identical."""
    set_a = {t.lower() for t in tags_a}
    set_b = {t.lower() for t in tags_b}
    if not set_a and not set_b:
        return 1.0
    return len(set_a & set_b) / len(set_a | set_b)


class RecentIdeas:
    """Bounded memory of tag sets from recently queued deployments."""

    def __init__(self, max_ideas: int = None, threshold: float = None):
        self.threshold = config.NOVELTY_SIMILARITY_THRESHOLD if threshold is None else threshold
        self._ideas = deque(maxlen=config.MAX_RECENT_IDEAS if max_ideas is None else max_ideas)
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._ideas)

    def closest(self, tags: Iterable[str]) -> float:
        tags = list(tags)
        with self._lock:
            return max((tag_similarity(tags, past) for past in self._ideas), default=0.0)

    def admit(self, tags: Iterable[str]) -> Tuple[bool, float]:
        """Remember ``tags`` unless a recent idea is too similar. Returns (admitted, closest similarity)."""
        tags = frozenset(t.lower() for t in tags)
        with self._lock:
            similarity = max((tag_similarity(tags, past) for past in self._ideas), default=0.0)
            if similarity >= self.threshold:
                return False, similarity
            self._ideas.append(tags)
            return True, similarity


def simulate_consistency(kind: ActionKind, payload: Dict[str, Any]) -> SimulationResult:
    """Offline consistency check standing in for a chain simulation."""
    if kind == ActionKind.LIQUIDATION_PROTECT:
        calldata = payload.get("calldata", "0x")
        if not isinstance(calldata, str) or not HEX_RE.match(calldata):
            return SimulationResult(False, detail="calldata is not 0x-prefixed even-length hex")
        amount = payload.get("amount_wei")
        if amount is not None:
            parsed = parse_wei(amount)
            if parsed is None or parsed < 0:
                return SimulationResult(False, detail=f"amount_wei is not a valid amount: {amount!r}")
        return SimulationResult(True, gas_estimate=str(21000 + 16 * (len(calldata) - 2) // 2))

    return SimulationResult(True, gas_estimate="21000")


@dataclass(frozen=True)
class StageContext:
    kind: ActionKind
    payload: Dict[str, Any]
    cost_usd: float


StageCheck = Callable[[StageContext], Tuple[bool, Optional[str]]]


@dataclass
class Stage:
    name: str
    check: StageCheck
    kinds: Optional[FrozenSet[ActionKind]] = None  # None applies to every kind

    def applies_to(self, kind: ActionKind) -> bool:
        return self.kinds is None or kind in self.kinds


def _tags(payload: Dict[str, Any]) -> List[str]:
    tags = payload.get("tags") or []
    return [t for t in tags if isinstance(t, str)] if isinstance(tags, list) else []


class SafetyPipeline:
    """
    Ordered policy evaluator.

    The canonical stages are capability -> policy -> budget -> simulation.
    APP_DEPLOY also runs a novelty stage before budget. Further stages can
    be registered per action kind.
    """

    def __init__(self,
                 ledger: BudgetLedger,
                 simulator: Callable[[ActionKind, Dict[str, Any]], SimulationResult] = simulate_consistency,
                 contract_allowlist: Iterable[str] = None,
                 contract_denylist: Iterable[str] = None,
                 policy_block_score: int = None,
                 default_cost_usd: float = None,
                 action_costs_usd: Dict[Any, float] = None,
                 recent_ideas: RecentIdeas = None,
                 clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.simulator = simulator
        self.contract_allowlist = {a.lower() for a in (config.CONTRACT_ALLOWLIST if contract_allowlist is None else contract_allowlist)}
        self.contract_denylist = {a.lower() for a in (config.CONTRACT_DENYLIST if contract_denylist is None else contract_denylist)}
        self.policy_block_score = config.POLICY_BLOCK_SCORE if policy_block_score is None else policy_block_score
        self.default_cost_usd = config.DEFAULT_ACTION_COST_USD if default_cost_usd is None else default_cost_usd
        costs = config.ACTION_COST_USD if action_costs_usd is None else action_costs_usd
        self.action_costs_usd = {ActionKind(k): float(v) for k, v in costs.items()}
        self.recent_ideas = recent_ideas if recent_ideas is not None else RecentIdeas()
        self._clock = clock

        self.stages: List[Stage] = [
            Stage("capability", self._check_capability),
            Stage("policy", self._check_policy),
            Stage("budget", self._check_budget),
            Stage("simulation", self._check_simulation),
        ]
        self.register_stage("novelty", self._check_novelty, kinds=[ActionKind.APP_DEPLOY], before="budget")

    def register_stage(self, name: str, check: StageCheck,
                       kinds: Iterable[ActionKind] = None, before: str = None):
        """Add a stage, optionally restricted to some kinds and placed before an existing stage."""
        if any(s.name == name for s in self.stages):
            raise ValueError(f"Stage already registered: {name}")

        stage = Stage(name, check, frozenset(ActionKind(k) for k in kinds) if kinds else None)
        if before is None:
            self.stages.append(stage)
            return

        for index, existing in enumerate(self.stages):
            if existing.name == before:
                self.stages.insert(index, stage)
                return
        raise ValueError(f"Unknown stage: {before}")

    def resolve_cost(self, kind: ActionKind, payload: Dict[str, Any]) -> float:
        """Server-side cost for the kind. A payload ``cost_usd`` is an estimate that can only raise it."""
        cost = self.action_costs_usd.get(kind, float(self.default_cost_usd))
        estimate = payload.get("cost_usd")
        if isinstance(estimate, (int, float)) and not isinstance(estimate, bool):
            return max(cost, float(estimate))
        return cost

    def admit_queued(self, kind, payload: Dict[str, Any]) -> Optional[str]:
        """
        Record a proposal that is about to be queued for later novelty checks.

        Returns a block reason when a deployment queued since the proposal was
        evaluated makes it too similar, otherwise None.
        """
        if ActionKind(kind) != ActionKind.APP_DEPLOY:
            return None
        admitted, similarity = self.recent_ideas.admit(_tags(payload))
        if admitted:
            return None
        return f"novelty: {self._novelty_reason(similarity)}"

    def _novelty_reason(self, similarity: float) -> str:
        return f"Too similar to a recent idea ({similarity * 100:.0f}% >= {self.recent_ideas.threshold * 100:.0f}%)"

    def evaluate(self, kind, payload: Dict[str, Any]) -> PipelineRun:
        """Evaluate a proposed action. Pure given the inputs and the ledger snapshot."""
        kind = ActionKind(kind)
        payload = dict(payload or {})
        context = StageContext(kind=kind, payload=payload, cost_usd=self.resolve_cost(kind, payload))

        applicable = [s for s in self.stages if s.applies_to(kind)]
        results: List[StageResult] = []
        failed = False

        for stage in applicable:
            if failed:
                results.append(StageResult(stage.name))
                continue

            try:
                passed, detail = stage.check(context)
            except Exception as e:
                # Fail closed
                passed, detail = False, f"{type(e).__name__}: {e}"

            results.append(StageResult(stage.name, StageState.PASS if passed else StageState.FAIL, detail))
            failed = not passed

        run = PipelineRun(
            id=str(uuid.uuid4()),
            kind=kind,
            fingerprint=fingerprint(kind, payload),
            cost_usd=context.cost_usd,
            created_at=self._clock(),
            stages=tuple(results),
        )

        logger.log_pipeline_run(run.id, kind.value, run.verdict.value, run.reason,
                                [f"{s.name}={s.result.value}" for s in run.stages])
        return run

    # Stage checks

    def _check_capability(self, ctx: StageContext) -> Tuple[bool, Optional[str]]:
        payload = ctx.payload

        cost = payload.get("cost_usd")
        if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0):
            return False, "cost_usd must be a non-negative number"

        if ctx.kind == ActionKind.VOTE:
            proposal_id = payload.get("proposal_id")
            if not isinstance(proposal_id, str) or not proposal_id.strip():
                return False, "proposal_id is required"
            support = payload.get("support")
            if isinstance(support, bool) or support not in (0, 1, 2):
                return False, f"support must be one of {sorted(SUPPORT_LABELS)}"
            return True, f"vote {SUPPORT_LABELS[support]} on {proposal_id}"

        if ctx.kind == ActionKind.APP_DEPLOY:
            template_id = payload.get("template_id")
            if template_id not in ALLOWED_TEMPLATES:
                return False, f"Template {template_id} not in allowlist"
            capabilities = payload.get("capabilities", [])
            if not isinstance(capabilities, list):
                return False, "capabilities must be a list"
            for capability in capabilities:
                if capability not in ALLOWED_CAPABILITIES:
                    return False, f"Capability \"{capability}\" not allowlisted"
            tags = payload.get("tags", [])
            if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
                return False, "tags must be a list of strings"
            return True, f"template {template_id} with {len(capabilities)} capabilities"

        if ctx.kind == ActionKind.LIQUIDATION_PROTECT:
            intent = payload.get("intent")
            if intent not in [i.value for i in LiquidationIntent]:
                return False, f"intent must be a liquidation intent, got {intent!r}"
            return self._check_contract(payload.get("target"), "target")

        if ctx.kind == ActionKind.APPROVAL_REVOKE:
            for field_name in ("token", "spender"):
                value = payload.get(field_name)
                if not isinstance(value, str) or not ADDRESS_RE.match(value):
                    return False, f"{field_name} must be a 20-byte hex address"
            return self._check_contract(payload.get("token"), "token")

        return False, f"No capability rule for {ctx.kind.value}"

    def _check_contract(self, address: Any, field_name: str) -> Tuple[bool, Optional[str]]:
        if not isinstance(address, str) or not ADDRESS_RE.match(address):
            return False, f"{field_name} must be a 20-byte hex address"
        lowered = address.lower()
        if lowered in self.contract_denylist:
            return False, f"{field_name} {address} is denylisted"
        if self.contract_allowlist and lowered not in self.contract_allowlist:
            return False, f"{field_name} {address} is not allowlisted"
        return True, f"{field_name} {address} allowed"

    def _check_policy(self, ctx: StageContext) -> Tuple[bool, Optional[str]]:
        payload = ctx.payload

        if payload.get("urgent") is True and ctx.kind not in DEFENSIVE_KINDS:
            return False, "Urgency flag set on a non-defensive action"

        text = " ".join(str(payload.get(k, "")) for k in ("title", "body", "description"))
        score, flags = score_policy_flags(text)
        summary = f"score {score}" + (f" ({', '.join(flags)})" if flags else "")

        if ctx.kind == ActionKind.VOTE and payload.get("support") == 1 and score >= self.policy_block_score:
            return False, f"Voting FOR a high-risk proposal, {summary}"

        if ctx.kind == ActionKind.APP_DEPLOY and score >= self.policy_block_score:
            return False, f"Deployment description is high-risk, {summary}"

        if ctx.kind == ActionKind.LIQUIDATION_PROTECT and payload.get("per_tx_cap_respected") is False:
            # advisory only
            return True, f"{summary}; suggested amount exceeds per-tx cap (advisory)"

        return True, summary

    def _check_novelty(self, ctx: StageContext) -> Tuple[bool, Optional[str]]:
        similarity = self.recent_ideas.closest(_tags(ctx.payload))
        if similarity >= self.recent_ideas.threshold:
            return False, self._novelty_reason(similarity)
        return True, f"closest recent idea {similarity * 100:.0f}%"

    def _check_budget(self, ctx: StageContext) -> Tuple[bool, Optional[str]]:
        check = self.ledger.can_spend(ctx.cost_usd)
        if not check.allowed:
            return False, check.reason
        if check.runway_advisory:
            return True, f"advisory: {check.reason}"
        return True, f"{ctx.cost_usd:.2f} USD within budget"

    def _check_simulation(self, ctx: StageContext) -> Tuple[bool, Optional[str]]:
        result = self.simulator(ctx.kind, ctx.payload)
        if not result.success:
            return False, result.detail or "Simulation failed"
        return True, f"gas estimate {result.gas_estimate}"
