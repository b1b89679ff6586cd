"""
Request and response models for the governor API.
Request bodies use the camelCase field names clients send; responses are snake_case.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.schema import ActionKind


class ActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_kind: ActionKind = Field(alias="actionKind")
    payload: Dict[str, Any] = Field(default_factory=dict)


class VetoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_id: str = Field(alias="actionId")
    reason: Optional[str] = None

    @field_validator('action_id')
    @classmethod
    def action_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('actionId cannot be empty')
        return v

    @field_validator('reason')
    @classmethod
    def reason_must_be_short(cls, v):
        if v is not None and len(v) > 500:
            raise ValueError('reason must be at most 500 characters')
        return v


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_id: str = Field(alias="actionId")

    @field_validator('action_id')
    @classmethod
    def action_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('actionId cannot be empty')
        return v


class StreamWebhookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    health_factor: float = Field(alias="healthFactor")
    protocol: str
    debt_position: str = Field(alias="debtPosition")
    chain_id: Optional[int] = Field(default=None, alias="chainId")
    shortfall_amount: Optional[str] = Field(default=None, alias="shortfallAmount")
    raw: Optional[Dict[str, Any]] = None

    @field_validator('health_factor')
    @classmethod
    def health_factor_must_be_non_negative(cls, v):
        if v < 0:
            raise ValueError('healthFactor must be >= 0')
        return v

    @field_validator('protocol', 'debt_position')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('field cannot be empty')
        return v


class StageResultResponse(BaseModel):
    name: str
    result: str  # PENDING, PASS, FAIL
    detail: Optional[str] = None


class PipelineRunResponse(BaseModel):
    id: str
    kind: str
    fingerprint: str
    cost_usd: float
    created_at: datetime
    stages: List[StageResultResponse]
    verdict: str
    reason: Optional[str] = None


class QueuedActionResponse(BaseModel):
    id: str
    kind: str
    payload: Dict[str, Any]
    cost_usd: float
    run_id: str
    created_at: datetime
    execute_after: datetime
    status: str  # QUEUED, VETOED, EXECUTED, EXPIRED
    updated_at: Optional[datetime] = None
    vetoed_at: Optional[datetime] = None
    veto_reason: Optional[str] = None
    executed_at: Optional[datetime] = None
    execution_receipt: Optional[str] = None
    tx_hash: Optional[str] = None


class QueuedActionListResponse(BaseModel):
    actions: List[QueuedActionResponse]


class RejectionResponse(BaseModel):
    ok: bool = False
    code: str
    reason: str


class StreamEventResponse(BaseModel):
    id: str
    timestamp: datetime
    health_factor: float
    protocol: str
    debt_position: str
    chain_id: Optional[int] = None


class LiquidationAlertResponse(BaseModel):
    id: str
    timestamp: datetime
    event_id: str
    health_factor: float
    protocol: str
    debt_position: str
    intent: str
    per_tx_cap_respected: bool
    risk_level: str
    shortfall_amount: Optional[str] = None
    daily_advisory_cap_note: Optional[str] = None


class StreamEventListResponse(BaseModel):
    events: List[StreamEventResponse]


class LiquidationAlertListResponse(BaseModel):
    alerts: List[LiquidationAlertResponse]


class StreamWebhookResponse(BaseModel):
    ok: bool = True
    event: StreamEventResponse
    alert: Optional[LiquidationAlertResponse] = None


class StreamStatusResponse(BaseModel):
    total_received: int
    events_count: int
    alerts_count: int
    max_events: int
    max_alerts: int


class BudgetResponse(BaseModel):
    treasury_usd: float
    daily_burn_usd: float
    per_action_cap_usd: float
    spent_today_usd: float
    reserved_usd: float
    daily_remaining_usd: float
    remaining_usd: float
    period_start: datetime
    runway_days: Optional[float] = None  # None when nothing burns
    min_runway_days: float
    runway_advisory: bool


class AuditEventResponse(BaseModel):
    id: int
    ts: datetime
    actor: str
    action: str
    payload: Dict[str, Any]


class AuditListResponse(BaseModel):
    events: List[AuditEventResponse]


class HealthResponse(BaseModel):
    status: str
    version: str
    store_health: bool
    queued_count: int
    config_issues: List[str] = []
