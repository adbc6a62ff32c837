"""
Pydantic schemas for request/response validation.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator, model_validator

from faultline.alerts.channels import ChannelType, check_config
from faultline.errors import ChannelError
from faultline.models import IssueStatus, TriggerType

LEVELS = ("fatal", "error", "warning", "info", "debug")


def _normalize_level(value: str) -> str:
    level = (value or "").strip().lower()
    if level == "warn":
        level = "warning"
    if level == "critical":
        level = "fatal"
    if level not in LEVELS:
        raise ValueError(f"level must be one of {', '.join(LEVELS)}")
    return level


class StackFrame(BaseModel):
    """Schema for stacktrace frame."""
    filename: str = Field(..., max_length=500)
    function: Optional[str] = Field(None, max_length=200)
    lineno: Optional[int] = Field(None, ge=0)
    colno: Optional[int] = Field(None, ge=0)
    abs_path: Optional[str] = None


class ExceptionInfo(BaseModel):
    """Schema for exception information."""
    type: Optional[str] = Field(None, max_length=200)
    value: Optional[str] = Field(None, max_length=2000)
    stacktrace: List[StackFrame] = Field(default_factory=list)


class UserContext(BaseModel):
    id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None


class ErrorEventIn(BaseModel):
    """
    Error event as sent by the SDKs.

    Stack frames are ordered innermost first: frame 0 is where the error was raised.
    """
    event_id: str = Field(..., min_length=1, max_length=64)
    timestamp: datetime
    level: str = "error"
    platform: str = "unknown"
    message: str = Field(..., min_length=1)
    exception: Optional[ExceptionInfo] = None
    fingerprint: Optional[List[str]] = None
    environment: Optional[str] = None
    release: Optional[str] = None
    server_name: Optional[str] = None
    transaction: Optional[str] = None
    user: Optional[UserContext] = None
    tags: Optional[Dict[str, str]] = None

    class Config:
        extra = "allow"  # SDKs attach breadcrumbs, contexts, sdk info...

    @field_validator("level")
    @classmethod
    def check_level(cls, value: str) -> str:
        return _normalize_level(value)


class LogEventIn(BaseModel):
    level: str = "info"
    message: str
    logger: Optional[str] = None
    environment: Optional[str] = None
    service: Optional[str] = None
    request_id: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None

    @field_validator("level")
    @classmethod
    def check_level(cls, value: str) -> str:
        return _normalize_level(value)


class TraceIn(BaseModel):
    trace_id: str
    method: str
    path: str
    status_code: int = Field(..., ge=100, le=599)
    duration: float = Field(..., ge=0, description="Request duration in milliseconds")
    environment: Optional[str] = None
    user_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[datetime] = None


class IngestAccepted(BaseModel):
    event_id: Optional[str] = None
    count: Optional[int] = None
    status: str = "accepted"


class HeartbeatIn(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    platform: Optional[str] = None
    page_view: bool = False


class SessionResponse(BaseModel):
    session_id: str
    project_id: str
    user_id: Optional[str] = None
    platform: Optional[str] = None
    started_at: datetime
    last_activity: datetime
    ended_at: Optional[datetime] = None
    is_active: bool
    page_views: int

    class Config:
        from_attributes = True


class ActiveUsersResponse(BaseModel):
    now: int = 0
    last_5m: int = 0
    last_15m: int = 0
    last_30m: int = 0
    last_1h: int = 0
    today: int = 0
    this_week: int = 0
    this_month: int = 0


class IssueResponse(BaseModel):
    """Schema for issue response."""
    id: str
    project_id: str
    short_id: str
    fingerprint_hash: str
    title: str
    culprit: Optional[str] = None
    type: Optional[str] = None
    level: str
    platform: Optional[str] = None
    status: str
    first_seen: datetime
    last_seen: datetime
    event_count: int
    user_count: int
    environments: List[str] = []
    releases: List[str] = []
    sample_event_id: Optional[str] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class IssueStatusUpdate(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def check_status(cls, value: str) -> str:
        status = value.upper()
        if status not in IssueStatus.ALL:
            raise ValueError(f"status must be one of {', '.join(IssueStatus.ALL)}")
        return status


class IssueMergeRequest(BaseModel):
    source_ids: List[str] = Field(..., min_length=1)


class IssueStats(BaseModel):
    total: int = 0
    unresolved: int = 0
    resolved: int = 0
    ignored: int = 0
    by_level: Dict[str, int] = {}
    by_environment: Dict[str, int] = {}
    new_today: int = 0
    new_this_week: int = 0


class AlertAction(BaseModel):
    """One notification target of a rule."""
    type: ChannelType
    config: Dict[str, Any] = {}

    @model_validator(mode="after")
    def check_channel_config(self) -> "AlertAction":
        try:
            check_config(self.type, self.config)
        except ChannelError as e:
            raise ValueError(str(e))
        return self


class AlertRuleCreate(BaseModel):
    project_id: str
    name: str
    description: Optional[str] = None
    trigger_type: str
    conditions: Dict[str, Any] = {}
    threshold: int = Field(1, ge=1)
    time_window_seconds: int = Field(60, ge=1)
    environment: Optional[str] = None
    level: Optional[str] = None
    actions: List[AlertAction] = []
    cooldown_minutes: int = Field(30, ge=0)
    is_enabled: bool = True

    @field_validator("trigger_type")
    @classmethod
    def check_trigger_type(cls, value: str) -> str:
        trigger_type = value.upper()
        if trigger_type not in TriggerType.ALL:
            raise ValueError(f"trigger_type must be one of {', '.join(TriggerType.ALL)}")
        return trigger_type

    @field_validator("level")
    @classmethod
    def check_level(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_level(value).upper() if value else None


class AlertRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_enabled: Optional[bool] = None
    conditions: Optional[Dict[str, Any]] = None
    threshold: Optional[int] = Field(None, ge=1)
    time_window_seconds: Optional[int] = Field(None, ge=1)
    environment: Optional[str] = None
    level: Optional[str] = None
    actions: Optional[List[AlertAction]] = None
    cooldown_minutes: Optional[int] = Field(None, ge=0)

    @field_validator("level")
    @classmethod
    def check_level(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_level(value).upper() if value else None


class AlertRuleResponse(BaseModel):
    id: str
    project_id: str
    name: str
    description: Optional[str] = None
    trigger_type: str
    threshold: int
    time_window_seconds: int
    environment: Optional[str] = None
    level: Optional[str] = None
    actions: List[Dict[str, Any]] = []
    cooldown_minutes: int
    last_triggered_at: Optional[datetime] = None
    is_enabled: bool

    class Config:
        from_attributes = True


class AlertResponse(BaseModel):
    id: str
    alert_rule_id: str
    project_id: str
    issue_id: Optional[str] = None
    title: str
    message: str
    status: str
    triggered_at: datetime
    delivered_at: Optional[datetime] = None
    delivery_channel: Optional[str] = None
    delivery_status: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AlertDeliveryResponse(BaseModel):
    alert_id: str
    channel: str
    status: str
    error: Optional[str] = None
    attempted_at: datetime

    class Config:
        from_attributes = True


class MetricWindowResponse(BaseModel):
    project_id: str
    minute: datetime
    error_count: int
    warning_count: int
    log_count: int
    request_count: int
    avg_duration_ms: float
    p50_duration_ms: float
    p95_duration_ms: float
    p99_duration_ms: float
    status_2xx: int
    status_3xx: int
    status_4xx: int
    status_5xx: int
    error_rate: float

    class Config:
        from_attributes = True


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
