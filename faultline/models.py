"""
SQLAlchemy models for the database.
"""
import uuid
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from faultline.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class IssueStatus:
    UNRESOLVED = "UNRESOLVED"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"

    ALL = (UNRESOLVED, RESOLVED, IGNORED)


class AlertStatus:
    TRIGGERED = "TRIGGERED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class TriggerType:
    NEW_ISSUE = "NEW_ISSUE"
    ISSUE_REGRESSION = "ISSUE_REGRESSION"
    THRESHOLD = "THRESHOLD"
    SPIKE = "SPIKE"
    CUSTOM = "CUSTOM"

    ALL = (NEW_ISSUE, ISSUE_REGRESSION, THRESHOLD, SPIKE, CUSTOM)


class RawEvent(Base):
    """
    Model for storing ingested error events. Rows are immutable once stored,
    except for the issue link written after aggregation.
    """
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, unique=True, index=True, nullable=False)
    project_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    level = Column(String, nullable=False)  # Upper case: FATAL, ERROR, WARNING, INFO, DEBUG
    platform = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    exception_type = Column(String, nullable=True)
    exception_value = Column(Text, nullable=True)
    stack_frames = Column(JSON, nullable=True)
    fingerprint = Column(JSON, nullable=True)
    fingerprint_hash = Column(String, nullable=False, index=True)
    explicit_fingerprint = Column(Boolean, nullable=False, default=False)
    environment = Column(String, nullable=True)
    release = Column(String, nullable=True)
    server_name = Column(String, nullable=True)
    transaction = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)
    issue_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<RawEvent(id={self.id}, event_id={self.event_id}, project_id={self.project_id})>"


class LogRecord(Base):
    """Log lines shipped by SDKs; only counted by the metrics rollup."""
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    level = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    logger = Column(String, nullable=True)
    environment = Column(String, nullable=True)
    service = Column(String, nullable=True)
    request_id = Column(String, nullable=True)
    attributes = Column(JSON, nullable=True)


class TraceRecord(Base):
    """HTTP request traces."""
    __tablename__ = "traces"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    trace_id = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    method = Column(String, nullable=False)
    path = Column(Text, nullable=False)
    status_code = Column(Integer, nullable=False)
    duration_ms = Column(Float, nullable=False)
    environment = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)


class Issue(Base):
    """
    Aggregate of all events sharing a fingerprint within a project.
    One row per (project_id, fingerprint_hash); writes replace the whole row.
    """
    __tablename__ = "issues"
    __table_args__ = (
        UniqueConstraint("project_id", "fingerprint_hash", name="uq_issue_project_fingerprint"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, nullable=False, index=True)
    fingerprint_hash = Column(String, nullable=False)
    fingerprint = Column(JSON, nullable=True)
    short_id = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    culprit = Column(Text, nullable=True)
    type = Column(String, nullable=True)
    level = Column(String, nullable=False)
    platform = Column(String, nullable=True)
    status = Column(String, nullable=False, default=IssueStatus.UNRESOLVED)
    first_seen = Column(DateTime, nullable=False)
    last_seen = Column(DateTime, nullable=False)
    event_count = Column(Integer, nullable=False, default=0)
    user_count = Column(Integer, nullable=False, default=0)
    environments = Column(JSON, nullable=False, default=list)
    releases = Column(JSON, nullable=False, default=list)
    sample_event_id = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Issue(id={self.id}, short_id={self.short_id}, status={self.status})>"


class AlertRule(Base):
    """Alert rule owned by a project; evaluated independently of other rules."""
    __tablename__ = "alert_rules"

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String, nullable=False)
    conditions = Column(JSON, nullable=False, default=dict)
    threshold = Column(Integer, nullable=False, default=1)
    time_window_seconds = Column(Integer, nullable=False, default=60)
    environment = Column(String, nullable=True)
    level = Column(String, nullable=True)
    actions = Column(JSON, nullable=False, default=list)  # [{"type": "slack", "config": {...}}]
    cooldown_minutes = Column(Integer, nullable=False, default=30)
    last_triggered_at = Column(DateTime, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<AlertRule(id={self.id}, trigger_type={self.trigger_type}, enabled={self.is_enabled})>"


class Alert(Base):
    """
    One firing of a rule. History is immutable except status and delivery fields.
    """
    __tablename__ = "alerts"

    id = Column(String, primary_key=True, default=_uuid)
    alert_rule_id = Column(String, ForeignKey("alert_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String, nullable=False, index=True)
    issue_id = Column(String, nullable=True)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=AlertStatus.TRIGGERED)
    triggered_at = Column(DateTime, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    delivery_channel = Column(String, nullable=True)  # Last attempted channel
    delivery_status = Column(String, nullable=True)  # success | partial | failed
    acknowledged_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Alert(id={self.id}, rule={self.alert_rule_id}, status={self.status})>"


class AlertDelivery(Base):
    """Outcome of one notification attempt for an alert."""
    __tablename__ = "alert_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    alert_id = Column(String, ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False, index=True)
    channel = Column(String, nullable=False)
    status = Column(String, nullable=False)  # success | failed
    error = Column(Text, nullable=True)
    attempted_at = Column(DateTime, nullable=False)


class MetricWindow(Base):
    """One-minute rollup; replaced, never accumulated, per (project_id, minute)."""
    __tablename__ = "metrics_1m"
    __table_args__ = (
        UniqueConstraint("project_id", "minute", name="uq_metrics_project_minute"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    minute = Column(DateTime, nullable=False)
    error_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)
    log_count = Column(Integer, nullable=False, default=0)
    request_count = Column(Integer, nullable=False, default=0)
    avg_duration_ms = Column(Float, nullable=False, default=0.0)
    p50_duration_ms = Column(Float, nullable=False, default=0.0)
    p95_duration_ms = Column(Float, nullable=False, default=0.0)
    p99_duration_ms = Column(Float, nullable=False, default=0.0)
    status_2xx = Column(Integer, nullable=False, default=0)
    status_3xx = Column(Integer, nullable=False, default=0)
    status_4xx = Column(Integer, nullable=False, default=0)
    status_5xx = Column(Integer, nullable=False, default=0)
    error_rate = Column(Float, nullable=False, default=0.0)


class UserSession(Base):
    """Client session kept alive by heartbeats."""
    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint("project_id", "session_id", name="uq_session_project_session"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    started_at = Column(DateTime, nullable=False)
    last_activity = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)  # Can go stale; see ActiveSessionTracker.is_live
    page_views = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<UserSession(session_id={self.session_id}, project_id={self.project_id})>"
