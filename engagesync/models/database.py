from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    Text,
    Date,
    DateTime,
    Float,
    JSON,
    UniqueConstraint,
)
from engagesync.core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncConnection(Base):
    """One external platform connection per workspace."""

    __tablename__ = "sync_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)  # "phoneburner", "nocodb"
    api_key = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sync_status = Column(String, nullable=False, default="idle")  # idle, syncing, complete, error, partial
    sync_progress = Column(JSON, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_full_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("workspace_id", "platform", name="uix_connection_workspace_platform"),)


class ExternalContact(Base):
    """Contact record pulled from a dialer platform."""

    __tablename__ = "external_contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=True)
    company = Column(String, nullable=True)
    category_id = Column(String, nullable=True)
    date_added = Column(DateTime, nullable=True)
    lead_id = Column(Integer, nullable=True, index=True)
    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("workspace_id", "platform", "external_id", name="uix_contact_workspace_platform_external"),)


class DialSession(Base):
    """A dialer session; calls are fetched per session from its detail endpoint."""

    __tablename__ = "dial_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)
    member_id = Column(String, nullable=True)
    member_name = Column(String, nullable=True)
    caller_id = Column(String, nullable=True)
    start_at = Column(DateTime, nullable=True)
    end_at = Column(DateTime, nullable=True)
    call_count = Column(Integer, nullable=True)
    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("workspace_id", "external_id", name="uix_session_workspace_external"),)


class Call(Base):
    """A single dial attempt with its disposition classification."""

    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)
    dial_session_id = Column(String, nullable=True, index=True)  # DialSession.external_id
    external_contact_id = Column(String, nullable=True, index=True)
    lead_id = Column(Integer, nullable=True, index=True)
    member_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    start_at = Column(DateTime, nullable=True, index=True)
    end_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    disposition = Column(String, nullable=True)
    disposition_id = Column(String, nullable=True)
    outcome = Column(String, nullable=True)
    is_connected = Column(Boolean, nullable=False, default=False)
    is_conversation = Column(Boolean, nullable=False, default=False)
    is_dm_conversation = Column(Boolean, nullable=False, default=False)
    is_voicemail = Column(Boolean, nullable=False, default=False)
    is_meeting = Column(Boolean, nullable=False, default=False)
    is_bad_data = Column(Boolean, nullable=False, default=False)
    email_sent = Column(Boolean, nullable=False, default=False)
    recording_url = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("workspace_id", "external_id", name="uix_call_workspace_external"),)


class ScoredCall(Base):
    """Scored call record imported from the tabular data source."""

    __tablename__ = "scored_calls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)
    call_title = Column(String, nullable=True)
    call_url = Column(String, nullable=True)
    date_time = Column(DateTime, nullable=True, index=True)
    host_email = Column(String, nullable=True)
    all_participants = Column(Text, nullable=True)
    duration = Column(Integer, nullable=True)
    transcript_text = Column(Text, nullable=True)
    call_summary = Column(Text, nullable=True)
    seller_interest_score = Column(Float, nullable=True)
    objection_handling_score = Column(Float, nullable=True)
    objection_resolution_rate = Column(Float, nullable=True)
    valuation_discussion_score = Column(Float, nullable=True)
    rapport_building_score = Column(Float, nullable=True)
    value_proposition_score = Column(Float, nullable=True)
    conversation_quality_score = Column(Float, nullable=True)
    script_adherence_score = Column(Float, nullable=True)
    question_adherence_score = Column(Float, nullable=True)
    next_step_clarity_score = Column(Float, nullable=True)
    overall_quality_score = Column(Float, nullable=True)
    composite_score = Column(Float, nullable=True)
    employee_count = Column(Integer, nullable=True)
    objections_count = Column(Integer, nullable=True)
    objections_resolved_count = Column(Integer, nullable=True)
    questions_covered_count = Column(Integer, nullable=True)
    annual_revenue = Column(String, nullable=True)
    ebitda = Column(String, nullable=True)
    timeline_to_sell = Column(String, nullable=True)
    interest_in_selling = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    prospect_email = Column(String, nullable=True, index=True)
    lead_id = Column(Integer, nullable=True, index=True)
    raw_record = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("workspace_id", "external_id", name="uix_scored_call_workspace_external"),)


class DailyMetric(Base):
    """Aggregate per-member dialer usage for a day."""

    __tablename__ = "daily_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)
    member_id = Column(String, nullable=False)
    member_name = Column(String, nullable=True)
    total_sessions = Column(Integer, nullable=False, default=0)
    total_calls = Column(Integer, nullable=False, default=0)
    calls_connected = Column(Integer, nullable=False, default=0)
    voicemails_left = Column(Integer, nullable=False, default=0)
    emails_sent = Column(Integer, nullable=False, default=0)
    total_talk_time_seconds = Column(Integer, nullable=False, default=0)
    synced_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("workspace_id", "date", "member_id", name="uix_metric_workspace_date_member"),)


class Lead(Base):
    """Canonical workspace contact, independent of source platform."""

    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    company = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    platform = Column(String, nullable=False)  # platform whose linker created the lead
    phoneburner_contact_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("workspace_id", "email", name="uix_lead_workspace_email"),)
