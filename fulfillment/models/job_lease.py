"""
JobLease and WebhookInboxEntry models

JobLease gives singleton semantics to periodic jobs running on several
instances. WebhookInboxEntry is the durable queue behind the tracking
webhook endpoint.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index, Enum as SQLEnum
import enum

from fulfillment.core.database import Base


class JobLease(Base):
    __tablename__ = "job_leases"

    job_name = Column(String(100), primary_key=True)
    holder = Column(String(100), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=True)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_result = Column(JSON, nullable=True)


class InboxStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FLAGGED = "flagged"  # malformed or unmatched, needs a human
    FAILED = "failed"


class WebhookInboxEntry(Base):
    __tablename__ = "webhook_inbox"
    __table_args__ = (
        Index("ix_webhook_inbox_status_received", "status", "received_at"),
    )

    id = Column(Integer, primary_key=True)
    carrier = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=True)
    raw_body = Column(Text, nullable=True)
    status = Column(SQLEnum(InboxStatus), default=InboxStatus.PENDING, nullable=False)
    result = Column(String(50), nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    processed_at = Column(DateTime(timezone=True), nullable=True)
