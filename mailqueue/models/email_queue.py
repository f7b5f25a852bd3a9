"""
Email Queue Model
=================

One row per email to deliver. Rows are never deleted; they form the audit
trail of every transactional and campaign send.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, Index, ForeignKey
from sqlalchemy.sql import func
from mailqueue.core.database import Base
import enum


class EmailType(str, enum.Enum):
    """Email types supported by the queue system."""
    REGISTRATION_CONFIRMATION = "REGISTRATION_CONFIRMATION"
    APPLICATION_APPROVAL = "APPLICATION_APPROVAL"
    ADMIN_NOTIFICATION = "ADMIN_NOTIFICATION"
    CAMPAIGN = "CAMPAIGN"
    STATUS_UPDATE = "STATUS_UPDATE"
    REMINDER = "REMINDER"
    CANCELLATION = "CANCELLATION"
    WELCOME = "WELCOME"
    EVENT_UPDATE = "EVENT_UPDATE"


class EmailStatus(str, enum.Enum):
    """Email processing status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({EmailStatus.SENT, EmailStatus.FAILED, EmailStatus.CANCELLED})


class EmailQueue(Base):
    """
    Email Queue Model

    Stores emails to be sent together with their delivery state, retry
    budget and the campaign they belong to, if any.
    """
    __tablename__ = "email_queue"

    # Primary key
    id = Column(Integer, primary_key=True, index=True)

    # Recipient
    recipient_email = Column(String(255), nullable=False, index=True)
    recipient_name = Column(String(255), nullable=False)

    # Content
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    email_type = Column(Enum(EmailType), nullable=False, index=True)

    # Scheduling and status
    status = Column(Enum(EmailStatus), nullable=False, default=EmailStatus.PENDING, index=True)
    priority = Column(Integer, nullable=False, default=5)  # 1 = highest, 10 = lowest
    scheduled_date = Column(DateTime(timezone=True), nullable=False, index=True)
    sent_date = Column(DateTime(timezone=True), nullable=True)
    claimed_date = Column(DateTime(timezone=True), nullable=True)

    # Retry and error handling
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)

    # References
    campaign_id = Column(Integer, ForeignKey("email_campaigns.id"), nullable=True, index=True)
    registration_id = Column(Integer, nullable=True, index=True)

    # Timestamps
    created_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_date = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    def __repr__(self):
        return f"<EmailQueue(id={self.id}, email={self.recipient_email}, type={self.email_type}, status={self.status})>"


# Indexes for the due-entry poll
Index('idx_email_queue_status_scheduled', EmailQueue.status, EmailQueue.scheduled_date)
Index('idx_email_queue_campaign_status', EmailQueue.campaign_id, EmailQueue.status)
