"""
EmailCampaign model for bulk sends.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, Index
from sqlalchemy.sql import func
from mailqueue.core.database import Base
import enum


class CampaignType(str, enum.Enum):
    PROMOTIONAL = "PROMOTIONAL"
    INFORMATIONAL = "INFORMATIONAL"
    REMINDER = "REMINDER"
    ANNOUNCEMENT = "ANNOUNCEMENT"
    NEWSLETTER = "NEWSLETTER"
    EVENT_UPDATE = "EVENT_UPDATE"
    REGISTRATION_FOLLOWUP = "REGISTRATION_FOLLOWUP"


class CampaignStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"
    SENT = "SENT"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class TargetAudience(str, enum.Enum):
    ALL = "ALL"
    INDIVIDUAL_REGISTRATIONS = "INDIVIDUAL_REGISTRATIONS"
    TEAM_REGISTRATIONS = "TEAM_REGISTRATIONS"
    RECENT_REGISTRATIONS = "RECENT_REGISTRATIONS"


class EmailCampaign(Base):
    __tablename__ = "email_campaigns"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    campaign_type = Column(Enum(CampaignType), nullable=False, index=True)
    status = Column(Enum(CampaignStatus), nullable=False, default=CampaignStatus.DRAFT, index=True)
    target_audience = Column(String(100), nullable=False, default=TargetAudience.ALL.value)
    scheduled_date = Column(DateTime(timezone=True), nullable=True)
    sent_date = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(100), nullable=False, default="admin")

    # Statistics, recomputed from email_queue rows
    total_recipients = Column(Integer, nullable=False, default=0)
    emails_sent = Column(Integer, nullable=False, default=0)
    emails_failed = Column(Integer, nullable=False, default=0)
    emails_pending = Column(Integer, nullable=False, default=0)

    # Campaign settings
    priority = Column(Integer, nullable=False, default=5)  # 1 = highest, 10 = lowest
    max_retry_attempts = Column(Integer, nullable=False, default=3)

    created_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_date = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<EmailCampaign(id={self.id}, name={self.name}, status={self.status})>"


Index('idx_email_campaigns_status_scheduled', EmailCampaign.status, EmailCampaign.scheduled_date)
