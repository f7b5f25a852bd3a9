"""
Email Campaign Pydantic Schemas
===============================
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Dict, Optional
from datetime import date, datetime
from mailqueue.models.email_campaign import CampaignType, CampaignStatus, TargetAudience
from mailqueue.utils.timezone import ensure_aware


class CampaignCreate(BaseModel):
    """Schema for creating a campaign."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    subject: str = Field(..., max_length=500)
    body: str
    campaign_type: CampaignType
    target_audience: str = TargetAudience.ALL.value
    priority: int = Field(default=5, ge=1, le=10)
    max_retry_attempts: int = Field(default=3, ge=1, le=10)
    created_by: str = "admin"

    @field_validator('name', 'subject', 'body', 'created_by')
    @classmethod
    def validate_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('cannot be empty')
        return v

    @field_validator('target_audience')
    @classmethod
    def validate_target_audience(cls, v):
        return (v or TargetAudience.ALL.value).strip().upper()


class CampaignUpdate(BaseModel):
    """Schema for updating a campaign that has not started sending."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    subject: Optional[str] = Field(None, min_length=1, max_length=500)
    body: Optional[str] = Field(None, min_length=1)
    campaign_type: Optional[CampaignType] = None
    target_audience: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=10)
    max_retry_attempts: Optional[int] = Field(None, ge=1, le=10)

    @field_validator('target_audience')
    @classmethod
    def validate_target_audience(cls, v):
        return v.strip().upper() if v else v


class Campaign(BaseModel):
    """Detached snapshot of one email_campaigns row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    subject: str
    body: str
    campaign_type: CampaignType
    status: CampaignStatus
    target_audience: str
    scheduled_date: Optional[datetime] = None
    sent_date: Optional[datetime] = None
    created_by: str
    total_recipients: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    emails_pending: int = 0
    priority: int = 5
    max_retry_attempts: int = 3
    created_date: datetime
    updated_date: Optional[datetime] = None

    @field_validator('scheduled_date', 'sent_date', 'created_date', 'updated_date')
    @classmethod
    def localize(cls, v):
        return ensure_aware(v)

    @property
    def can_be_sent(self) -> bool:
        return self.status in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)

    @property
    def is_active(self) -> bool:
        return self.status in (CampaignStatus.SENDING, CampaignStatus.SCHEDULED)

    @property
    def success_rate(self) -> float:
        if self.total_recipients == 0:
            return 0.0
        return self.emails_sent / self.total_recipients * 100

    @property
    def failure_rate(self) -> float:
        if self.total_recipients == 0:
            return 0.0
        return self.emails_failed / self.total_recipients * 100


class CampaignCounts(BaseModel):
    """Entry counts of one campaign grouped into the cached counters."""
    total: int = 0
    sent: int = 0
    failed: int = 0
    pending: int = 0
    cancelled: int = 0


class CampaignStats(BaseModel):
    """Aggregate statistics over all campaigns."""
    status_counts: Dict[str, int] = Field(default_factory=dict)
    type_counts: Dict[str, int] = Field(default_factory=dict)
    total_campaigns: int = 0
    active_campaigns: int = 0
    scheduled_campaigns: int = 0
    sent_campaigns: int = 0


class Recipient(BaseModel):
    """One addressee produced by a recipient resolver."""
    email: str
    name: str = ""
    team_name: Optional[str] = None
    registration_date: Optional[date] = None
    registration_id: Optional[int] = None
