"""
Email Queue Pydantic Schemas
============================

Input validation for enqueue requests and the plain records the store
hands back to services (never live ORM rows).
"""

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from typing import Dict, Optional
from datetime import datetime
from mailqueue.models.email_queue import EmailType, EmailStatus, TERMINAL_STATUSES
from mailqueue.utils.timezone import ensure_aware


class EmailQueueCreate(BaseModel):
    """Schema for creating a new email queue entry."""
    recipient_email: EmailStr
    recipient_name: str = Field("", max_length=255)
    subject: str = Field(..., max_length=500)
    body: str
    email_type: EmailType
    scheduled_date: Optional[datetime] = None  # If None, due immediately
    max_attempts: int = Field(default=3, ge=1, le=10)
    priority: int = Field(default=5, ge=1, le=10)
    campaign_id: Optional[int] = None
    registration_id: Optional[int] = None

    @field_validator('subject', 'body')
    @classmethod
    def validate_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('cannot be empty')
        return v

    @field_validator('recipient_name')
    @classmethod
    def validate_recipient_name(cls, v):
        return v.strip()

    @field_validator('scheduled_date')
    @classmethod
    def validate_scheduled_date(cls, v):
        return ensure_aware(v)


class QueueEntry(BaseModel):
    """Detached snapshot of one email_queue row."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    recipient_email: str
    recipient_name: str
    subject: str
    body: str
    email_type: EmailType
    status: EmailStatus
    priority: int = 5
    scheduled_date: datetime
    sent_date: Optional[datetime] = None
    claimed_date: Optional[datetime] = None
    attempt_count: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    campaign_id: Optional[int] = None
    registration_id: Optional[int] = None
    created_date: datetime
    updated_date: Optional[datetime] = None

    @field_validator('scheduled_date', 'sent_date', 'claimed_date', 'created_date', 'updated_date')
    @classmethod
    def localize(cls, v):
        return ensure_aware(v)

    @property
    def is_pending(self) -> bool:
        return self.status == EmailStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        """Manual retry is only allowed from FAILED."""
        return self.status == EmailStatus.FAILED

    @property
    def is_budget_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


class EmailQueueStats(BaseModel):
    """Schema for email queue statistics."""
    total_emails: int = 0
    pending_count: int = 0
    processing_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    total_sent_24h: int = 0
    type_counts: Dict[str, int] = Field(default_factory=dict)
    next_scheduled: Optional[datetime] = None
    last_sent: Optional[datetime] = None


class EmailProcessingResult(BaseModel):
    """Outcome of one entry in a worker tick."""
    entry_id: int
    outcome: str  # sent | retry | failed | skipped | error
    error_message: Optional[str] = None
    attempt_count: int = 0
    campaign_id: Optional[int] = None


class TickResult(BaseModel):
    """Summary of one delivery worker tick."""
    due: int = 0
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    released: int = 0
    campaigns_refreshed: int = 0
    duration_seconds: float = 0.0
    poll_failed: bool = False
