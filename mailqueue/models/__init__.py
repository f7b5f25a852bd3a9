# Import all models to ensure they are registered with SQLAlchemy
from .email_campaign import EmailCampaign, CampaignType, CampaignStatus, TargetAudience
from .email_queue import EmailQueue, EmailType, EmailStatus, TERMINAL_STATUSES

__all__ = [
    "EmailCampaign", "CampaignType", "CampaignStatus", "TargetAudience",
    "EmailQueue", "EmailType", "EmailStatus", "TERMINAL_STATUSES",
]
