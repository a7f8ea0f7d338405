from enum import Enum

CAMPAIGN_DRAFT = "DRAFT"
CAMPAIGN_ACTIVE = "ACTIVE"
CAMPAIGN_PAUSED = "PAUSED"
CAMPAIGN_ARCHIVED = "ARCHIVED"

STEP_SMS = "SMS"
STEP_EMAIL = "EMAIL"

ENROLLMENT_ACTIVE = "ACTIVE"
ENROLLMENT_COMPLETED = "COMPLETED"
ENROLLMENT_STOPPED = "STOPPED"

BILLING_OK_STATUSES = frozenset({"active", "trialing", "past_due"})


class CampaignStatus(str, Enum):
    DRAFT = CAMPAIGN_DRAFT
    ACTIVE = CAMPAIGN_ACTIVE
    PAUSED = CAMPAIGN_PAUSED
    ARCHIVED = CAMPAIGN_ARCHIVED


class StepKind(str, Enum):
    SMS = STEP_SMS
    EMAIL = STEP_EMAIL


class EnrollmentStatus(str, Enum):
    ACTIVE = ENROLLMENT_ACTIVE
    COMPLETED = ENROLLMENT_COMPLETED
    STOPPED = ENROLLMENT_STOPPED
