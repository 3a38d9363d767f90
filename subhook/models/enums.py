"""
Status and type enumerations stored as plain strings in the billing tables.
"""
from enum import Enum


class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class PlanInterval(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMIANNUAL = "SEMIANNUAL"
    ANNUAL = "ANNUAL"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class CouponStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    IN_PROCESS = "IN_PROCESS"
    REFUNDED = "REFUNDED"
    CHARGED_BACK = "CHARGED_BACK"


class ProcessStatus(str, Enum):
    """Lifecycle of a webhook ledger row."""

    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"
