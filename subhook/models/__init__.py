"""
Database Models Package
SQLAlchemy ORM models for the billing tables.
"""

from subhook.models.plan import SubscriptionPlan
from subhook.models.coupon import Coupon, CouponPlanRestriction, CouponUsage
from subhook.models.subscription import Subscription
from subhook.models.payment import Payment
from subhook.models.webhook_notification import WebhookNotification

__all__ = [
    "SubscriptionPlan",
    "Coupon",
    "CouponPlanRestriction",
    "CouponUsage",
    "Subscription",
    "Payment",
    "WebhookNotification",
]
