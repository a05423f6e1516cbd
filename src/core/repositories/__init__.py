from src.core.repositories.base import TenantRepository
from src.core.repositories.payments import PaymentRepository, load_payment, refunded_total
from src.core.repositories.plan_changes import ScheduledPlanChangeRepository
from src.core.repositories.subscriptions import SubscriptionRepository, find_subscription_by_gateway_ref
from src.core.repositories.tenants import TenantDirectory
from src.core.repositories.trial_events import TrialEventRepository

__all__ = [
    "TenantRepository",
    "TenantDirectory",
    "SubscriptionRepository",
    "find_subscription_by_gateway_ref",
    "PaymentRepository",
    "load_payment",
    "refunded_total",
    "TrialEventRepository",
    "ScheduledPlanChangeRepository",
]
