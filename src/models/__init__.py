from src.models.admin_user import AdminUser
from src.models.base import Base, TenantScopedBase, TimestampedBase
from src.models.payment import Payment
from src.models.role import SUPER_ADMIN_ROLE_NAME, Role, RoleAssignment
from src.models.scheduled_plan_change import ScheduledPlanChange
from src.models.subscription import Subscription
from src.models.tenant import Tenant
from src.models.trial_event import TrialEvent

__all__ = [
    "Base",
    "TimestampedBase",
    "TenantScopedBase",
    "Tenant",
    "AdminUser",
    "Role",
    "RoleAssignment",
    "SUPER_ADMIN_ROLE_NAME",
    "Subscription",
    "Payment",
    "TrialEvent",
    "ScheduledPlanChange",
]
