from src.schemas.admin import ImmediateDowngradeRequest, ImmediateDowngradeResponse, SystemHealthResponse
from src.schemas.onboarding import (
    IdentityStatusResponse,
    ProvisionTenantRequest,
    ProvisionTenantResponse,
    SubdomainAvailabilityResponse,
    SubscriptionSummaryResponse,
)
from src.schemas.subscriptions import (
    ChangePlanRequest,
    ChangePlanResponse,
    GatewayWebhookResponse,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    SubscriptionResponse,
)

__all__ = [
    "ProvisionTenantRequest",
    "ProvisionTenantResponse",
    "SubscriptionSummaryResponse",
    "IdentityStatusResponse",
    "SubdomainAvailabilityResponse",
    "ChangePlanRequest",
    "ChangePlanResponse",
    "SubscriptionResponse",
    "PaymentResponse",
    "RefundRequest",
    "RefundResponse",
    "ImmediateDowngradeRequest",
    "ImmediateDowngradeResponse",
    "SystemHealthResponse",
    "GatewayWebhookResponse",
]
