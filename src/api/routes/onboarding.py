from __future__ import annotations

from fastapi import APIRouter, Depends, status

from src.core.auth import optional_identity
from src.core.dependencies import get_provisioning_saga
from src.core.identity import IdentityClaims
from src.core.provisioning import ProvisioningRequest, ProvisioningResult, TenantProvisioningSaga
from src.schemas.onboarding import (
    IdentityStatusResponse,
    ProvisionTenantRequest,
    ProvisionTenantResponse,
    SubdomainAvailabilityResponse,
    SubscriptionSummaryResponse,
)

router = APIRouter(prefix="/onboarding", tags=["onboarding"])


def _to_response(result: ProvisioningResult) -> ProvisionTenantResponse:
    summary = result.subscription
    reconciliation = result.reconciliation
    return ProvisionTenantResponse(
        tenant_id=str(result.tenant_id),
        subdomain=result.subdomain,
        external_org_ref=result.external_org_ref,
        admin_user_ref=result.admin_user_ref,
        onboarding_completed=result.onboarding_completed,
        subscription=SubscriptionSummaryResponse(
            plan=summary.plan,
            status=summary.status,
            billing_cycle=summary.billing_cycle,
            trial_start=summary.trial_start,
            trial_end=summary.trial_end,
            subscribed_tools=summary.subscribed_tools,
            usage_limits=summary.usage_limits,
        ),
        identity=IdentityStatusResponse(
            org_fallback=result.org_fallback,
            user_fallback=result.user_fallback,
            reconciliation_status=reconciliation.status,
            reconciliation_attempts=reconciliation.attempts,
            verified=reconciliation.verified,
            degraded_steps=[degradation.step for degradation in result.degradations],
        ),
    )


@router.post("/tenants", response_model=ProvisionTenantResponse, status_code=status.HTTP_201_CREATED)
async def provision_tenant(
    payload: ProvisionTenantRequest,
    caller: IdentityClaims | None = Depends(optional_identity),
    saga: TenantProvisioningSaga = Depends(get_provisioning_saga),
) -> ProvisionTenantResponse:
    result = await saga.provision(
        ProvisioningRequest(
            company_name=payload.company_name,
            admin_email=str(payload.admin_email),
            admin_first_name=payload.admin_first_name,
            admin_last_name=payload.admin_last_name,
            subdomain=payload.subdomain,
            selected_plan=payload.selected_plan,
            billing_cycle=payload.billing_cycle,
        ),
        caller=caller,
    )
    return _to_response(result)


@router.get("/subdomains/{subdomain}", response_model=SubdomainAvailabilityResponse)
async def check_subdomain(
    subdomain: str,
    saga: TenantProvisioningSaga = Depends(get_provisioning_saga),
) -> SubdomainAvailabilityResponse:
    normalized = subdomain.strip().lower()
    available = await saga.check_subdomain_availability(normalized)
    return SubdomainAvailabilityResponse(subdomain=normalized, available=available)
