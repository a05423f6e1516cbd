from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.core.config import settings
from src.core.db import TenantStore
from src.core.errors import ConflictError, ExternalServiceDegraded, ProvisioningFailed, ValidationError
from src.core.identity import ClerkIdentityGateway, IdentityClaims, UserProfile
from src.core.notifications import NotificationSink
from src.core.plans import (
    PlanDefinition,
    get_plan,
    is_valid_subdomain,
    normalize_subdomain,
    super_admin_role_permissions,
)
from src.core.repair import IdentityRepairQueue
from src.core.repositories.tenants import TenantDirectory
from src.core.retry import SleepFn, fixed_delay, linear_backoff, retry_with_backoff
from src.models.admin_user import AdminUser
from src.models.role import SUPER_ADMIN_ROLE_NAME, Role, RoleAssignment
from src.models.subscription import Subscription
from src.models.tenant import Tenant
from src.models.trial_event import TrialEvent

logger = logging.getLogger(__name__)

ReconciliationStatus = Literal["verified", "unverified", "failed", "skipped", "timed_out"]

IDENTITY_SERVICE = "identity_provider"


@dataclass(slots=True)
class ProvisioningRequest:
    company_name: str
    admin_email: str
    admin_first_name: str = ""
    admin_last_name: str = ""
    subdomain: str | None = None
    selected_plan: str = "trial"
    billing_cycle: str = "monthly"

    @property
    def admin_name(self) -> str:
        return " ".join(part for part in (self.admin_first_name, self.admin_last_name) if part) or self.admin_email


@dataclass(slots=True)
class SubscriptionSummary:
    plan: str
    status: str
    billing_cycle: str
    trial_start: datetime | None
    trial_end: datetime | None
    subscribed_tools: list[str]
    usage_limits: dict[str, int]


@dataclass(slots=True)
class IdentityReconciliation:
    status: ReconciliationStatus
    attempts: int
    verified: bool
    user_ref: str
    last_error: str | None = None


@dataclass(slots=True)
class ProvisioningResult:
    tenant_id: UUID
    subdomain: str
    external_org_ref: str
    admin_user_ref: str
    subscription: SubscriptionSummary
    reconciliation: IdentityReconciliation
    org_fallback: bool = False
    user_fallback: bool = False
    onboarding_completed: bool = True
    degradations: list[ExternalServiceDegraded] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.degradations)

    @property
    def needs_identity_repair(self) -> bool:
        return self.degraded or self.reconciliation.status != "verified"


def fallback_org_ref(subdomain: str, now: datetime) -> str:
    return f"org_{subdomain}_{int(now.timestamp() * 1000)}"


def fallback_user_ref(email: str) -> str:
    return "user_" + re.sub(r"[^a-z0-9]", "_", email.strip().lower())


def _conflict_from_integrity_error(exc: IntegrityError, *, subdomain: str, email: str) -> ConflictError:
    detail = str(exc.orig or exc).lower()
    if "subdomain" in detail:
        return ConflictError(f"Subdomain '{subdomain}' is already taken", context={"field": "subdomain"})
    return ConflictError(f"A tenant already exists for {email}", context={"field": "admin_email"})


class TenantProvisioningSaga:
    """Creates a tenant locally in one transaction and mirrors it to the identity provider.

    The local store is authoritative. Identity-provider failures fall back to synthesized
    references and are reported on the result instead of failing the call.
    """

    def __init__(
        self,
        *,
        store: TenantStore,
        identity: ClerkIdentityGateway,
        notifier: NotificationSink | None = None,
        repair_queue: IdentityRepairQueue | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
        trial_length_days: int | None = None,
        assignment_attempts: int | None = None,
        assignment_backoff_seconds: float | None = None,
        verification_attempts: int | None = None,
        verification_delay_seconds: float | None = None,
        reconciliation_timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._identity = identity
        self._notifier = notifier
        self._repair_queue = repair_queue
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._trial_length_days = trial_length_days or settings.trial_length_days
        self._assignment_attempts = assignment_attempts or settings.identity_assignment_attempts
        self._assignment_backoff = (
            settings.identity_assignment_backoff_seconds
            if assignment_backoff_seconds is None
            else assignment_backoff_seconds
        )
        self._verification_attempts = verification_attempts or settings.identity_verification_attempts
        self._verification_delay = (
            settings.identity_verification_delay_seconds
            if verification_delay_seconds is None
            else verification_delay_seconds
        )
        self._reconciliation_timeout = (
            reconciliation_timeout_seconds or settings.identity_reconciliation_timeout_seconds
        )

    async def check_subdomain_availability(self, subdomain: str) -> bool:
        candidate = (subdomain or "").strip().lower()
        if not is_valid_subdomain(candidate):
            return False
        async with self._store.session() as session:
            return await TenantDirectory(session).is_subdomain_available(candidate)

    async def generate_unique_subdomain(self, company_name: str) -> str:
        async with self._store.session() as session:
            return await self._unique_subdomain(TenantDirectory(session), company_name)

    async def _unique_subdomain(self, directory: TenantDirectory, company_name: str) -> str:
        base = normalize_subdomain(company_name)
        if is_valid_subdomain(base) and await directory.is_subdomain_available(base):
            return base

        for suffix in range(1, 101):
            candidate = f"{base}-{suffix}"
            if await directory.is_subdomain_available(candidate):
                return candidate

        return f"{base}-{int(self._clock().timestamp())}"

    async def provision(
        self,
        request: ProvisioningRequest,
        *,
        caller: IdentityClaims | None = None,
    ) -> ProvisioningResult:
        email = request.admin_email.strip().lower()
        company_name = request.company_name.strip()
        if not company_name:
            raise ValidationError("Company name is required")

        plan = get_plan(request.selected_plan)
        if plan is None:
            raise ValidationError(f"Unknown plan '{request.selected_plan}'", context={"field": "selected_plan"})

        subdomain = await self._check_uniqueness(email, company_name, request.subdomain)

        tenant_id = uuid4()
        degradations: list[ExternalServiceDegraded] = []

        org_ref, org_fallback = await self._create_organization(
            company_name, tenant_id, subdomain, degradations
        )
        profile = UserProfile(
            email=email,
            first_name=request.admin_first_name,
            last_name=request.admin_last_name,
        )
        user_ref, user_fallback = await self._resolve_admin_user(
            profile, org_ref, org_fallback, caller, degradations
        )

        now = self._clock()
        tenant, admin_user, subscription = await self._persist(
            tenant_id=tenant_id,
            request=request,
            email=email,
            company_name=company_name,
            subdomain=subdomain,
            plan=plan,
            org_ref=org_ref,
            user_ref=user_ref,
            org_fallback=org_fallback,
            user_fallback=user_fallback,
            now=now,
        )
        logger.info(
            "Tenant provisioned tenant_id=%s subdomain=%s org_fallback=%s user_fallback=%s",
            tenant_id,
            subdomain,
            org_fallback,
            user_fallback,
        )

        reconciliation = await self._reconcile_identity(
            profile=profile,
            org_ref=org_ref,
            user_ref=user_ref,
            org_fallback=org_fallback,
        )
        await self._record_identity_outcome(tenant.id, admin_user.id, user_ref, reconciliation)

        result = ProvisioningResult(
            tenant_id=tenant.id,
            subdomain=subdomain,
            external_org_ref=org_ref,
            admin_user_ref=reconciliation.user_ref,
            subscription=SubscriptionSummary(
                plan=subscription.plan,
                status=subscription.status,
                billing_cycle=subscription.billing_cycle,
                trial_start=subscription.trial_start,
                trial_end=subscription.trial_end,
                subscribed_tools=list(subscription.subscribed_tools),
                usage_limits=dict(subscription.usage_limits),
            ),
            reconciliation=reconciliation,
            org_fallback=org_fallback,
            user_fallback=user_fallback,
            onboarding_completed=tenant.onboarding_completed,
            degradations=degradations,
        )

        if result.needs_identity_repair and self._repair_queue is not None:
            await self._repair_queue.publish(
                {
                    "tenant_id": str(tenant.id),
                    "org_ref": org_ref,
                    "user_ref": reconciliation.user_ref,
                    "org_fallback": org_fallback,
                    "user_fallback": user_fallback,
                    "reconciliation_status": reconciliation.status,
                    "last_error": reconciliation.last_error or "",
                }
            )

        if self._notifier is not None:
            await self._notifier.send_welcome(
                tenant_id=tenant.id,
                admin_email=email,
                admin_name=request.admin_name,
                company_name=company_name,
                subdomain=subdomain,
                trial_end=subscription.trial_end,
            )

        return result

    async def _check_uniqueness(self, email: str, company_name: str, requested: str | None) -> str:
        async with self._store.session() as session:
            directory = TenantDirectory(session)
            if await directory.get_by_admin_email(email) is not None:
                raise ConflictError(f"A tenant already exists for {email}", context={"field": "admin_email"})

            if not requested:
                return await self._unique_subdomain(directory, company_name)

            subdomain = requested.strip().lower()
            if not is_valid_subdomain(subdomain):
                raise ValidationError(f"Subdomain '{subdomain}' is not allowed", context={"field": "subdomain"})
            if not await directory.is_subdomain_available(subdomain):
                raise ConflictError(f"Subdomain '{subdomain}' is already taken", context={"field": "subdomain"})
            return subdomain

    async def _create_organization(
        self,
        company_name: str,
        tenant_id: UUID,
        subdomain: str,
        degradations: list[ExternalServiceDegraded],
    ) -> tuple[str, bool]:
        try:
            org_ref = await asyncio.to_thread(
                self._identity.create_organization, company_name, f"tenant_{tenant_id}"
            )
            return org_ref, False
        except Exception as exc:
            degraded = ExternalServiceDegraded(IDENTITY_SERVICE, "create_organization", exc)
            degradations.append(degraded)
            org_ref = fallback_org_ref(subdomain, self._clock())
            logger.warning("%s; continuing with fallback org_ref=%s", degraded.message, org_ref)
            return org_ref, True

    async def _resolve_admin_user(
        self,
        profile: UserProfile,
        org_ref: str,
        org_fallback: bool,
        caller: IdentityClaims | None,
        degradations: list[ExternalServiceDegraded],
    ) -> tuple[str, bool]:
        if caller is not None:
            return caller.user_ref, False

        try:
            user_ref = await asyncio.to_thread(
                self._identity.create_user,
                profile,
                org_ref=None if org_fallback else org_ref,
            )
            return user_ref, False
        except Exception as exc:
            degraded = ExternalServiceDegraded(IDENTITY_SERVICE, "create_user", exc)
            degradations.append(degraded)
            user_ref = fallback_user_ref(profile.email)
            logger.warning("%s; continuing with fallback user_ref=%s", degraded.message, user_ref)
            return user_ref, True

    async def _persist(
        self,
        *,
        tenant_id: UUID,
        request: ProvisioningRequest,
        email: str,
        company_name: str,
        subdomain: str,
        plan: PlanDefinition,
        org_ref: str,
        user_ref: str,
        org_fallback: bool,
        user_fallback: bool,
        now: datetime,
    ) -> tuple[Tenant, AdminUser, Subscription]:
        trial_end = now + timedelta(days=self._trial_length_days)

        tenant = Tenant(
            id=tenant_id,
            company_name=company_name,
            subdomain=subdomain,
            admin_email=email,
            clerk_org_id=org_ref,
            onboarding_completed=True,
            onboarding_progress={
                "account_setup": True,
                "company_info": True,
                "plan_selection": True,
                "team_invites": False,
                "identity": {
                    "org_fallback": org_fallback,
                    "user_fallback": user_fallback,
                    "status": "pending",
                },
            },
            trial_status="active",
            subscription_status="trialing",
            is_active=True,
        )
        admin_user = AdminUser(
            id=uuid4(),
            tenant_id=tenant_id,
            email=email,
            name=request.admin_name,
            clerk_user_id=user_ref,
            is_tenant_admin=True,
            is_active=True,
        )
        role = Role(
            id=uuid4(),
            tenant_id=tenant_id,
            name=SUPER_ADMIN_ROLE_NAME,
            description=f"Full access to every {plan.name} plan application",
            permissions=super_admin_role_permissions(plan.id),
            is_system_role=True,
            priority=100,
        )
        assignment = RoleAssignment(
            id=uuid4(),
            tenant_id=tenant_id,
            role_id=role.id,
            user_id=admin_user.id,
            is_active=True,
        )
        subscription = Subscription(
            id=uuid4(),
            tenant_id=tenant_id,
            plan=plan.id,
            status="trialing",
            billing_cycle=request.billing_cycle,
            current_period_start=now,
            current_period_end=trial_end,
            trial_start=now,
            trial_end=trial_end,
            subscribed_tools=list(plan.applications),
            usage_limits=dict(plan.usage_limits),
            monthly_price=plan.monthly_price,
            yearly_price=plan.yearly_price,
        )
        trial_event = TrialEvent(
            id=uuid4(),
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            event_type="trial_started_onboarding",
            event_data={"plan": plan.id, "trial_days": self._trial_length_days},
            occurred_at=now,
        )

        try:
            async with self._store.transaction() as session:
                for record in (tenant, admin_user, role, assignment, subscription, trial_event):
                    session.add(record)
                    await session.flush()
        except IntegrityError as exc:
            logger.warning("Provisioning uniqueness violation subdomain=%s email=%s", subdomain, email)
            raise _conflict_from_integrity_error(exc, subdomain=subdomain, email=email) from exc
        except SQLAlchemyError as exc:
            logger.exception("Provisioning transaction failed subdomain=%s", subdomain)
            raise ProvisioningFailed(
                "Tenant could not be created; no changes were saved",
                context={"subdomain": subdomain},
            ) from exc

        return tenant, admin_user, subscription

    async def _reconcile_identity(
        self,
        *,
        profile: UserProfile,
        org_ref: str,
        user_ref: str,
        org_fallback: bool,
    ) -> IdentityReconciliation:
        if org_fallback:
            logger.warning("Skipping identity assignment for fallback org_ref=%s", org_ref)
            return IdentityReconciliation(
                status="skipped",
                attempts=0,
                verified=False,
                user_ref=user_ref,
                last_error="organization does not exist in the identity provider",
            )

        current = {"user_ref": user_ref, "attempts": 0}
        try:
            return await asyncio.wait_for(
                self._assign_and_verify(profile, org_ref, current),
                timeout=self._reconciliation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Identity reconciliation timed out org_ref=%s user_ref=%s", org_ref, current["user_ref"])
            return IdentityReconciliation(
                status="timed_out",
                attempts=current["attempts"],
                verified=False,
                user_ref=current["user_ref"],
                last_error="identity reconciliation timed out",
            )

    async def _assign_and_verify(
        self,
        profile: UserProfile,
        org_ref: str,
        current: dict,
    ) -> IdentityReconciliation:
        async def _assign(attempt: int) -> str:
            current["attempts"] = attempt
            try:
                ensured = await asyncio.to_thread(self._identity.create_user, profile, org_ref=org_ref)
            except Exception as exc:
                logger.info("Ensure user failed attempt=%s email=%s: %s", attempt, profile.email, exc)
            else:
                if ensured:
                    current["user_ref"] = ensured
            await asyncio.to_thread(
                self._identity.assign_user_to_organization,
                current["user_ref"],
                org_ref,
                exclusive=True,
            )
            return current["user_ref"]

        assignment = await retry_with_backoff(
            _assign,
            attempts=self._assignment_attempts,
            delay=linear_backoff(self._assignment_backoff),
            sleep=self._sleep,
            label="identity assignment",
        )
        if not assignment.succeeded:
            logger.warning(
                "Identity assignment exhausted attempts=%s org_ref=%s user_ref=%s",
                assignment.attempts,
                org_ref,
                current["user_ref"],
            )
            return IdentityReconciliation(
                status="failed",
                attempts=assignment.attempts,
                verified=False,
                user_ref=current["user_ref"],
                last_error=str(assignment.last_error) if assignment.last_error else None,
            )

        user_ref = current["user_ref"]

        async def _memberships(_attempt: int) -> list[str]:
            return await asyncio.to_thread(self._identity.get_user_organizations, user_ref)

        verification = await retry_with_backoff(
            _memberships,
            attempts=self._verification_attempts,
            delay=fixed_delay(self._verification_delay),
            accept=lambda orgs: org_ref in orgs,
            sleep=self._sleep,
            label="identity verification",
        )
        if not verification.succeeded:
            logger.warning("Identity assignment not verified org_ref=%s user_ref=%s", org_ref, user_ref)

        return IdentityReconciliation(
            status="verified" if verification.succeeded else "unverified",
            attempts=assignment.attempts,
            verified=verification.succeeded,
            user_ref=user_ref,
            last_error=str(verification.last_error) if verification.last_error else None,
        )

    async def _record_identity_outcome(
        self,
        tenant_id: UUID,
        admin_user_id: UUID,
        original_user_ref: str,
        reconciliation: IdentityReconciliation,
    ) -> None:
        try:
            async with self._store.transaction() as session:
                tenant = await session.get(Tenant, tenant_id)
                if tenant is not None:
                    progress = dict(tenant.onboarding_progress or {})
                    progress["identity"] = {
                        **(progress.get("identity") or {}),
                        "status": reconciliation.status,
                        "attempts": reconciliation.attempts,
                        "verified": reconciliation.verified,
                    }
                    tenant.onboarding_progress = progress

                if reconciliation.user_ref != original_user_ref:
                    admin_user = await session.get(AdminUser, admin_user_id)
                    if admin_user is not None:
                        admin_user.clerk_user_id = reconciliation.user_ref
        except SQLAlchemyError:
            logger.exception("Could not record identity outcome tenant_id=%s", tenant_id)
