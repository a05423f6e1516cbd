from fastapi import Depends

from src.core.db import TenantStore
from src.core.identity import ClerkIdentityGateway, JwksCache
from src.core.ledger import PaymentLedger
from src.core.notifications import NotificationSink
from src.core.payments import StripePaymentGateway
from src.core.plan_change import PlanChangeEngine
from src.core.provisioning import TenantProvisioningSaga
from src.core.repair import IdentityRepairQueue

jwks_cache = JwksCache()


def get_tenant_store() -> TenantStore:
    return TenantStore()


def get_identity_gateway() -> ClerkIdentityGateway:
    return ClerkIdentityGateway(jwks_cache=jwks_cache)


def get_payment_gateway() -> StripePaymentGateway:
    return StripePaymentGateway()


def get_notification_sink() -> NotificationSink:
    return NotificationSink()


def get_repair_queue() -> IdentityRepairQueue:
    return IdentityRepairQueue()


def get_payment_ledger(
    store: TenantStore = Depends(get_tenant_store),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
) -> PaymentLedger:
    return PaymentLedger(store=store, gateway=gateway)


def get_provisioning_saga(
    store: TenantStore = Depends(get_tenant_store),
    identity: ClerkIdentityGateway = Depends(get_identity_gateway),
    notifier: NotificationSink = Depends(get_notification_sink),
    repair_queue: IdentityRepairQueue = Depends(get_repair_queue),
) -> TenantProvisioningSaga:
    return TenantProvisioningSaga(
        store=store,
        identity=identity,
        notifier=notifier,
        repair_queue=repair_queue,
    )


def get_plan_change_engine(
    store: TenantStore = Depends(get_tenant_store),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
    ledger: PaymentLedger = Depends(get_payment_ledger),
    notifier: NotificationSink = Depends(get_notification_sink),
) -> PlanChangeEngine:
    return PlanChangeEngine(store=store, gateway=gateway, ledger=ledger, notifier=notifier)
