from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.db import TenantStore
from src.core.errors import ForbiddenError, NotFoundError, ValidationError
from src.core.payments import StripePaymentGateway
from src.core.repositories.payments import PaymentRepository, load_payment, refunded_total
from src.models.payment import Payment

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

PAYMENT_STATUSES = frozenset(
    {"pending", "succeeded", "failed", "canceled", "refunded", "partially_refunded"}
)
PAYMENT_TYPES = frozenset({"subscription", "plan_change", "refund", "credit_purchase", "setup_fee"})
REFUNDABLE_STATUSES = frozenset({"succeeded", "partially_refunded"})


def to_money(value: Decimal | int | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class PaymentRecordData:
    tenant_id: UUID
    amount: Decimal
    status: str
    subscription_id: UUID | None = None
    currency: str = ""
    payment_type: str = "subscription"
    payment_method: str = "card"
    billing_reason: str | None = None
    description: str | None = None
    proration_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None
    stripe_invoice_id: str | None = None
    stripe_refund_id: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)
    paid_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.status:
            raise ValidationError("Payment status is required")
        if self.status not in PAYMENT_STATUSES:
            raise ValidationError(f"Unknown payment status '{self.status}'")
        if self.payment_type not in PAYMENT_TYPES:
            raise ValidationError(f"Unknown payment type '{self.payment_type}'")
        self.amount = to_money(self.amount)
        self.proration_amount = to_money(self.proration_amount)
        self.tax_amount = to_money(self.tax_amount)
        self.currency = (self.currency or settings.default_currency).upper()
        self.payment_method = self.payment_method or "card"


@dataclass(slots=True)
class RefundResult:
    refund_id: str | None
    refund_payment_id: UUID
    original_payment_id: UUID
    amount: Decimal
    currency: str
    status: str
    is_partial_refund: bool


class PaymentLedger:
    """Append-only payment records; refunds are new negative rows, never edits to amounts."""

    def __init__(
        self,
        *,
        store: TenantStore,
        gateway: StripePaymentGateway,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_payment_record(
        self,
        data: PaymentRecordData,
        *,
        session: AsyncSession | None = None,
    ) -> Payment:
        if session is None:
            async with self._store.transaction() as own_session:
                return await self._insert(own_session, data)
        return await self._insert(session, data)

    async def _insert(self, session: AsyncSession, data: PaymentRecordData) -> Payment:
        paid_at = data.paid_at
        if paid_at is None and data.status == "succeeded":
            paid_at = self._clock()

        payment = await PaymentRepository(session, data.tenant_id).create(
            subscription_id=data.subscription_id,
            amount=data.amount,
            currency=data.currency,
            status=data.status,
            payment_type=data.payment_type,
            payment_method=data.payment_method,
            billing_reason=data.billing_reason,
            description=data.description,
            proration_amount=data.proration_amount,
            tax_amount=data.tax_amount,
            stripe_payment_intent_id=data.stripe_payment_intent_id,
            stripe_charge_id=data.stripe_charge_id,
            stripe_invoice_id=data.stripe_invoice_id,
            stripe_refund_id=data.stripe_refund_id,
            payment_metadata=dict(data.metadata),
            paid_at=paid_at,
        )
        logger.info(
            "Payment recorded tenant_id=%s type=%s status=%s amount=%s",
            data.tenant_id,
            data.payment_type,
            data.status,
            data.amount,
        )
        return payment

    async def process_refund(
        self,
        tenant_id: UUID,
        payment_id: UUID,
        *,
        amount: Decimal | None = None,
        reason: str = "requested_by_customer",
    ) -> RefundResult:
        async with self._store.session() as session:
            payment = await load_payment(session, payment_id)
            already_refunded = Decimal("0")
            if payment is not None:
                already_refunded = to_money(await refunded_total(session, payment_id))

        if payment is None:
            raise NotFoundError("Payment not found", context={"payment_id": str(payment_id)})
        if payment.tenant_id != tenant_id:
            raise ForbiddenError("Payment does not belong to this tenant")
        if payment.payment_type == "refund" or payment.amount <= 0:
            raise ValidationError("Refund entries cannot be refunded")
        if payment.status not in REFUNDABLE_STATUSES:
            raise ValidationError(f"Payment with status '{payment.status}' cannot be refunded")

        full_amount = to_money(payment.amount)
        refundable = full_amount - already_refunded
        if refundable <= 0:
            raise ValidationError(
                "Payment has already been fully refunded",
                context={"payment_id": str(payment_id)},
            )
        refund_amount = refundable if amount is None else to_money(amount)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if refund_amount > refundable:
            raise ValidationError(
                f"Refund amount {refund_amount} exceeds refundable balance {refundable}",
                context={"payment_id": str(payment_id), "already_refunded": str(already_refunded)},
            )
        is_partial = refund_amount < refundable

        gateway_refund = None
        if payment.stripe_payment_intent_id or payment.stripe_charge_id:
            gateway_refund = await asyncio.to_thread(
                self._gateway.create_refund,
                amount=refund_amount,
                reason=reason,
                metadata={
                    "tenant_id": str(tenant_id),
                    "payment_id": str(payment_id),
                    "reason": reason,
                },
                payment_intent_id=payment.stripe_payment_intent_id,
                charge_id=payment.stripe_charge_id,
            )

        refund_status = "succeeded" if gateway_refund is not None else "pending"
        async with self._store.transaction() as session:
            original = await load_payment(session, payment_id)
            original.status = "partially_refunded" if is_partial else "refunded"
            refund_row = await self._insert(
                session,
                PaymentRecordData(
                    tenant_id=tenant_id,
                    subscription_id=original.subscription_id,
                    amount=-refund_amount,
                    currency=original.currency,
                    status=refund_status,
                    payment_type="refund",
                    payment_method=original.payment_method,
                    billing_reason="refund_request",
                    description=f"Refund for payment {payment_id}",
                    stripe_payment_intent_id=original.stripe_payment_intent_id,
                    stripe_refund_id=gateway_refund.refund_id if gateway_refund else None,
                    metadata={
                        "original_payment_id": str(payment_id),
                        "reason": reason,
                        "is_partial_refund": is_partial,
                    },
                ),
            )

        logger.info(
            "Refund processed tenant_id=%s payment_id=%s amount=%s partial=%s",
            tenant_id,
            payment_id,
            refund_amount,
            is_partial,
        )
        return RefundResult(
            refund_id=gateway_refund.refund_id if gateway_refund else None,
            refund_payment_id=refund_row.id,
            original_payment_id=payment_id,
            amount=refund_amount,
            currency=original.currency,
            status=refund_status,
            is_partial_refund=is_partial,
        )

    async def payment_history(self, tenant_id: UUID, *, limit: int = 50) -> list[Payment]:
        async with self._store.session() as session:
            return await PaymentRepository(session, tenant_id).history(limit=limit)
