from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from src.core import plan_change
from src.core.errors import GatewayError, NotFoundError, PlanChangeRejected, ValidationError
from src.core.ledger import RefundResult
from src.core.payments import CheckoutSessionDetails, GatewaySubscription, GatewaySubscriptionItem
from src.core.plan_change import (
    CheckoutRedirect,
    PlanChangeEngine,
    PortalRedirect,
    ScheduledDowngrade,
    days_until,
    format_renewal_date,
    quote_proration,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _World:
    def __init__(self, **subscription_values) -> None:  # noqa: ANN003
        self.tenant_id = uuid4()
        self.tenant = SimpleNamespace(
            id=self.tenant_id,
            admin_email="owner@acme.com",
            subscription_status=subscription_values.get("status", "active"),
            trial_status="active",
        )
        values = {
            "id": uuid4(),
            "tenant_id": self.tenant_id,
            "plan": "professional",
            "status": "active",
            "billing_cycle": "monthly",
            "current_period_start": NOW - timedelta(days=20),
            "current_period_end": NOW + timedelta(days=10),
            "trial_end": None,
            "stripe_subscription_id": None,
            "stripe_customer_id": None,
            "monthly_price": Decimal("20.00"),
            "yearly_price": Decimal("240.00"),
            "subscribed_tools": ["crm", "hr", "affiliate", "accounting"],
            "usage_limits": {"users": 50},
        }
        values.update(subscription_values)
        self.subscription = SimpleNamespace(**values)
        self.latest_payment = None
        self.schedules: list = []
        self.trial_events: list = []
        self.transactions = 0


class _FakeStore:
    def __init__(self, world: _World) -> None:
        self.world = world

    @asynccontextmanager
    async def session(self):
        yield self.world

    @asynccontextmanager
    async def transaction(self):
        self.world.transactions += 1
        yield self.world


class _FakeGateway:
    def __init__(self, *, configured: bool = True, customer_id: str | None = "cus_1") -> None:
        self.configured = configured
        self.customer_id = customer_id
        self.calls: list[tuple[str, tuple, dict]] = []
        self.checkout_details: CheckoutSessionDetails | None = None

    def is_configured(self) -> bool:
        return self.configured

    def retrieve_subscription(self, ref: str) -> GatewaySubscription:
        self.calls.append(("retrieve_subscription", (ref,), {}))
        return GatewaySubscription(
            id=ref,
            customer_id=self.customer_id,
            status="active",
            current_period_start=NOW - timedelta(days=20),
            current_period_end=NOW + timedelta(days=10),
            items=[GatewaySubscriptionItem(id="si_1", price_id="price_old")],
        )

    def create_billing_portal_session(self, tenant_id, return_url, *, customer_id):  # noqa: ANN001
        self.calls.append(("portal", (tenant_id, return_url), {"customer_id": customer_id}))
        return "https://billing.example/portal"

    def create_checkout_session(self, tenant_id, plan_id, **kwargs):  # noqa: ANN001, ANN003
        self.calls.append(("checkout", (tenant_id, plan_id), kwargs))
        return "https://billing.example/checkout"

    def cancel_subscription(self, ref, *, prorate, invoice_now):  # noqa: ANN001
        self.calls.append(("cancel", (ref,), {"prorate": prorate, "invoice_now": invoice_now}))

    def update_subscription(self, ref, *, items, proration_behavior):  # noqa: ANN001
        self.calls.append(("update", (ref,), {"items": items, "proration_behavior": proration_behavior}))

    def retrieve_checkout_session(self, session_id, expand=None):  # noqa: ANN001
        self.calls.append(("retrieve_checkout", (session_id,), {"expand": expand}))
        return self.checkout_details

    def names(self) -> list[str]:
        return [name for name, _, _ in self.calls]


@pytest.fixture(autouse=True)
def _fake_repositories(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeSubscriptionRepository:
        def __init__(self, world, tenant_id) -> None:  # noqa: ANN001
            self.world = world
            self.tenant_id = tenant_id

        async def get_current(self):  # noqa: ANN201
            if self.world.subscription.tenant_id != self.tenant_id:
                return None
            return self.world.subscription

        async def update(self, entity_id, **values):  # noqa: ANN001, ANN003, ANN201
            for key, value in values.items():
                setattr(self.world.subscription, key, value)
            return self.world.subscription

    class FakeTenantDirectory:
        def __init__(self, world) -> None:  # noqa: ANN001
            self.world = world

        async def get(self, tenant_id):  # noqa: ANN001, ANN201
            return self.world.tenant if tenant_id == self.world.tenant_id else None

    class FakePaymentRepository:
        def __init__(self, world, tenant_id) -> None:  # noqa: ANN001
            self.world = world

        async def latest_successful_subscription_payment(self):  # noqa: ANN201
            return self.world.latest_payment

    class FakeScheduleRepository:
        def __init__(self, world, tenant_id) -> None:  # noqa: ANN001
            self.world = world

        async def pending_for(self, subscription_id) -> list:  # noqa: ANN001
            return [s for s in self.world.schedules if s.status == "pending"]

        async def create(self, **values):  # noqa: ANN003, ANN201
            schedule = SimpleNamespace(id=uuid4(), **values)
            self.world.schedules.append(schedule)
            return schedule

    class FakeTrialEventRepository:
        def __init__(self, world, tenant_id) -> None:  # noqa: ANN001
            self.world = world

        async def record(self, event_type, *, subscription_id, **event_data):  # noqa: ANN001, ANN003, ANN201
            event = SimpleNamespace(event_type=event_type, subscription_id=subscription_id, event_data=event_data)
            self.world.trial_events.append(event)
            return event

    async def _find_by_ref(world, ref):  # noqa: ANN001, ANN202
        return world.subscription if world.subscription.stripe_subscription_id == ref else None

    monkeypatch.setattr(plan_change, "SubscriptionRepository", FakeSubscriptionRepository)
    monkeypatch.setattr(plan_change, "TenantDirectory", FakeTenantDirectory)
    monkeypatch.setattr(plan_change, "PaymentRepository", FakePaymentRepository)
    monkeypatch.setattr(plan_change, "ScheduledPlanChangeRepository", FakeScheduleRepository)
    monkeypatch.setattr(plan_change, "TrialEventRepository", FakeTrialEventRepository)
    monkeypatch.setattr(plan_change, "find_subscription_by_gateway_ref", _find_by_ref)


@pytest.fixture
def price_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        plan_change.settings,
        "stripe_price_ids_json",
        '{"starter:monthly": "price_starter_m", "professional:monthly": "price_pro_m"}',
    )


def _ledger() -> SimpleNamespace:
    return SimpleNamespace(
        create_payment_record=AsyncMock(side_effect=lambda data, session=None: SimpleNamespace(id=uuid4(), data=data)),
        process_refund=AsyncMock(),
    )


def _engine(world: _World, gateway: _FakeGateway, ledger: SimpleNamespace | None = None) -> PlanChangeEngine:
    return PlanChangeEngine(
        store=_FakeStore(world),
        gateway=gateway,
        ledger=ledger or _ledger(),
        notifier=SimpleNamespace(send_downgrade_confirmation=AsyncMock(return_value=True)),
        clock=lambda: NOW,
        downgrade_window_days=7,
        frontend_url="https://app.example/",
    )


def test_days_until_rounds_up_partial_days() -> None:
    assert days_until(NOW + timedelta(days=9, hours=12), NOW) == 10
    assert days_until(NOW + timedelta(days=3), NOW) == 3
    assert days_until(NOW.replace(tzinfo=None) + timedelta(days=1), NOW) == 1


def test_format_renewal_date() -> None:
    assert format_renewal_date(datetime(2026, 3, 5, tzinfo=timezone.utc)) == "March 5, 2026"


@pytest.mark.parametrize(
    ("remaining", "total", "expected"),
    [
        (10, 30, Decimal("33.33")),
        (45, 30, Decimal("100.00")),
        (-5, 30, Decimal("0.00")),
        (10, 0, Decimal("0.00")),
    ],
)
def test_quote_proration_is_bounded(remaining: int, total: int, expected: Decimal) -> None:
    quote = quote_proration(Decimal("100.00"), remaining, total)

    assert quote.amount == expected
    assert Decimal("0") <= quote.amount <= quote.base_amount


@pytest.mark.asyncio
async def test_upgrade_with_gateway_subscription_returns_portal_without_mutation() -> None:
    world = _World(plan="starter", stripe_subscription_id="sub_1", stripe_customer_id="cus_1")
    gateway = _FakeGateway()
    engine = _engine(world, gateway)

    result = await engine.change_plan(world.tenant_id, "enterprise")

    assert isinstance(result, PortalRedirect)
    assert result.kind == "portal_redirect"
    assert result.url == "https://billing.example/portal"
    assert world.subscription.plan == "starter"
    assert world.transactions == 0
    _, args, kwargs = gateway.calls[0]
    assert args[1] == "https://app.example/billing?payment=success&plan=enterprise"
    assert kwargs == {"customer_id": "cus_1"}


@pytest.mark.asyncio
async def test_portal_looks_up_missing_customer_reference() -> None:
    world = _World(plan="starter", stripe_subscription_id="sub_1")
    gateway = _FakeGateway(customer_id="cus_from_gateway")
    engine = _engine(world, gateway)

    await engine.change_plan(world.tenant_id, "professional")

    assert gateway.names() == ["retrieve_subscription", "portal"]
    assert gateway.calls[1][2] == {"customer_id": "cus_from_gateway"}


@pytest.mark.asyncio
async def test_upgrade_without_gateway_subscription_returns_checkout() -> None:
    world = _World(plan="trial", status="trialing")
    gateway = _FakeGateway()
    engine = _engine(world, gateway)

    result = await engine.change_plan(world.tenant_id, "professional", "yearly")

    assert isinstance(result, CheckoutRedirect)
    assert result.url == "https://billing.example/checkout"
    name, args, kwargs = gateway.calls[0]
    assert name == "checkout"
    assert args == (world.tenant_id, "professional")
    assert kwargs["billing_cycle"] == "yearly"
    assert kwargs["customer_email"] == "owner@acme.com"
    assert kwargs["success_url"].endswith("session_id={CHECKOUT_SESSION_ID}")
    assert kwargs["cancel_url"] == "https://app.example/billing?payment=cancelled"
    assert world.subscription.plan == "trial"


@pytest.mark.asyncio
async def test_unconfigured_gateway_falls_back_to_checkout() -> None:
    world = _World(plan="starter", stripe_subscription_id="sub_1", stripe_customer_id="cus_1")
    gateway = _FakeGateway(configured=False)
    engine = _engine(world, gateway)

    result = await engine.change_plan(world.tenant_id, "enterprise")

    assert isinstance(result, CheckoutRedirect)
    assert gateway.calls[0][2]["customer_id"] == "cus_1"


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["trial", "free", "platinum"])
async def test_non_selectable_targets_are_rejected(target: str) -> None:
    world = _World()
    gateway = _FakeGateway()

    with pytest.raises(ValidationError):
        await _engine(world, gateway).change_plan(world.tenant_id, target)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_invalid_cycle_and_missing_subscription() -> None:
    world = _World()
    engine = _engine(world, _FakeGateway())

    with pytest.raises(ValidationError):
        await engine.change_plan(world.tenant_id, "enterprise", "weekly")
    with pytest.raises(NotFoundError):
        await engine.change_plan(uuid4(), "enterprise")


@pytest.mark.asyncio
async def test_downgrade_outside_window_is_rejected_with_renewal_date() -> None:
    world = _World(current_period_end=NOW + timedelta(days=10))
    gateway = _FakeGateway()

    with pytest.raises(PlanChangeRejected) as exc:
        await _engine(world, gateway).change_plan(world.tenant_id, "starter")

    assert "within 7 days" in exc.value.message
    assert "renews on March 11, 2026" in exc.value.message
    assert exc.value.renewal_date == NOW + timedelta(days=10)
    assert exc.value.context["days_remaining"] == 10
    assert world.subscription.plan == "professional"
    assert world.schedules == []
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_downgrade_inside_window_is_scheduled_and_supersedes_pending() -> None:
    world = _World(current_period_end=NOW + timedelta(days=3))
    stale = SimpleNamespace(id=uuid4(), status="pending", to_plan="starter")
    world.schedules.append(stale)
    gateway = _FakeGateway()

    result = await _engine(world, gateway).change_plan(world.tenant_id, "starter")

    assert isinstance(result, ScheduledDowngrade)
    assert result.effective_date == NOW + timedelta(days=3)
    assert result.target_plan == "starter"
    assert "March 4, 2026" in result.message
    assert stale.status == "superseded"
    assert [s.status for s in world.schedules] == ["superseded", "pending"]
    assert world.schedules[1].from_plan == "professional"
    assert world.subscription.plan == "professional"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_downgrade_of_inactive_subscription_respects_plan_restrictions() -> None:
    world = _World(status="trialing")

    with pytest.raises(PlanChangeRejected):
        await _engine(world, _FakeGateway()).change_plan(world.tenant_id, "starter")


@pytest.mark.asyncio
async def test_immediate_downgrade_to_trial_with_refund() -> None:
    world = _World(
        monthly_price=Decimal("100.00"),
        stripe_subscription_id="sub_1",
        stripe_customer_id="cus_1",
    )
    world.latest_payment = SimpleNamespace(id=uuid4(), amount=Decimal("100.00"))
    gateway = _FakeGateway()
    ledger = _ledger()
    ledger.process_refund.return_value = RefundResult(
        refund_id="re_1",
        refund_payment_id=uuid4(),
        original_payment_id=world.latest_payment.id,
        amount=Decimal("33.33"),
        currency="USD",
        status="succeeded",
        is_partial_refund=True,
    )
    engine = _engine(world, gateway, ledger)

    result = await engine.immediate_downgrade(world.tenant_id, "trial", refund_requested=True)

    assert result.proration.amount == Decimal("33.33")
    assert result.refund_amount == Decimal("33.33")
    assert world.subscription.plan == "trial"
    assert world.subscription.status == "trialing"
    assert world.subscription.stripe_subscription_id is None
    assert world.tenant.subscription_status == "trialing"
    assert [event.event_type for event in world.trial_events] == ["plan_downgraded_to_trial"]
    assert gateway.calls == [("cancel", ("sub_1",), {"prorate": True, "invoice_now": True})]
    ledger.process_refund.assert_awaited_once()
    assert ledger.process_refund.await_args.kwargs["amount"] == Decimal("33.33")
    assert result.refund.refund_id == "re_1"
    assert result.impact["lost_applications"] == ["affiliate", "accounting"]
    engine._notifier.send_downgrade_confirmation.assert_awaited_once()


@pytest.mark.asyncio
async def test_immediate_downgrade_without_gateway_uses_latest_payment(price_ids: None) -> None:
    world = _World()
    world.latest_payment = SimpleNamespace(
        id=uuid4(),
        amount=Decimal("20.00"),
        paid_at=NOW - timedelta(days=20),
        created_at=NOW - timedelta(days=20),
    )
    gateway = _FakeGateway()
    ledger = _ledger()

    result = await _engine(world, gateway, ledger).immediate_downgrade(
        world.tenant_id, "starter", refund_requested=False
    )

    assert gateway.calls == []
    assert result.proration.remaining_days == 10
    assert result.proration.amount == Decimal("6.67")
    assert result.refund_amount == Decimal("0.00")
    assert world.subscription.plan == "starter"
    assert world.subscription.usage_limits == {"users": 10, "roles": 3, "storage_gb": 10, "api_calls_per_month": 10000}
    record = ledger.create_payment_record.await_args.args[0]
    assert record.payment_type == "plan_change"
    assert record.amount == Decimal("10.00")
    assert record.proration_amount == Decimal("-6.67")
    ledger.process_refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_immediate_downgrade_with_gateway_and_no_payment_creates_pending_refund(price_ids: None) -> None:
    world = _World(
        stripe_subscription_id="sub_1",
        current_period_end=NOW + timedelta(days=15),
    )
    gateway = _FakeGateway()
    ledger = _ledger()

    result = await _engine(world, gateway, ledger).immediate_downgrade(
        world.tenant_id, "starter", refund_requested=True
    )

    assert gateway.names() == ["retrieve_subscription", "update"]
    assert gateway.calls[1][2] == {
        "items": [{"id": "si_1", "price": "price_starter_m"}],
        "proration_behavior": "always_invoice",
    }
    assert result.refund_amount == Decimal("10.00")
    assert result.pending_refund_payment_id is not None
    pending = ledger.create_payment_record.await_args_list[-1].args[0]
    assert pending.amount == Decimal("-10.00")
    assert pending.status == "pending"
    assert pending.payment_type == "refund"


@pytest.mark.asyncio
async def test_immediate_downgrade_gateway_failure_leaves_local_state(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(plan_change.settings, "stripe_price_ids_json", "{}")
    world = _World(stripe_subscription_id="sub_1")

    with pytest.raises(GatewayError):
        await _engine(world, _FakeGateway()).immediate_downgrade(world.tenant_id, "starter", refund_requested=False)

    assert world.subscription.plan == "professional"
    assert world.transactions == 0


@pytest.mark.asyncio
async def test_immediate_downgrade_to_free_cancels_gateway_subscription() -> None:
    world = _World(stripe_subscription_id="sub_1", stripe_customer_id="cus_1")
    gateway = _FakeGateway()
    ledger = _ledger()

    result = await _engine(world, gateway, ledger).immediate_downgrade(
        world.tenant_id, "free", refund_requested=False
    )

    assert gateway.calls == [("cancel", ("sub_1",), {"prorate": False, "invoice_now": False})]
    assert result.subscription.plan == "free"
    assert world.subscription.status == "active"
    assert world.subscription.stripe_subscription_id is None
    assert world.subscription.stripe_customer_id == "cus_1"
    record = ledger.create_payment_record.await_args.args[0]
    assert record.payment_type == "plan_change"
    assert record.amount == Decimal("0.00")


@pytest.mark.asyncio
async def test_immediate_downgrade_counts_partial_day_since_payment_as_used() -> None:
    world = _World()
    world.latest_payment = SimpleNamespace(
        id=uuid4(),
        amount=Decimal("30.00"),
        paid_at=NOW - timedelta(days=19, hours=12),
        created_at=NOW - timedelta(days=19, hours=12),
    )
    ledger = _ledger()

    result = await _engine(world, _FakeGateway(), ledger).immediate_downgrade(
        world.tenant_id, "trial", refund_requested=True
    )

    assert result.proration.remaining_days == 10
    assert result.proration.amount == Decimal("10.00")
    assert ledger.process_refund.await_args.kwargs["amount"] == Decimal("10.00")


@pytest.mark.asyncio
async def test_immediate_downgrade_rejects_same_or_unknown_plan() -> None:
    world = _World()
    engine = _engine(world, _FakeGateway())

    with pytest.raises(ValidationError):
        await engine.immediate_downgrade(world.tenant_id, "professional", refund_requested=False)
    with pytest.raises(ValidationError):
        await engine.immediate_downgrade(world.tenant_id, "platinum", refund_requested=False)


def _checkout(world: _World, payment_status: str = "paid") -> CheckoutSessionDetails:
    return CheckoutSessionDetails(
        id="cs_1",
        metadata={"tenant_id": str(world.tenant_id), "plan_id": "professional", "billing_cycle": "monthly"},
        amount_total=Decimal("20.00"),
        currency="USD",
        payment_status=payment_status,
        customer_id="cus_9",
        subscription_id="sub_9",
        payment_intent_id="pi_9",
        subscription=GatewaySubscription(
            id="sub_9",
            customer_id="cus_9",
            status="active",
            current_period_start=NOW,
            current_period_end=NOW + timedelta(days=30),
            items=[GatewaySubscriptionItem(id="si_9", price_id="price_pro_m")],
        ),
    )


@pytest.mark.asyncio
async def test_complete_checkout_activates_trial_subscription_once() -> None:
    world = _World(plan="trial", status="trialing", current_period_end=None)
    world.schedules.append(SimpleNamespace(status="pending"))
    gateway = _FakeGateway()
    gateway.checkout_details = _checkout(world)
    ledger = _ledger()
    engine = _engine(world, gateway, ledger)

    first = await engine.complete_checkout("cs_1")
    second = await engine.complete_checkout("cs_1")

    assert first is world.subscription and second is world.subscription
    assert world.subscription.plan == "professional"
    assert world.subscription.status == "active"
    assert world.subscription.stripe_subscription_id == "sub_9"
    assert world.subscription.current_period_end == NOW + timedelta(days=30)
    assert world.tenant.trial_status == "converted"
    assert world.schedules[0].status == "superseded"
    assert [event.event_type for event in world.trial_events] == ["trial_converted"]
    ledger.create_payment_record.assert_awaited_once()
    assert ledger.create_payment_record.await_args.args[0].amount == Decimal("20.00")


@pytest.mark.asyncio
async def test_complete_checkout_ignores_unpaid_sessions() -> None:
    world = _World(plan="trial", status="trialing")
    gateway = _FakeGateway()
    gateway.checkout_details = _checkout(world, payment_status="unpaid")

    assert await _engine(world, gateway).complete_checkout("cs_1") is None
    assert world.subscription.plan == "trial"


@pytest.mark.asyncio
async def test_mark_gateway_subscription_canceled() -> None:
    world = _World(stripe_subscription_id="sub_1")
    engine = _engine(world, _FakeGateway())

    assert await engine.mark_gateway_subscription_canceled("sub_1") == world.tenant_id
    assert world.subscription.status == "canceled"
    assert world.tenant.subscription_status == "canceled"
    assert await engine.mark_gateway_subscription_canceled("sub_unknown") is None
