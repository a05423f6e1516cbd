from __future__ import annotations

from decimal import Decimal

import pytest

from src.core import plans
from src.core.plans import (
    PLAN_CATALOG,
    downgrade_impact,
    get_plan,
    is_valid_subdomain,
    normalize_subdomain,
    plan_for_price_id,
    plan_level,
    price_id_for,
    selectable_plans,
    super_admin_role_permissions,
)


def test_plan_levels_are_ordered_and_unknown_is_zero() -> None:
    assert plan_level("free") < plan_level("starter") < plan_level("professional") < plan_level("enterprise")
    assert plan_level("Enterprise ") == 3
    assert plan_level("trial") == 0
    assert plan_level(None) == 0


def test_catalog_prices_and_selectability() -> None:
    assert get_plan("professional").price_for("monthly") == Decimal("20.00")
    assert get_plan("professional").price_for("yearly") == Decimal("240.00")
    assert get_plan("missing") is None
    assert {plan.id for plan in selectable_plans()} == {"starter", "professional", "enterprise"}
    assert PLAN_CATALOG["trial"].allow_downgrade is True


def test_price_id_lookup_both_directions(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        plans.settings,
        "stripe_price_ids_json",
        '{"starter:monthly": "price_s_m", "professional:yearly": "price_p_y"}',
    )

    assert price_id_for("starter", "monthly") == "price_s_m"
    assert price_id_for("starter", "yearly") is None
    assert plan_for_price_id("price_p_y") == ("professional", "yearly")
    assert plan_for_price_id("price_unknown") is None


def test_super_admin_permissions_follow_plan() -> None:
    trial = super_admin_role_permissions("trial")
    enterprise = super_admin_role_permissions("enterprise")

    assert "crm.leads.read" in trial
    assert "hr.employees.create" in trial
    assert not any(permission.startswith("inventory.") for permission in trial)
    assert "inventory.products.read" in enterprise
    assert trial == sorted(trial)
    assert super_admin_role_permissions("bogus") == super_admin_role_permissions("free")


def test_downgrade_impact_lists_lost_applications_and_limits() -> None:
    impact = downgrade_impact("professional", "starter")

    assert impact["lost_applications"] == ["affiliate", "accounting"]
    assert impact["data_retention"] == {"from_months": 24, "to_months": 12, "impact": "data_loss_risk"}
    assert impact["user_limits"] == {"from": 50, "to": 10, "reduction": 40}

    unlimited = downgrade_impact("enterprise", "starter")
    assert unlimited["user_limits"]["reduction"] is None


@pytest.mark.parametrize(
    ("company", "expected"),
    [
        ("Acme Corp", "acme-corp"),
        ("  Hello__World!! ", "hello-world"),
        ("42 Labs", "org-42-labs"),
        ("!!!", "org"),
    ],
)
def test_normalize_subdomain(company: str, expected: str) -> None:
    assert normalize_subdomain(company) == expected


def test_subdomain_validation() -> None:
    assert is_valid_subdomain("acme")
    assert is_valid_subdomain("a")
    assert not is_valid_subdomain("-acme")
    assert not is_valid_subdomain("acme-")
    assert not is_valid_subdomain("Acme")
    assert not is_valid_subdomain("admin")
    assert not is_valid_subdomain("a" * 64)
