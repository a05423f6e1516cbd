from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal

from src.core.config import settings

BillingCycle = Literal["monthly", "yearly"]

PLAN_LEVELS: dict[str, int] = {
    "free": 0,
    "starter": 1,
    "professional": 2,
    "enterprise": 3,
}

CYCLE_DAYS: dict[str, int] = {"monthly": 30, "yearly": 365}

UNLIMITED = -1

_CRUD = ["read", "create", "update", "delete"]
_FULL = ["read", "read_all", "create", "update", "delete", "export", "import"]


@dataclass(slots=True, frozen=True)
class PlanDefinition:
    id: str
    name: str
    monthly_price: Decimal
    yearly_price: Decimal
    applications: list[str]
    usage_limits: dict[str, int]
    permissions: dict[str, dict[str, list[str]]]
    allow_downgrade: bool = False
    data_retention_months: int = 3
    selectable: bool = True
    features: list[str] = field(default_factory=list)

    def price_for(self, billing_cycle: str) -> Decimal:
        return self.yearly_price if billing_cycle == "yearly" else self.monthly_price


_FREE_PERMISSIONS = {
    "crm": {"leads": _CRUD, "contacts": _CRUD, "dashboard": ["read"]},
}

_STARTER_PERMISSIONS = {
    "crm": {
        "leads": _FULL + ["assign", "convert"],
        "contacts": _FULL,
        "accounts": _FULL + ["assign"],
        "opportunities": _FULL + ["close", "assign"],
        "dashboard": ["read"],
    },
    "hr": {
        "employees": _CRUD,
        "leave": ["read", "create", "update", "approve"],
        "dashboard": ["read"],
    },
}

_PROFESSIONAL_PERMISSIONS = {
    **_STARTER_PERMISSIONS,
    "affiliate": {"partners": _FULL, "commissions": ["read", "create", "update", "approve"]},
    "accounting": {
        "general_ledger": ["read", "create", "update", "post", "export"],
        "invoices": _FULL + ["send"],
        "reports": ["read", "create", "export"],
    },
}

_ENTERPRISE_PERMISSIONS = {
    **_PROFESSIONAL_PERMISSIONS,
    "inventory": {
        "products": _FULL,
        "warehouses": _CRUD,
        "stock_movements": ["read", "create", "approve", "export"],
    },
    "system": {
        "users": _FULL + ["assign_roles"],
        "roles": _CRUD + ["manage_permissions"],
        "audit": ["read", "export"],
    },
}

PLAN_CATALOG: dict[str, PlanDefinition] = {
    "trial": PlanDefinition(
        id="trial",
        name="Trial",
        monthly_price=Decimal("0.00"),
        yearly_price=Decimal("0.00"),
        applications=["crm", "hr"],
        usage_limits={"users": 5, "roles": 3, "storage_gb": 1, "api_calls_per_month": 1000},
        permissions=_STARTER_PERMISSIONS,
        allow_downgrade=True,
        data_retention_months=3,
        selectable=False,
        features=["basic_data"],
    ),
    "free": PlanDefinition(
        id="free",
        name="Free",
        monthly_price=Decimal("0.00"),
        yearly_price=Decimal("0.00"),
        applications=["crm"],
        usage_limits={"users": 1, "roles": 1, "storage_gb": 1, "api_calls_per_month": 1000},
        permissions=_FREE_PERMISSIONS,
        allow_downgrade=True,
        data_retention_months=3,
        selectable=False,
        features=["basic_data"],
    ),
    "starter": PlanDefinition(
        id="starter",
        name="Starter",
        monthly_price=Decimal("10.00"),
        yearly_price=Decimal("120.00"),
        applications=["crm", "hr"],
        usage_limits={"users": 10, "roles": 3, "storage_gb": 10, "api_calls_per_month": 10000},
        permissions=_STARTER_PERMISSIONS,
        data_retention_months=12,
        features=["basic_data", "reports"],
    ),
    "professional": PlanDefinition(
        id="professional",
        name="Professional",
        monthly_price=Decimal("20.00"),
        yearly_price=Decimal("240.00"),
        applications=["crm", "hr", "affiliate", "accounting"],
        usage_limits={"users": 50, "roles": 10, "storage_gb": 100, "api_calls_per_month": 50000},
        permissions=_PROFESSIONAL_PERMISSIONS,
        data_retention_months=24,
        features=["basic_data", "reports", "analytics"],
    ),
    "enterprise": PlanDefinition(
        id="enterprise",
        name="Enterprise",
        monthly_price=Decimal("30.00"),
        yearly_price=Decimal("360.00"),
        applications=["crm", "hr", "affiliate", "accounting", "inventory"],
        usage_limits={"users": -1, "roles": -1, "storage_gb": -1, "api_calls_per_month": -1},
        permissions=_ENTERPRISE_PERMISSIONS,
        data_retention_months=60,
        features=["basic_data", "reports", "analytics", "backups"],
    ),
}


def plan_level(plan_id: str | None) -> int:
    return PLAN_LEVELS.get((plan_id or "").strip().lower(), 0)


def get_plan(plan_id: str) -> PlanDefinition | None:
    return PLAN_CATALOG.get((plan_id or "").strip().lower())


def selectable_plans() -> list[PlanDefinition]:
    return [plan for plan in PLAN_CATALOG.values() if plan.selectable]


def price_id_for(plan_id: str, billing_cycle: str) -> str | None:
    return settings.stripe_price_ids().get(f"{plan_id}:{billing_cycle}")


def plan_for_price_id(price_id: str) -> tuple[str, str] | None:
    for key, value in settings.stripe_price_ids().items():
        if value == price_id:
            plan_id, _, cycle = key.partition(":")
            return plan_id, cycle or "monthly"
    return None


def super_admin_role_permissions(plan_id: str) -> list[str]:
    plan = get_plan(plan_id) or PLAN_CATALOG["free"]
    return sorted(
        f"{app}.{module}.{action}"
        for app, modules in plan.permissions.items()
        for module, actions in modules.items()
        for action in actions
    )


def downgrade_impact(from_plan: str, to_plan: str) -> dict[str, object]:
    source = get_plan(from_plan) or PLAN_CATALOG["free"]
    target = get_plan(to_plan) or PLAN_CATALOG["free"]

    source_users = source.usage_limits.get("users", 0)
    target_users = target.usage_limits.get("users", 0)
    return {
        "lost_applications": [app for app in source.applications if app not in target.applications],
        "data_retention": {
            "from_months": source.data_retention_months,
            "to_months": target.data_retention_months,
            "impact": (
                "data_loss_risk"
                if source.data_retention_months > target.data_retention_months
                else "no_impact"
            ),
        },
        "user_limits": {
            "from": source_users,
            "to": target_users,
            "reduction": None if UNLIMITED in (source_users, target_users) else source_users - target_users,
        },
    }


RESERVED_SUBDOMAINS = frozenset({"www", "api", "admin", "app", "billing"})
SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
SUBDOMAIN_MAX_LENGTH = 30


def normalize_subdomain(company_name: str) -> str:
    value = re.sub(r"[^a-z0-9]", "-", (company_name or "").lower())
    value = re.sub(r"-+", "-", value).strip("-")
    value = value[:SUBDOMAIN_MAX_LENGTH].strip("-")
    if value and value[0].isdigit():
        value = f"org-{value}"
    return value or "org"


def is_valid_subdomain(subdomain: str) -> bool:
    return bool(SUBDOMAIN_PATTERN.match(subdomain)) and subdomain not in RESERVED_SUBDOMAINS
