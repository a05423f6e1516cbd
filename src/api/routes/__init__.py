from src.api.routes.admin import router as admin_router
from src.api.routes.onboarding import router as onboarding_router
from src.api.routes.subscriptions import router as subscriptions_router
from src.api.routes.webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "onboarding_router",
    "subscriptions_router",
    "webhooks_router",
]
