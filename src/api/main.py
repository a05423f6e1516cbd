import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.api.routes.admin import router as admin_router
from src.api.routes.onboarding import router as onboarding_router
from src.api.routes.subscriptions import router as subscriptions_router
from src.api.routes.webhooks import router as webhooks_router
from src.core.config import settings
from src.core.errors import PlatformError

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="Tenant Lifecycle Platform")
app.include_router(onboarding_router, prefix="/api/v1")
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")
app.include_router(webhooks_router, prefix="/api/v1")


@app.exception_handler(PlatformError)
async def platform_error_handler(request: Request, exc: PlatformError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    return {"status": "ok"}
