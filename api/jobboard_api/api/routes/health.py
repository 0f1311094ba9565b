from fastapi import APIRouter, Depends

from jobboard_api.core.config import Settings, get_settings
from jobboard_api.core.webhooks import webhook_secret_configured
from jobboard_api.services.billing_provider import provider_credentials_configured

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(settings: Settings = Depends(get_settings)) -> dict[str, object]:
    checks = {
        "database_configured": bool(settings.database_url),
        "billing_webhook_configured": webhook_secret_configured(settings.stripe_webhook_secret),
        "billing_provider_configured": provider_credentials_configured(settings.stripe_secret_key),
    }
    return {"status": "ok" if all(checks.values()) else "degraded", "checks": checks}
