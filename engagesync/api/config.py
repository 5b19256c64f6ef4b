from fastapi import APIRouter
from pydantic import BaseModel

from engagesync.core.config import get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    phoneburner_base_url: str
    nocodb_base_url: str
    nocodb_configured: bool
    rate_limit_delay_ms: int
    time_budget_ms: int
    sync_lock_timeout_ms: int
    max_continuations: int
    send_email_dm_threshold_seconds: int
    tz: str
    sync_hour: int
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        db_path=settings.db_path,
        phoneburner_base_url=settings.phoneburner_base_url,
        nocodb_base_url=settings.nocodb_base_url,
        nocodb_configured=bool(settings.nocodb_api_token and settings.nocodb_table_id),
        rate_limit_delay_ms=settings.rate_limit_delay_ms,
        time_budget_ms=settings.time_budget_ms,
        sync_lock_timeout_ms=settings.sync_lock_timeout_ms,
        max_continuations=settings.max_continuations,
        send_email_dm_threshold_seconds=settings.send_email_dm_threshold_seconds,
        tz=settings.tz,
        sync_hour=settings.sync_hour,
        debug=settings.debug,
    )
