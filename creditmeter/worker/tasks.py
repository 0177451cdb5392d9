"""ARQ job definitions."""

from typing import Any

from arq.connections import RedisSettings

from creditmeter.core.config import get_settings
from creditmeter.core.logging import configure_logging, get_logger
from creditmeter.deps import build_services

log = get_logger(__name__)


async def recover_pending_consumption(ctx: dict[str, Any]) -> int:
    """Cron job: consume credited purchases whose store-side consume failed."""
    services = ctx["services"]
    log.info("job_start", job="recover_pending_consumption")
    try:
        recovered = await services.purchases.recover_pending_consumption()
    except Exception as e:
        log.exception("job_failed", job="recover_pending_consumption", reason=str(e)[:500])
        raise
    log.info("job_done", job="recover_pending_consumption", recovered=recovered)
    return recovered


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging(debug=settings.debug)
    ctx["services"] = build_services(settings)


async def shutdown(ctx: dict) -> None:
    services = ctx.get("services")
    if services is not None:
        await services.store.close()


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
