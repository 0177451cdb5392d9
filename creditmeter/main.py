import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from creditmeter.core.config import get_settings
from creditmeter.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from creditmeter.core.logging import bind_request_id, configure_logging, get_logger
from creditmeter.deps import build_services
from creditmeter.routers import account, admin, billing, purchases

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="creditmeter API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(billing.router, prefix="/v1/billing", tags=["billing"])
app.include_router(purchases.router, prefix="/v1/purchases", tags=["purchases"])
app.include_router(account.router, prefix="/v1/account", tags=["account"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    # Tests install their own container before startup
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    log.info("startup", msg="Services ready", store=settings.store_backend)


@app.on_event("shutdown")
async def shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.store.close()


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
