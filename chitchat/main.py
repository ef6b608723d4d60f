import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request

from chitchat import db
from chitchat.config import settings
from chitchat.routers import admin
from chitchat.services.maintenance import RetentionScheduler

logger = logging.getLogger(__name__)

_IS_PRODUCTION = settings.environment.strip().lower() in {"prod", "production"}

app = FastAPI(
    title=settings.app_name,
    docs_url=None if _IS_PRODUCTION else "/docs",
    redoc_url=None if _IS_PRODUCTION else "/redoc",
    openapi_url=None if _IS_PRODUCTION else "/openapi.json",
)

_retention_scheduler = RetentionScheduler(settings)


def _apply_security_headers(request: Request, response) -> None:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")

    path = request.url.path or "/"
    if path.startswith("/admin"):
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Pragma", "no-cache")


@app.middleware("http")
async def _security_middleware(request: Request, call_next):
    response = await call_next(request)
    _apply_security_headers(request, response)
    return response


@app.on_event("startup")
def _startup():
    # Opening the store migrates it; a FatalStartupError must stop the server here.
    db.store.acquire()
    if settings.retention_scheduler_enabled:
        _retention_scheduler.start()


@app.on_event("shutdown")
def _shutdown():
    _retention_scheduler.stop()
    db.store.release()


@app.get("/health", include_in_schema=False)
def _health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


app.include_router(admin.router)
