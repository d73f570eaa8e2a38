from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import register_error_handlers, router
from .config import settings
from .core.observability import request_tracing_middleware, setup_logging
from .db import Base, SessionLocal, engine

if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    Base.metadata.create_all(bind=engine)
setup_logging(settings.LOG_LEVEL)

app = FastAPI(
    title="Beauty Page",
    description="Booking and scheduling API for beauty creators",
    version="0.1.0",
)
register_error_handlers(app)


@app.middleware("http")
async def request_observability_middleware(request: Request, call_next):
    return await request_tracing_middleware(request, call_next)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        return JSONResponse(status_code=503, content={"status": "error", "checks": {"db": "error"}})
    return {"status": "ok", "checks": {"db": "ok"}}


app.include_router(router)
