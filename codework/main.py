import datetime
import logging
import os
import time
from uuid import uuid4

import redis as _redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from codework.api import evaluations
from codework.core.config import settings
from codework.core.logging_config import setup_logging
from codework.core.metrics import init_fastapi_instrumentation
from codework.db.session import engine, init_db
from codework.services.evaluation import EvaluationRejected

# Configure logging (JSON)
setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="CodeWork Evaluations",
    description="Runs classroom code submissions against their assignment's test cases",
    version="1.0.0",
)

try:
    init_fastapi_instrumentation(app)
except Exception as _e:
    logger.exception("Prometheus metrics init failed", extra={"error": str(_e)})

_cors_origins_env = os.getenv("CORS_ORIGINS", "*")
_cors_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in _cors_origins else _cors_origins,
    allow_credentials=False if "*" in _cors_origins else True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    # Initialize database (non-fatal)
    init_db()
    logger.info("Database initialized")


@app.exception_handler(EvaluationRejected)
async def evaluation_rejected_handler(request: Request, exc: EvaluationRejected):
    return JSONResponse(
        status_code=exc.status_code,
        content={"title": exc.title, "detail": exc.detail, "reason": exc.reason},
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_logger = logging.getLogger("request")
    start = time.perf_counter()
    request_id = str(uuid4())
    client = request.client.host if request.client else "-"
    try:
        response = await call_next(request)
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": getattr(response, "status_code", 0),
            "duration_ms": int((time.perf_counter() - start) * 1000),
            "client": client,
        }
        request_logger.info("request_completed", extra=extra)
        return response
    except Exception:
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "duration_ms": int((time.perf_counter() - start) * 1000),
            "client": client,
        }
        request_logger.exception("request_failed", extra=extra)
        raise


app.include_router(evaluations.router, prefix="/api", tags=["evaluations"])


@app.get("/health")
def health_check():
    """Liveness + Readiness: verify core dependencies (DB, Redis, broker)."""
    statuses: dict[str, str] = {}
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        statuses["database"] = "ok"
    except Exception as e:
        statuses["database"] = f"error: {e}"

    # Push channel
    try:
        _redis.from_url(settings.REDIS_URL, socket_timeout=2).ping()
        statuses["redis"] = "ok"
    except Exception as e:
        statuses["redis"] = f"error: {e}"

    # Celery broker (may use a different Redis DB)
    try:
        _redis.from_url(settings.CELERY_BROKER_URL, socket_timeout=2).ping()
        statuses["broker"] = "ok"
    except Exception as e:
        statuses["broker"] = f"error: {e}"

    healthy = all(v == "ok" for v in statuses.values())
    if not healthy:
        logger.error("health_check_failed", extra={"components": statuses})

    return {
        "status": "healthy" if healthy else "unhealthy",
        "components": statuses,
        "timestamp": datetime.datetime.utcnow().isoformat(),
    }
