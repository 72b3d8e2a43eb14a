import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from db.database import engine, Base, SessionLocal
from api.notifications import router as notifications_router
from api.medications import router as medications_router
from api.health_score import router as health_score_router
from services.adherence_engine import AdherenceEngine
from services.errors import EngineError, StorageFailure

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

settings.validate_configuration()

# Create all tables
Base.metadata.create_all(bind=engine)

adherence_engine = AdherenceEngine(SessionLocal, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.SCHEDULER_ENABLED:
        app.state.adherence_engine.start()
    try:
        yield
    finally:
        app.state.adherence_engine.shutdown()


app = FastAPI(title=settings.APP_NAME, version="1.0.0", lifespan=lifespan)
app.state.adherence_engine = adherence_engine

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if isinstance(exc, StorageFailure):
        user_id = getattr(request.state, "user_id", None)
        logger.error("%s %s failed for user %s: %s", request.method, request.url.path, user_id, exc.message)
        detail = "Internal server error" if settings.is_production_like else exc.message
    else:
        detail = exc.message
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "code": exc.code})


# Routers
app.include_router(notifications_router, prefix="/api")
app.include_router(medications_router, prefix="/api")
app.include_router(health_score_router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "ok", "app": settings.APP_NAME}
