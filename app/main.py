# =====================================================
# FILE: app/main.py
# FastAPI application
# =====================================================

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from app.core.config import settings
from app.core.database import init_db, test_connection
from app.core.logging_config import configure_logging
from app.api.api_v1.signatures.router import router as signatures_router

configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(signatures_router)


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info(f"{settings.PROJECT_NAME} {settings.VERSION} started")


@app.get("/health")
def health_check():
    return {
        "status": "healthy" if test_connection() else "degraded",
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION
    }
