import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.api import api_router
from app.core.config import settings
from app.core.logging import configure_logging
from app.db.mongo import MongoDatabase
from app.services.factory import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)

    mongodb = MongoDatabase(settings.MONGODB_URL, settings.DATABASE_NAME)
    db = await mongodb.connect()
    services = build_services(settings, db)
    app.state.mongodb = mongodb
    app.state.services = services

    if settings.RECONCILER_ENABLED:
        services.reconciler.start()

    try:
        yield
    finally:
        await services.aclose()
        mongodb.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.PROJECT_VERSION,
    description=settings.DESCRIPTION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "Welcome to SplitSettle API"}


@app.get("/health")
async def health():
    return {"status": "ok", "environment": settings.ENVIRONMENT}


app.include_router(api_router, prefix=settings.API_V1_STR)
