from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, LOG_LEVEL, validate_production_env

# ROUTES
from routes import orders, payments, returns

# WORKERS
from workers.inventory_retry_worker import inventory_retry_worker
from workers.audit_cleanup_worker import audit_cleanup_worker

from utils.indexes import ensure_indexes

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV: %s", ENV)

app = FastAPI(
    title="BazarXpress Fulfillment API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Authorization", "Content-Type"],
)

for module in (orders, returns, payments):
    app.include_router(module.router, prefix="/api")


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/health/db")
async def health_db():
    await get_db().command("ping")
    return {"status": "mongodb connected"}


@app.on_event("startup")
async def start_background_work():
    await ensure_indexes(get_db())

    # workers run for the process lifetime
    asyncio.create_task(inventory_retry_worker())
    asyncio.create_task(audit_cleanup_worker())
