import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ✅ Import All API Routes
from app.api.routes import billing, billing_webhook, system

from app.core import config
from app.core.logging_config import setup_logging, sanitize_log_data
from app.db.init_db import init_db

setup_logging(config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting Entitlements API: "
        f"{sanitize_log_data({'database_url': config.DATABASE_URL, 'link_function_url': config.LINK_FUNCTION_URL or 'in-process', 'stripe_secret_key': config.STRIPE_SECRET_KEY})}"
    )
    init_db()
    yield


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="Entitlements API", lifespan=lifespan)

# ✅ CORS LOCKDOWN: ONLY ALLOW YOUR FRONTEND
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_URL,
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(billing.router)
app.include_router(billing_webhook.router)
app.include_router(system.router)


# ============================================
# ✅ HEALTH CHECK ROOT ENDPOINT
# ============================================

@app.get("/")
def root():
    return {"status": "Entitlements API running"}
