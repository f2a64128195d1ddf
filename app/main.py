import logging
import sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import config
from app.core.db.engine import check_database_connection
from app.core.error_handler import global_exception_handler
from app.modules.close_drafts.router import router as close_drafts_router
from app.modules.lottery.router import router as lottery_router

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)
logger.info("🚀 Starting Store Closing API...")

app = FastAPI(
    title="Store Closing API",
    description="Shift and day close: wizard drafts, lottery day close and settlement",
    version="1.0.0",
)

# Add global exception handler
app.add_exception_handler(Exception, global_exception_handler)

# Middlewares
origins = [
    "http://localhost",
    "http://localhost:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers with /api prefix
app.include_router(close_drafts_router, prefix="/api")
app.include_router(lottery_router, prefix="/api")


@app.get("/health")
async def health() -> dict:
    database_ok = await check_database_connection()
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "environment": "production" if config.is_production else "development",
    }
