from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database

# STOCRX engine routes
from stocrx.routes import vehicles_router, subscriptions_router, payments_router, claims_router
from stocrx.errors import NotFoundError, PersistenceError, StateConflictError, ValidationError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'stocrx')
sweep_interval_minutes = int(os.environ.get('DELINQUENCY_SWEEP_INTERVAL_MINUTES', '60'))
running_under_pytest = os.environ.get('PYTEST_RUNNING') == '1'

# Scheduler with MongoDB job store so the sweep survives restarts
jobstores = {}
try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores['default'] = MongoDBJobStore(
        database=db_name,
        collection='scheduled_jobs',
        client=mongo_client
    )
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

# Job runner shared by scheduler and manual runs
from job_runner import run_delinquency_sweep


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting STOCRX Ledger Engine API")
    await database.connect()

    if not running_under_pytest:
        # Delinquency sweep: evaluate every open subscription
        scheduler.add_job(
            run_delinquency_sweep,
            IntervalTrigger(minutes=sweep_interval_minutes),
            id="delinquency_sweep",
            name="Subscription Delinquency Sweep",
            replace_existing=True
        )
        scheduler.start()
        logger.info(f"Background job scheduler started (sweep every {sweep_interval_minutes} min)")

    yield

    # Shutdown
    logger.info("Shutting down STOCRX Ledger Engine API")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="STOCRX Ledger Engine API",
    description="Subscription lifecycle and financial ledger for subscription-to-own vehicles",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(vehicles_router)
app.include_router(subscriptions_router)
app.include_router(payments_router)
app.include_router(claims_router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "STOCRX Ledger Engine",
        "tagline": "Subscription to own",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Engine error handlers: the client tells rule violations, stale views and outages apart
@app.exception_handler(ValidationError)
async def engine_validation_handler(request: Request, exc: ValidationError):
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc.message} (rule={exc.rule})")
    return JSONResponse(status_code=422, content={**exc.to_dict(), "error_type": "rule_violation"})


@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError):
    logger.warning(f"Conflict on {request.method} {request.url.path}: {exc.message} (rule={exc.rule})")
    return JSONResponse(status_code=409, content={**exc.to_dict(), "error_type": "rule_violation"})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={**exc.to_dict(), "error_type": "not_found", "hint": "refresh"},
    )


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(f"Store unavailable on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=503,
        content={**exc.to_dict(), "error_type": "temporarily_unavailable"},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
