"""
PMS Inventory FastAPI Main Application
Entry point for the stock accounting REST API
"""
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import sys

from pms_inventory.api.deps import error_status
from pms_inventory.api.v1.api_router import api_router
from pms_inventory.core.config import settings
from pms_inventory.core.database import check_db_connection, init_db
from pms_inventory.core.exceptions import InventoryError
from pms_inventory.core.logging import setup_logging, get_logger

logger = get_logger("main")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="""
    ## PMS Inventory API

    Stock accounting core for hotel operations. Every write goes through one
    database transaction that updates the ledger, the batches and the movement
    log together.

    ### Key Features:
    - **Stock Ledger**: Quantity and weighted-average cost per item and warehouse
    - **Lot Tracking**: Batches with expiration dates, consumed first-expired-first-out
    - **Movement Log**: Append-only history of every stock change
    - **Transfers**: Batch-preserving moves between warehouses of a property
    - **Waste**: Spoilage and expiry write-offs with waste percentage reporting
    - **Purchasing**: Purchase order workflow and goods receiving
    - **Cycle Counts**: Count sheets, variance review and count adjustments
    - **Requisitions**: Internal stock requests fulfilled by transfers

    Pass the acting user in the `X-Actor-Id` header.
    """,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["System"])
async def health_check():
    """Liveness plus database reachability"""
    try:
        db_ok = check_db_connection()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unavailable")

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "database": {
            "backend": "sqlite" if settings.is_sqlite else "postgresql",
            "connected": db_ok,
        },
    }


@app.get("/info", tags=["System"])
async def system_info():
    """Application version and the precision rules applied to stock figures"""
    return {
        "application": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "api_version": "v1",
        "docs_url": settings.DOCS_URL,
        "precision": {
            "quantity_decimal_places": settings.QUANTITY_DECIMAL_PLACES,
            "cost_decimal_places": settings.COST_DECIMAL_PLACES,
            "currency_decimal_places": settings.CURRENCY_DECIMAL_PLACES,
        },
        "defaults": {
            "expiry_alert_days": settings.DEFAULT_EXPIRY_ALERT_DAYS,
            "po_number_format": f"{settings.PO_NUMBER_PREFIX}-YYYYMMDD-NNNN",
        },
    }


@app.on_event("startup")
async def startup_event():
    """Configure logging, verify the database and create missing tables"""
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    if settings.is_sqlite and not settings.DEBUG:
        logger.warning("Running on SQLite: NUMERIC columns are stored as floats. Use PostgreSQL in production")

    if not check_db_connection():
        logger.critical(f"Cannot reach database at startup ({settings.DATABASE_URL.split('://')[0]})")
        sys.exit(1)

    try:
        init_db()
    except Exception as e:
        logger.critical(f"Table creation failed: {e}")
        sys.exit(1)

    logger.info("Inventory API ready")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down inventory API")


@app.exception_handler(InventoryError)
async def inventory_exception_handler(request: Request, exc: InventoryError):
    """Inventory errors raised outside a service call"""
    logger.warning(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
    return JSONResponse(status_code=error_status(exc), content={"detail": jsonable_encoder(exc.to_dict())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Anything else is a 500 in the same body shape as domain errors"""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"detail": {
            "code": "INTERNAL_ERROR",
            "message": str(exc) if settings.DEBUG else "An unexpected error occurred",
            "details": {},
        }},
    )


app.include_router(api_router, prefix=settings.API_V1_STR)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pms_inventory.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
