import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from app.core.db import init_db, close_db
from app.api.v1.orders import router as orders_router
from app.api.v1.outbox import router as outbox_router
from app.core.config import PROJECT_NAME, VERSION, RELAY_ENABLED, LOG_LEVEL, LOG_FORMAT
from app.core.exception_handlers import setup_exception_handlers
from app.relay.worker import start_relay_worker, stop_relay_worker

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
log = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas
    if RELAY_ENABLED:
        await start_relay_worker()
    yield
    await stop_relay_worker()
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers for modular API structure
app.include_router(orders_router, prefix="/api/v1/orders", tags=["Order Management"])
app.include_router(outbox_router, prefix="/api/v1/outbox", tags=["Outbox Relay"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}
